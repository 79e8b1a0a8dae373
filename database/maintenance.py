#!/usr/bin/env python3
"""
Maintenance jobs for encrypted records and sibling ordering

Commands:
    verify    Decrypt every record and check every ordered scope is 1..N
    renumber  Renumber ordered scopes that have gaps
    rotate    Re-encrypt every record from an old root secret to ROOT_SECRET

Usage:
    python database/maintenance.py verify [--batch-size 100]
    python database/maintenance.py renumber [--dry-run]
    OLD_ROOT_SECRET=... python database/maintenance.py rotate [--dry-run]

Prerequisites:
    1. Apply database/schema.sql
    2. Set ROOT_SECRET (and DATABASE_URL or POSTGRES_* variables)

Records failing authentication are flagged and skipped; every job continues
with the next record and reports the flagged ids at the end.
"""

import os
import sys
import argparse
import asyncio
import asyncpg
from typing import Any, Dict, List, Optional, Tuple
from loguru import logger

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from common.config import settings
from common.database.ordering import OrderReindexer, PostgresSiblingStore
from common.database.tables import ALL_TABLES, TableSpec
from common.errors import CodecError, ConfigurationError, StoreError
from common.logging_config import configure_logging
from common.security import FieldCodec

FIRST_ID = "00000000-0000-0000-0000-000000000000"


def bundle_from_row(table: TableSpec, row) -> Tuple[Dict[str, str], str, str]:
    """Extract (cipher_by_field, iv_joined, tag_joined) from a stored row"""
    cipher_by_field = {
        name: row[name]
        for name in table.encrypted_fields
        if row[name] is not None
    }
    return cipher_by_field, row["iv"], row["tag"]


class RecordMaintainer:
    """Runs verification, renumbering and secret rotation in batches"""

    def __init__(
        self,
        dsn: str,
        codec: FieldCodec,
        batch_size: int = 100,
        dry_run: bool = False
    ):
        self.dsn = dsn
        self.codec = codec
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.flagged: List[Tuple[str, str, str]] = []  # (table, record_id, error)
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Connect to database"""
        try:
            self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=4)
            logger.info("✓ Connected to database")
        except Exception as e:
            logger.error(f"✗ Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Disconnect from database"""
        if self.pool:
            await self.pool.close()
            logger.info("✓ Disconnected from database")

    async def iter_batches(self, table: TableSpec):
        """Yield rows of a table in id order, batch by batch"""
        last_id = FIRST_ID
        while True:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT * FROM {table.name} WHERE id > $1 ORDER BY id LIMIT $2",
                    last_id, self.batch_size
                )
            if not rows:
                return
            yield rows
            last_id = rows[-1]["id"]

    def _flag(self, table: TableSpec, record_id: Any, error: Exception):
        self.flagged.append((table.name, str(record_id), type(error).__name__))
        logger.warning(f"  ✗ {table.name} record {record_id}: {type(error).__name__}")

    async def verify_table(self, table: TableSpec) -> int:
        """
        Decrypt every record of a table

        Returns:
            Number of records that decrypted successfully
        """
        logger.info(f"📝 Verifying {table.name}...")
        verified = 0

        async for rows in self.iter_batches(table):
            for row in rows:
                try:
                    self.codec.decrypt_record(*self._bundle_with_id(table, row))
                    verified += 1
                except CodecError as e:
                    self._flag(table, row["id"], e)

        logger.info(f"✓ {verified} {table.name} records verified")
        return verified

    async def find_broken_scopes(self, table: TableSpec) -> List[str]:
        """Scopes whose positions are not exactly 1..N"""
        scope, order = table.scope_column, table.order_column
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {scope} AS scope_id
                FROM {table.name}
                GROUP BY {scope}
                HAVING MIN({order}) <> 1 OR MAX({order}) <> COUNT(*)
                """
            )
        return [str(row["scope_id"]) for row in rows]

    async def renumber_table(self, table: TableSpec) -> int:
        """
        Renumber every broken scope of an ordered table

        Returns:
            Number of scopes repaired
        """
        scopes = await self.find_broken_scopes(table)
        if not scopes:
            logger.info(f"  → All {table.name} scopes are contiguous")
            return 0

        if self.dry_run:
            logger.info(f"  → Would renumber {len(scopes)} {table.name} scopes")
            return 0

        repaired = 0
        for scope_id in scopes:
            try:
                async with self.pool.acquire() as conn:
                    async with conn.transaction():
                        changed = await OrderReindexer(PostgresSiblingStore(conn, table)).normalize(scope_id)
                if changed:
                    repaired += 1
            except (StoreError, asyncpg.PostgresError) as e:
                self._flag(table, scope_id, e)

        logger.info(f"✓ Renumbered {repaired} {table.name} scopes")
        return repaired

    async def rotate_table(self, table: TableSpec, old_codec: FieldCodec) -> int:
        """
        Re-encrypt every record of a table under the current root secret

        Records that already open under the current secret are left alone.

        Returns:
            Number of records re-encrypted
        """
        logger.info(f"📝 Rotating {table.name}...")
        rotated = 0

        async for rows in self.iter_batches(table):
            for row in rows:
                cipher_by_field, record_id, iv, tag = self._bundle_with_id(table, row)
                try:
                    plaintext = old_codec.decrypt_record(cipher_by_field, record_id, iv, tag)
                except CodecError as e:
                    try:
                        self.codec.decrypt_record(cipher_by_field, record_id, iv, tag)
                        continue
                    except CodecError:
                        self._flag(table, record_id, e)
                        continue

                if self.dry_run:
                    rotated += 1
                    continue

                columns = self.codec.encrypt_record(plaintext, record_id).to_columns()
                set_clauses = [f"{name} = ${i}" for i, name in enumerate(columns, start=1)]
                try:
                    async with self.pool.acquire() as conn:
                        await conn.execute(
                            f"UPDATE {table.name} SET {', '.join(set_clauses)} "
                            f"WHERE id = ${len(columns) + 1}",
                            *columns.values(), row["id"]
                        )
                    rotated += 1
                    if rotated % 100 == 0:
                        logger.info(f"  → Rotated {rotated} {table.name} records...")
                except asyncpg.PostgresError as e:
                    self._flag(table, record_id, e)

        logger.info(f"✓ Rotated {rotated} {table.name} records")
        return rotated

    @staticmethod
    def _bundle_with_id(table: TableSpec, row) -> Tuple[Dict[str, str], str, str, str]:
        cipher_by_field, iv, tag = bundle_from_row(table, row)
        return cipher_by_field, str(row["id"]), iv, tag

    async def run(self, command: str, old_codec: Optional[FieldCodec] = None) -> bool:
        """
        Run one maintenance command over every table

        Returns:
            True if no record or scope was flagged
        """
        logger.info("=" * 80)
        logger.info(f"RECORD MAINTENANCE: {command}")
        logger.info("=" * 80)

        if self.dry_run:
            logger.warning("🔍 DRY RUN MODE - No data will be modified")

        for table in ALL_TABLES:
            if command == "verify":
                await self.verify_table(table)
                if table.is_ordered:
                    for scope_id in await self.find_broken_scopes(table):
                        self.flagged.append((table.name, scope_id, "NonContiguousOrder"))
                        logger.warning(f"  ✗ {table.name} scope {scope_id} is not contiguous")
            elif command == "renumber":
                if table.is_ordered:
                    await self.renumber_table(table)
            elif command == "rotate":
                await self.rotate_table(table, old_codec)

        logger.info("=" * 80)
        if self.flagged:
            logger.warning(f"⚠ {len(self.flagged)} problems found:")
            for table_name, record_id, error in self.flagged:
                logger.warning(f"  {table_name} {record_id}: {error}")
        else:
            logger.info("✓ No problems found")
        logger.info("=" * 80)

        return not self.flagged


async def main() -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Maintain encrypted records and sibling ordering")
    parser.add_argument("command", choices=["verify", "renumber", "rotate"])
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without modifying data"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=100,
        help="Number of records to read per batch (default: 100)"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL DSN (defaults to DATABASE_URL / POSTGRES_* settings)"
    )
    parser.add_argument(
        "--old-secret-env",
        default="OLD_ROOT_SECRET",
        help="Environment variable holding the previous root secret (rotate only)"
    )

    args = parser.parse_args()

    try:
        codec = FieldCodec(settings.get_root_secret())
        old_codec = None
        if args.command == "rotate":
            old_secret = os.getenv(args.old_secret_env)
            if not old_secret:
                raise ConfigurationError(f"{args.old_secret_env} must be set to rotate records")
            old_codec = FieldCodec(old_secret)
    except ConfigurationError as e:
        logger.error(f"✗ {e}")
        return 2

    maintainer = RecordMaintainer(
        dsn=args.database_url or settings.get_dsn(),
        codec=codec,
        batch_size=args.batch_size,
        dry_run=args.dry_run
    )

    try:
        await maintainer.connect()
        ok = await maintainer.run(args.command, old_codec=old_codec)
    finally:
        await maintainer.disconnect()

    return 0 if ok else 1


if __name__ == "__main__":
    configure_logging(settings.log_level, settings.log_file)
    sys.exit(asyncio.run(main()))
