"""
PostgreSQL adapter for direct database access with field-level encryption
"""
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Type
from uuid import UUID, uuid4
import asyncpg
from loguru import logger
from pydantic import BaseModel

from .base import DatabaseAdapter
from .ordering import OrderReindexer, PostgresSiblingStore
from .tables import CHAPTERS, COLLECTIONS, DOCUMENTS, FRAGMENTS, USERS, TableSpec
from common.errors import CodecError, TransactionError
from common.models import (
    ChapterInput,
    ChapterUpdate,
    CollectionInput,
    CollectionUpdate,
    DocumentInput,
    DocumentUpdate,
    FragmentInput,
    FragmentUpdate,
    UserInput,
    UserUpdate,
)
from common.security import FieldCodec, get_field_codec


class PostgreSQLAdapter(DatabaseAdapter):
    """
    PostgreSQL database adapter with field-level encryption

    Uses asyncpg for async PostgreSQL operations. Sensitive columns declared
    in each TableSpec are sealed per record before every write and opened
    after every read; iv and tag columns hold the joined nonces and tags.

    Chapters and fragments are ordered children: their inserts, deletes and
    moves run through OrderReindexer inside the same transaction.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "storyvault",
        user: str = "storyvault",
        password: str = "",
        dsn: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10,
        codec: Optional[FieldCodec] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

        # A missing root secret fails here, before any request is served
        self.codec = codec or get_field_codec()
        logger.info("Encryption enabled for PostgreSQL adapter")

    # ===================================
    # Encryption helpers
    # ===================================
    def _seal(self, table: TableSpec, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Encrypt the sensitive values of a record

        Args:
            table: Table layout
            record_id: Record id the fields are bound to
            values: Plaintext values; None values are stored as NULL

        Returns:
            Column values for every encrypted field plus iv and tag
        """
        sensitive = {
            name: values[name]
            for name in table.encrypted_fields
            if values.get(name) is not None
        }
        bundle = self.codec.encrypt_record(sensitive, record_id)

        columns: Dict[str, Any] = {name: None for name in table.encrypted_fields}
        columns.update(bundle.to_columns())
        return columns

    def _open(self, table: TableSpec, row) -> Dict[str, Any]:
        """
        Decrypt a database row

        Raises:
            AlignmentError, IntegrityError: If the row cannot be authenticated
        """
        record = {
            key: str(value) if isinstance(value, UUID) else value
            for key, value in dict(row).items()
        }
        cipher_by_field = {
            name: record[name]
            for name in table.encrypted_fields
            if record.get(name) is not None
        }
        plaintext = self.codec.decrypt_record(
            cipher_by_field,
            record["id"],
            record.pop("iv", ""),
            record.pop("tag", "")
        )
        record.update(plaintext)
        return record

    def _open_rows(self, table: TableSpec, rows) -> List[Dict[str, Any]]:
        """Decrypt many rows, skipping the ones that fail authentication"""
        results = []
        for row in rows:
            try:
                results.append(self._open(table, row))
            except CodecError as e:
                logger.warning(
                    f"Skipping {table.name} record {e.record_id}: {type(e).__name__}"
                )
        return results

    @staticmethod
    def _to_db(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, UUID):
            return str(value)
        return value

    # ===================================
    # Generic record operations
    # ===================================
    async def _insert(self, conn, table: TableSpec, values: Dict[str, Any]) -> Dict[str, Any]:
        record_id = str(uuid4())

        columns: Dict[str, Any] = {"id": record_id}
        for name in table.plain_fields:
            if name in values:
                columns[name] = self._to_db(values[name])
        if table.is_ordered:
            columns[table.order_column] = values[table.order_column]
        columns.update(self._seal(table, record_id, values))

        names = ", ".join(columns)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        row = await conn.fetchrow(
            f"INSERT INTO {table.name} ({names}) VALUES ({placeholders}) RETURNING *",
            *columns.values()
        )
        return self._open(table, row)

    async def _create(self, table: TableSpec, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.pool.acquire() as conn:
            record = await self._insert(conn, table, values)
        logger.info(f"Created {table.name} record {record['id']}")
        return record

    async def _get(self, table: TableSpec, record_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {table.name} WHERE id = $1",
                record_id
            )
            if not row:
                return None
            return self._open(table, row)

    async def _list(self, table: TableSpec, query: str, *args) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return self._open_rows(table, rows)

    async def _update(
        self,
        table: TableSpec,
        record_id: str,
        fields: Dict[str, Any],
        model: Type[BaseModel]
    ) -> Optional[Dict[str, Any]]:
        """
        Update a record, re-sealing every sensitive field with fresh nonces

        Args:
            table: Table layout
            record_id: Record id
            fields: Sensitive and/or plain fields to change
            model: Update model validating the fields

        Returns:
            Updated record with decrypted fields, or None if not found

        Raises:
            ValueError: If a field is unknown, not updatable or invalid
        """
        unknown = set(fields) - set(model.model_fields)
        if unknown:
            raise ValueError(f"Cannot update {table.name} fields: {', '.join(sorted(unknown))}")
        fields = model(**fields).model_dump(exclude_unset=True)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT * FROM {table.name} WHERE id = $1 FOR UPDATE",
                    record_id
                )
                if not row:
                    return None

                current = self._open(table, row)
                merged = {name: current.get(name) for name in table.encrypted_fields}
                merged.update({k: v for k, v in fields.items() if k in table.encrypted_fields})

                columns = {
                    k: self._to_db(v) for k, v in fields.items() if k in table.plain_fields
                }
                columns.update(self._seal(table, record_id, merged))

                set_clauses = [f"{name} = ${i}" for i, name in enumerate(columns, start=1)]
                row = await conn.fetchrow(
                    f"""
                    UPDATE {table.name}
                    SET {', '.join(set_clauses)}, updated_at = NOW()
                    WHERE id = ${len(columns) + 1}
                    RETURNING *
                    """,
                    *columns.values(), record_id
                )
                return self._open(table, row)

    async def _delete(self, table: TableSpec, record_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {table.name} WHERE id = $1",
                record_id
            )
            return result.split()[-1] == "1"

    # ===================================
    # Ordered record operations
    # ===================================
    async def _locate(
        self,
        conn,
        store: PostgresSiblingStore,
        record_id: str
    ) -> Optional[Tuple[str, int]]:
        """Find scope and position of a sibling, holding its scope lock"""
        table = store.table
        scope_id = await conn.fetchval(
            f"SELECT {table.scope_column} FROM {table.name} WHERE id = $1",
            record_id
        )
        if scope_id is None:
            return None

        scope_id = str(scope_id)
        await store.lock_scope(scope_id)
        # Re-read under the lock, a concurrent reorder may have moved it
        position = await conn.fetchval(
            f"SELECT {table.order_column} FROM {table.name} WHERE id = $1",
            record_id
        )
        if position is None:
            return None
        return scope_id, position

    async def _create_ordered(
        self,
        table: TableSpec,
        values: Dict[str, Any],
        position: Optional[int]
    ) -> Dict[str, Any]:
        scope_id = str(values[table.scope_column])
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    reindexer = OrderReindexer(PostgresSiblingStore(conn, table))
                    values[table.order_column] = await reindexer.insert_at(scope_id, position)
                    record = await self._insert(conn, table, values)
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to insert into {table.name} scope {scope_id}: {e}")
            raise TransactionError(f"Failed to insert into {table.name} scope {scope_id}") from e

        logger.info(
            f"Created {table.name} record {record['id']} at position "
            f"{record[table.order_column]} in scope {scope_id}"
        )
        return record

    async def _move_ordered(self, table: TableSpec, record_id: str, position: int) -> Optional[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    store = PostgresSiblingStore(conn, table)
                    located = await self._locate(conn, store, record_id)
                    if located is None:
                        return None

                    scope_id, current = located
                    await OrderReindexer(store).move(scope_id, current, position)
                    row = await conn.fetchrow(
                        f"SELECT * FROM {table.name} WHERE id = $1",
                        record_id
                    )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to move {table.name} record {record_id}: {e}")
            raise TransactionError(f"Failed to move {table.name} record {record_id}") from e

        return self._open(table, row)

    async def _delete_ordered(self, table: TableSpec, record_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    store = PostgresSiblingStore(conn, table)
                    located = await self._locate(conn, store, record_id)
                    if located is None:
                        return False

                    scope_id, position = located
                    removed = await OrderReindexer(store).remove_at(scope_id, position)
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to delete {table.name} record {record_id}: {e}")
            raise TransactionError(f"Failed to delete {table.name} record {record_id}") from e

        return removed is not None

    # ===================================
    # Connection management
    # ===================================
    async def connect(self):
        """Establish connection pool"""
        try:
            if self.dsn:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size
                )
            else:
                self.pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.user,
                    password=self.password,
                    min_size=self.min_size,
                    max_size=self.max_size
                )
            logger.info("PostgreSQL connection pool created")
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise

    async def disconnect(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("PostgreSQL connection pool closed")

    async def health_check(self) -> bool:
        """Check database connectivity"""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                return result == 1
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    # ===================================
    # User operations
    # ===================================
    async def create_user(self, data: UserInput) -> Dict[str, Any]:
        """
        Create a user with encrypted email and display name

        Returns:
            Created user record (decrypted)
        """
        return await self._create(USERS, data.model_dump())

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(USERS, user_id)

    async def list_users(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return await self._list(
            USERS,
            "SELECT * FROM users ORDER BY created_at LIMIT $1 OFFSET $2",
            limit, offset
        )

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        users = await self._list(
            USERS,
            "SELECT * FROM users WHERE is_active = TRUE ORDER BY created_at"
        )
        wanted = email.strip().lower()
        for user in users:
            if user["email"].lower() == wanted:
                return user
        return None

    async def update_user(self, user_id: str, **fields) -> Optional[Dict[str, Any]]:
        return await self._update(USERS, user_id, fields, UserUpdate)

    async def delete_user(self, user_id: str) -> bool:
        return await self._delete(USERS, user_id)

    # ===================================
    # Collection operations
    # ===================================
    async def create_collection(self, data: CollectionInput) -> Dict[str, Any]:
        return await self._create(COLLECTIONS, data.model_dump())

    async def get_collection(self, collection_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(COLLECTIONS, collection_id)

    async def list_collections(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self._list(
            COLLECTIONS,
            "SELECT * FROM collections WHERE owner_id = $1 ORDER BY created_at DESC",
            owner_id
        )

    async def update_collection(self, collection_id: str, **fields) -> Optional[Dict[str, Any]]:
        return await self._update(COLLECTIONS, collection_id, fields, CollectionUpdate)

    async def delete_collection(self, collection_id: str) -> bool:
        return await self._delete(COLLECTIONS, collection_id)

    # ===================================
    # Document operations
    # ===================================
    async def create_document(self, data: DocumentInput) -> Dict[str, Any]:
        return await self._create(DOCUMENTS, data.model_dump())

    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(DOCUMENTS, document_id)

    async def list_documents(
        self,
        owner_id: Optional[str] = None,
        collection_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Get documents filtered by owner and/or collection

        Returns:
            Decrypted documents, newest first
        """
        conditions = []
        values = []
        if owner_id:
            values.append(owner_id)
            conditions.append(f"owner_id = ${len(values)}")
        if collection_id:
            values.append(collection_id)
            conditions.append(f"collection_id = ${len(values)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return await self._list(
            DOCUMENTS,
            f"SELECT * FROM documents {where} ORDER BY created_at DESC",
            *values
        )

    async def update_document(self, document_id: str, **fields) -> Optional[Dict[str, Any]]:
        return await self._update(DOCUMENTS, document_id, fields, DocumentUpdate)

    async def delete_document(self, document_id: str) -> bool:
        return await self._delete(DOCUMENTS, document_id)

    # ===================================
    # Chapter operations
    # ===================================
    async def create_chapter(self, data: ChapterInput) -> Dict[str, Any]:
        return await self._create_ordered(
            CHAPTERS,
            data.model_dump(exclude={"position"}),
            data.position
        )

    async def get_chapter(self, chapter_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(CHAPTERS, chapter_id)

    async def list_chapters(self, document_id: str) -> List[Dict[str, Any]]:
        return await self._list(
            CHAPTERS,
            "SELECT * FROM chapters WHERE document_id = $1 ORDER BY position",
            document_id
        )

    async def update_chapter(self, chapter_id: str, **fields) -> Optional[Dict[str, Any]]:
        return await self._update(CHAPTERS, chapter_id, fields, ChapterUpdate)

    async def move_chapter(self, chapter_id: str, position: int) -> Optional[Dict[str, Any]]:
        return await self._move_ordered(CHAPTERS, chapter_id, position)

    async def delete_chapter(self, chapter_id: str) -> bool:
        return await self._delete_ordered(CHAPTERS, chapter_id)

    # ===================================
    # Fragment operations
    # ===================================
    async def create_fragment(self, data: FragmentInput) -> Dict[str, Any]:
        return await self._create_ordered(
            FRAGMENTS,
            data.model_dump(exclude={"position"}),
            data.position
        )

    async def get_fragment(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(FRAGMENTS, fragment_id)

    async def list_fragments(self, chapter_id: str) -> List[Dict[str, Any]]:
        return await self._list(
            FRAGMENTS,
            "SELECT * FROM fragments WHERE chapter_id = $1 ORDER BY position",
            chapter_id
        )

    async def update_fragment(self, fragment_id: str, **fields) -> Optional[Dict[str, Any]]:
        return await self._update(FRAGMENTS, fragment_id, fields, FragmentUpdate)

    async def move_fragment(self, fragment_id: str, position: int) -> Optional[Dict[str, Any]]:
        return await self._move_ordered(FRAGMENTS, fragment_id, position)

    async def delete_fragment(self, fragment_id: str) -> bool:
        return await self._delete_ordered(FRAGMENTS, fragment_id)
