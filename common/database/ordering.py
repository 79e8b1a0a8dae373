"""
Sequential order reindexing for sibling records

Siblings under one parent scope (chapters of a document, fragments of a
chapter) carry positions forming exactly {1..N}. Positions are protected by a
unique (scope, position) index, so shifting a run of siblings one row at a
time can collide with a sibling that has not moved yet. Every shift is
therefore done in two phases:

1. Park each affected sibling at -position. Live positions are always
   positive, so the parked range never collides with them.
2. Write each parked sibling to its final position.

All operations run inside the caller's transaction, together with the write
that triggered them, after taking a transaction-scoped lock on the scope.
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from loguru import logger

from common.errors import TransactionError
from .tables import TableSpec

Sibling = Tuple[str, int]  # (record_id, position)


class SiblingStore(ABC):
    """
    Transactional read/write surface the reindexer needs from storage
    """

    @abstractmethod
    def in_transaction(self) -> bool:
        """True when called inside an open transaction"""
        pass

    @abstractmethod
    async def lock_scope(self, scope_id: str) -> None:
        """Serialize reorders of one scope until the transaction ends"""
        pass

    @abstractmethod
    async def count_siblings(self, scope_id: str) -> int:
        pass

    @abstractmethod
    async def fetch_range(
        self,
        scope_id: str,
        low: Optional[int],
        high: Optional[int] = None
    ) -> List[Sibling]:
        """
        Get siblings with low <= position (<= high), highest position first

        A low of None includes parked (non-positive) positions.
        """
        pass

    @abstractmethod
    async def set_order(self, record_id: str, position: int) -> None:
        pass

    @abstractmethod
    async def delete_record(self, record_id: str) -> None:
        pass


class PostgresSiblingStore(SiblingStore):
    """SiblingStore over an asyncpg connection"""

    def __init__(self, conn, table: TableSpec):
        if not table.is_ordered:
            raise ValueError(f"Table {table.name} has no ordering scope")
        self.conn = conn
        self.table = table

    def in_transaction(self) -> bool:
        return self.conn.is_in_transaction()

    async def lock_scope(self, scope_id: str) -> None:
        await self.conn.execute(
            "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
            f"{self.table.name}:{scope_id}"
        )

    async def count_siblings(self, scope_id: str) -> int:
        return await self.conn.fetchval(
            f"SELECT COUNT(*) FROM {self.table.name} WHERE {self.table.scope_column} = $1",
            scope_id
        )

    async def fetch_range(
        self,
        scope_id: str,
        low: Optional[int],
        high: Optional[int] = None
    ) -> List[Sibling]:
        order = self.table.order_column
        query = f"SELECT id, {order} FROM {self.table.name} WHERE {self.table.scope_column} = $1"
        params = [scope_id]
        if low is not None:
            params.append(low)
            query += f" AND {order} >= ${len(params)}"
        if high is not None:
            params.append(high)
            query += f" AND {order} <= ${len(params)}"
        query += f" ORDER BY {order} DESC"

        rows = await self.conn.fetch(query, *params)
        return [(str(row["id"]), row[order]) for row in rows]

    async def set_order(self, record_id: str, position: int) -> None:
        await self.conn.execute(
            f"UPDATE {self.table.name} SET {self.table.order_column} = $1, updated_at = NOW() WHERE id = $2",
            position, record_id
        )

    async def delete_record(self, record_id: str) -> None:
        await self.conn.execute(
            f"DELETE FROM {self.table.name} WHERE id = $1",
            record_id
        )


class OrderReindexer:
    """
    Keeps sibling positions contiguous across inserts, deletes and moves

    Usage:
        async with conn.transaction():
            reindexer = OrderReindexer(PostgresSiblingStore(conn, FRAGMENTS))
            position = await reindexer.insert_at(chapter_id, 2)
            await conn.execute("INSERT INTO fragments ... position = $1", position)
    """

    def __init__(self, store: SiblingStore):
        self.store = store

    async def insert_at(self, scope_id: str, position: Optional[int] = None) -> int:
        """
        Open a gap at position for a new sibling

        Args:
            scope_id: Parent scope
            position: Target position; None appends

        Returns:
            Position reserved for the caller's insert (clamped to N + 1)
        """
        await self._begin(scope_id)
        count = await self.store.count_siblings(scope_id)

        if position is None or position > count + 1:
            position = count + 1
        elif position < 1:
            raise ValueError(f"Position must be >= 1, got {position}")

        affected = await self.store.fetch_range(scope_id, position)
        await self._shift(scope_id, affected, 1)
        return position

    async def remove_at(self, scope_id: str, position: int) -> Optional[str]:
        """
        Delete the sibling at position and close the gap

        Returns:
            Id of the deleted record, or None if the position was empty
        """
        await self._begin(scope_id)

        target = await self.store.fetch_range(scope_id, position, position)
        if not target:
            return None

        record_id = target[0][0]
        try:
            await self.store.delete_record(record_id)
        except Exception as e:
            raise TransactionError(f"Failed to delete {record_id} from scope {scope_id}") from e

        affected = await self.store.fetch_range(scope_id, position + 1)
        await self._shift(scope_id, affected, -1)
        return record_id

    async def move(self, scope_id: str, from_position: int, to_position: int) -> int:
        """
        Relocate one sibling, shifting the siblings between both positions

        Returns:
            Final position of the moved sibling (clamped to N)
        """
        await self._begin(scope_id)
        count = await self.store.count_siblings(scope_id)

        if to_position < 1:
            raise ValueError(f"Position must be >= 1, got {to_position}")
        to_position = min(to_position, count)

        target = await self.store.fetch_range(scope_id, from_position, from_position)
        if not target:
            raise ValueError(f"No sibling at position {from_position} in scope {scope_id}")
        if from_position == to_position:
            return to_position

        record_id = target[0][0]
        if from_position < to_position:
            affected = await self.store.fetch_range(scope_id, from_position + 1, to_position)
            delta = -1
        else:
            affected = await self.store.fetch_range(scope_id, to_position, from_position - 1)
            delta = 1

        try:
            await self.store.set_order(record_id, -from_position)
            await self._shift(scope_id, affected, delta)
            await self.store.set_order(record_id, to_position)
        except TransactionError:
            raise
        except Exception as e:
            raise TransactionError(f"Failed to move {record_id} in scope {scope_id}") from e

        return to_position

    async def normalize(self, scope_id: str) -> int:
        """
        Renumber a scope to 1..N keeping the current relative order

        Siblings left at non-positive positions are included and sort
        before every positive one.

        Returns:
            Number of siblings whose position changed
        """
        await self._begin(scope_id)

        siblings = sorted(
            await self.store.fetch_range(scope_id, None),
            key=lambda sibling: sibling[1]
        )
        changed = [
            (record_id, index)
            for index, (record_id, position) in enumerate(siblings, start=1)
            if position != index
        ]
        if not changed:
            return 0

        # Park below the lowest existing position so no slot is shared
        floor = min(siblings[0][1], 0)

        try:
            for offset, (record_id, _) in enumerate(changed, start=1):
                await self.store.set_order(record_id, floor - offset)
            for record_id, final in changed:
                await self.store.set_order(record_id, final)
        except Exception as e:
            raise TransactionError(f"Failed to renumber scope {scope_id}") from e

        logger.info(f"Renumbered {len(changed)} siblings in scope {scope_id}")
        return len(changed)

    async def _begin(self, scope_id: str) -> None:
        if not self.store.in_transaction():
            raise TransactionError(
                f"Reordering scope {scope_id} requires an open transaction"
            )
        await self.store.lock_scope(scope_id)

    async def _shift(self, scope_id: str, affected: List[Sibling], delta: int) -> None:
        """Move every affected sibling by delta through the parked range"""
        if not affected:
            return

        # Upward shifts finalize from the top, downward shifts from the bottom
        final_order = sorted(affected, key=lambda sibling: sibling[1], reverse=delta > 0)

        try:
            for record_id, position in affected:
                await self.store.set_order(record_id, -position)
            for record_id, position in final_order:
                await self.store.set_order(record_id, position + delta)
        except Exception as e:
            raise TransactionError(
                f"Failed to shift {len(affected)} siblings in scope {scope_id}"
            ) from e

        logger.debug(f"Shifted {len(affected)} siblings by {delta:+d} in scope {scope_id}")
