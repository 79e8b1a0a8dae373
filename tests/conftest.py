"""
Pytest configuration and fixtures
"""
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Dict, List, Optional, Tuple

import asyncpg
import pytest
import pytest_asyncio

from common.database.ordering import SiblingStore
from common.security import FieldCodec, reset_field_codec


# Test configuration
TEST_ROOT_SECRET = "test-root-secret-not-for-production"
DB_URL = os.getenv("DATABASE_URL")
SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "..", "database", "schema.sql")


class UniqueViolation(Exception):
    """Raised by the in-memory store when (scope, position) is taken"""


class InMemorySiblingStore(SiblingStore):
    """
    SiblingStore keeping (scope, position) unique on every single write,
    like a non-deferrable unique index, with snapshot rollback.
    """

    def __init__(self):
        self.rows: Dict[str, Tuple[str, int]] = {}  # record_id -> (scope_id, position)
        self.locked: List[str] = []
        self.writes = 0
        self.fail_on_write: Optional[int] = None
        self._snapshot: Optional[Dict[str, Tuple[str, int]]] = None

    @asynccontextmanager
    async def transaction(self):
        self._snapshot = dict(self.rows)
        try:
            yield self
        except BaseException:
            self.rows = self._snapshot
            raise
        finally:
            self._snapshot = None

    def in_transaction(self) -> bool:
        return self._snapshot is not None

    async def lock_scope(self, scope_id: str) -> None:
        self.locked.append(scope_id)

    async def count_siblings(self, scope_id: str) -> int:
        return sum(1 for scope, _ in self.rows.values() if scope == scope_id)

    async def fetch_range(self, scope_id: str, low: Optional[int], high: Optional[int] = None):
        siblings = [
            (record_id, position)
            for record_id, (scope, position) in self.rows.items()
            if scope == scope_id
            and (low is None or position >= low)
            and (high is None or position <= high)
        ]
        return sorted(siblings, key=lambda sibling: sibling[1], reverse=True)

    async def set_order(self, record_id: str, position: int) -> None:
        self.writes += 1
        if self.fail_on_write is not None and self.writes >= self.fail_on_write:
            raise RuntimeError("simulated storage failure")

        scope_id, _ = self.rows[record_id]
        for other_id, (scope, other_position) in self.rows.items():
            if other_id != record_id and scope == scope_id and other_position == position:
                raise UniqueViolation(f"({scope_id}, {position}) already taken by {other_id}")
        self.rows[record_id] = (scope_id, position)

    async def delete_record(self, record_id: str) -> None:
        del self.rows[record_id]

    def add(self, scope_id: str, record_id: str, position: int) -> None:
        """The caller's own insert of a new sibling"""
        for scope, other_position in self.rows.values():
            if scope == scope_id and other_position == position:
                raise UniqueViolation(f"({scope_id}, {position}) already taken")
        self.rows[record_id] = (scope_id, position)

    def positions(self, scope_id: str) -> Dict[str, int]:
        return {
            record_id: position
            for record_id, (scope, position) in self.rows.items()
            if scope == scope_id
        }


class FakeConnection:
    """
    Minimal asyncpg connection double

    Each query method delegates to a handler(query, *args); every call is
    recorded in `calls` as (method, query, args).
    """

    def __init__(
        self,
        fetch: Optional[Callable] = None,
        fetchrow: Optional[Callable] = None,
        fetchval: Optional[Callable] = None,
        execute: Optional[Callable] = None,
    ):
        self.handlers = {
            "fetch": fetch or (lambda query, *args: []),
            "fetchrow": fetchrow or (lambda query, *args: None),
            "fetchval": fetchval or (lambda query, *args: None),
            "execute": execute or (lambda query, *args: "OK"),
        }
        self.calls: List[Tuple[str, str, tuple]] = []
        self.depth = 0
        self.rolled_back = False

    async def _call(self, method, query, *args):
        self.calls.append((method, query, args))
        return self.handlers[method](query, *args)

    async def fetch(self, query, *args):
        return await self._call("fetch", query, *args)

    async def fetchrow(self, query, *args):
        return await self._call("fetchrow", query, *args)

    async def fetchval(self, query, *args):
        return await self._call("fetchval", query, *args)

    async def execute(self, query, *args):
        return await self._call("execute", query, *args)

    def is_in_transaction(self) -> bool:
        return self.depth > 0

    @asynccontextmanager
    async def transaction(self):
        self.depth += 1
        try:
            yield
        except BaseException:
            self.rolled_back = True
            raise
        finally:
            self.depth -= 1

    def queries(self, method: Optional[str] = None) -> List[str]:
        return [query for m, query, _ in self.calls if method is None or m == method]


class FakePool:
    """Pool double handing out a single FakeConnection"""

    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


@pytest.fixture(autouse=True)
def reset_codec_singleton():
    """Keep the process-wide codec from leaking between tests"""
    reset_field_codec()
    yield
    reset_field_codec()


@pytest.fixture
def codec() -> FieldCodec:
    return FieldCodec(TEST_ROOT_SECRET)


@pytest.fixture
def sibling_store() -> InMemorySiblingStore:
    return InMemorySiblingStore()


@pytest_asyncio.fixture
async def db_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Database connection pool with a freshly applied schema"""
    if not DB_URL:
        pytest.skip("DATABASE_URL not set")

    pool = await asyncpg.create_pool(DB_URL, min_size=1, max_size=5)
    with open(SCHEMA_PATH) as schema:
        async with pool.acquire() as conn:
            await conn.execute("DROP TABLE IF EXISTS fragments, chapters, documents, collections, users CASCADE")
            await conn.execute(schema.read())
    yield pool
    await pool.close()
