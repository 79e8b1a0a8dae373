"""
Tests for sibling order reindexing
"""
import random

import pytest

from common.database.ordering import OrderReindexer, PostgresSiblingStore
from common.database.tables import CHAPTERS, FRAGMENTS, USERS
from common.errors import TransactionError
from tests.conftest import FakeConnection, InMemorySiblingStore

SCOPE = "chapter-1"


def seed(store: InMemorySiblingStore, *names: str, scope: str = SCOPE):
    for position, name in enumerate(names, start=1):
        store.add(scope, name, position)


def assert_contiguous(store: InMemorySiblingStore, scope: str = SCOPE):
    assert sorted(store.positions(scope).values()) == list(range(1, len(store.positions(scope)) + 1))


async def insert(store: InMemorySiblingStore, name: str, position=None, scope: str = SCOPE) -> int:
    async with store.transaction():
        reserved = await OrderReindexer(store).insert_at(scope, position)
        store.add(scope, name, reserved)
    return reserved


async def remove(store: InMemorySiblingStore, position: int, scope: str = SCOPE):
    async with store.transaction():
        return await OrderReindexer(store).remove_at(scope, position)


class TestInsertAt:

    @pytest.mark.asyncio
    async def test_insert_then_remove_scenario(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        assert await insert(sibling_store, "D", 2) == 2
        assert sibling_store.positions(SCOPE) == {"A": 1, "D": 2, "B": 3, "C": 4}

        assert await remove(sibling_store, 2) == "D"
        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3}

    @pytest.mark.asyncio
    async def test_insert_at_front(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        await insert(sibling_store, "Z", 1)

        assert sibling_store.positions(SCOPE) == {"Z": 1, "A": 2, "B": 3, "C": 4}

    @pytest.mark.asyncio
    async def test_append_needs_no_shift(self, sibling_store):
        seed(sibling_store, "A", "B")

        assert await insert(sibling_store, "C") == 3
        assert sibling_store.writes == 0

    @pytest.mark.asyncio
    async def test_position_past_end_is_clamped(self, sibling_store):
        seed(sibling_store, "A", "B")

        assert await insert(sibling_store, "C", 10) == 3
        assert sibling_store.writes == 0
        assert_contiguous(sibling_store)

    @pytest.mark.asyncio
    async def test_empty_scope(self, sibling_store):
        assert await insert(sibling_store, "A", 5) == 1
        assert sibling_store.positions(SCOPE) == {"A": 1}

    @pytest.mark.asyncio
    async def test_invalid_position(self, sibling_store):
        seed(sibling_store, "A")
        with pytest.raises(ValueError):
            await insert(sibling_store, "B", 0)

    @pytest.mark.asyncio
    async def test_shift_goes_through_parked_range(self, sibling_store):
        seed(sibling_store, "A", "B", "C")
        written = []
        original_set_order = sibling_store.set_order

        async def recording_set_order(record_id, position):
            written.append((record_id, position))
            await original_set_order(record_id, position)

        sibling_store.set_order = recording_set_order
        await insert(sibling_store, "D", 2)

        assert written == [("C", -3), ("B", -2), ("C", 4), ("B", 3)]


class TestRemoveAt:

    @pytest.mark.asyncio
    async def test_remove_last_needs_no_shift(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        assert await remove(sibling_store, 3) == "C"
        assert sibling_store.writes == 0
        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2}

    @pytest.mark.asyncio
    async def test_remove_first(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        await remove(sibling_store, 1)

        assert sibling_store.positions(SCOPE) == {"B": 1, "C": 2}

    @pytest.mark.asyncio
    async def test_remove_missing_position(self, sibling_store):
        seed(sibling_store, "A")

        assert await remove(sibling_store, 4) is None
        assert sibling_store.positions(SCOPE) == {"A": 1}

    @pytest.mark.asyncio
    async def test_remove_from_empty_scope(self, sibling_store):
        assert await remove(sibling_store, 1) is None


class TestMove:

    @pytest.mark.asyncio
    async def test_move_down(self, sibling_store):
        seed(sibling_store, "A", "B", "C", "D")

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).move(SCOPE, 1, 3) == 3

        assert sibling_store.positions(SCOPE) == {"B": 1, "C": 2, "A": 3, "D": 4}

    @pytest.mark.asyncio
    async def test_move_up(self, sibling_store):
        seed(sibling_store, "A", "B", "C", "D")

        async with sibling_store.transaction():
            await OrderReindexer(sibling_store).move(SCOPE, 4, 2)

        assert sibling_store.positions(SCOPE) == {"A": 1, "D": 2, "B": 3, "C": 4}

    @pytest.mark.asyncio
    async def test_move_past_end_is_clamped(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).move(SCOPE, 1, 99) == 3

        assert sibling_store.positions(SCOPE) == {"B": 1, "C": 2, "A": 3}

    @pytest.mark.asyncio
    async def test_move_to_same_position(self, sibling_store):
        seed(sibling_store, "A", "B")

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).move(SCOPE, 2, 2) == 2
        assert sibling_store.writes == 0

    @pytest.mark.asyncio
    async def test_move_missing_sibling(self, sibling_store):
        seed(sibling_store, "A")

        with pytest.raises(ValueError):
            async with sibling_store.transaction():
                await OrderReindexer(sibling_store).move(SCOPE, 3, 1)


class TestNormalize:

    @pytest.mark.asyncio
    async def test_closes_gaps_keeping_order(self, sibling_store):
        sibling_store.add(SCOPE, "A", 2)
        sibling_store.add(SCOPE, "B", 5)
        sibling_store.add(SCOPE, "C", 9)

        async with sibling_store.transaction():
            changed = await OrderReindexer(sibling_store).normalize(SCOPE)

        assert changed == 3
        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3}

    @pytest.mark.asyncio
    async def test_contiguous_scope_is_untouched(self, sibling_store):
        seed(sibling_store, "A", "B", "C")

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).normalize(SCOPE) == 0
        assert sibling_store.writes == 0

    @pytest.mark.asyncio
    async def test_partial_gap(self, sibling_store):
        sibling_store.add(SCOPE, "A", 1)
        sibling_store.add(SCOPE, "B", 2)
        sibling_store.add(SCOPE, "C", 4)
        sibling_store.add(SCOPE, "D", 5)

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).normalize(SCOPE) == 2

        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3, "D": 4}

    @pytest.mark.asyncio
    async def test_repairs_parked_positions(self, sibling_store):
        sibling_store.add(SCOPE, "A", -2)
        sibling_store.add(SCOPE, "B", 1)
        sibling_store.add(SCOPE, "C", 3)

        async with sibling_store.transaction():
            assert await OrderReindexer(sibling_store).normalize(SCOPE) == 2

        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3}

    @pytest.mark.asyncio
    async def test_parked_slots_avoid_existing_negatives(self, sibling_store):
        sibling_store.add(SCOPE, "A", -1)
        sibling_store.add(SCOPE, "B", -3)
        sibling_store.add(SCOPE, "C", 2)

        async with sibling_store.transaction():
            await OrderReindexer(sibling_store).normalize(SCOPE)

        assert sibling_store.positions(SCOPE) == {"B": 1, "A": 2, "C": 3}


class TestTransactions:

    @pytest.mark.asyncio
    async def test_requires_open_transaction(self, sibling_store):
        seed(sibling_store, "A")
        reindexer = OrderReindexer(sibling_store)

        with pytest.raises(TransactionError):
            await reindexer.insert_at(SCOPE, 1)
        with pytest.raises(TransactionError):
            await reindexer.remove_at(SCOPE, 1)
        with pytest.raises(TransactionError):
            await reindexer.move(SCOPE, 1, 1)
        with pytest.raises(TransactionError):
            await reindexer.normalize(SCOPE)
        assert sibling_store.positions(SCOPE) == {"A": 1}

    @pytest.mark.asyncio
    async def test_locks_scope_before_reading(self, sibling_store):
        seed(sibling_store, "A", "B")

        await insert(sibling_store, "C", 1)
        await remove(sibling_store, 1)

        assert sibling_store.locked == [SCOPE, SCOPE]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_on_write", [1, 2, 3, 4])
    async def test_failure_mid_shift_rolls_back(self, sibling_store, fail_on_write):
        seed(sibling_store, "A", "B", "C")
        sibling_store.fail_on_write = fail_on_write

        with pytest.raises(TransactionError):
            await insert(sibling_store, "D", 2)

        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3}

    @pytest.mark.asyncio
    async def test_failure_during_delete_shift_keeps_deleted_record(self, sibling_store):
        seed(sibling_store, "A", "B", "C")
        sibling_store.fail_on_write = 2

        with pytest.raises(TransactionError):
            await remove(sibling_store, 1)

        assert sibling_store.positions(SCOPE) == {"A": 1, "B": 2, "C": 3}


class TestScopes:

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, sibling_store):
        seed(sibling_store, "A", "B", scope="one")
        seed(sibling_store, "X", "Y", scope="two")

        await insert(sibling_store, "C", 1, scope="one")

        assert sibling_store.positions("one") == {"C": 1, "A": 2, "B": 3}
        assert sibling_store.positions("two") == {"X": 1, "Y": 2}

    @pytest.mark.asyncio
    async def test_random_operations_keep_positions_contiguous(self, sibling_store):
        rng = random.Random(42)
        names = iter(f"r{i}" for i in range(1000))

        for _ in range(300):
            count = len(sibling_store.positions(SCOPE))
            choice = rng.random()
            if count == 0 or choice < 0.5:
                await insert(sibling_store, next(names), rng.randint(1, count + 2))
            elif choice < 0.8:
                await remove(sibling_store, rng.randint(1, count))
            else:
                async with sibling_store.transaction():
                    await OrderReindexer(sibling_store).move(SCOPE, rng.randint(1, count), rng.randint(1, count))
            assert_contiguous(sibling_store)


class TestPostgresSiblingStore:

    def test_rejects_unordered_table(self):
        with pytest.raises(ValueError):
            PostgresSiblingStore(FakeConnection(), USERS)

    @pytest.mark.asyncio
    async def test_lock_key_is_table_and_scope(self):
        conn = FakeConnection()
        await PostgresSiblingStore(conn, FRAGMENTS).lock_scope("abc")

        method, query, args = conn.calls[0]
        assert "pg_advisory_xact_lock" in query
        assert args == ("fragments:abc",)

    @pytest.mark.asyncio
    async def test_fetch_range(self):
        conn = FakeConnection(fetch=lambda query, *args: [
            {"id": "b", "position": 3},
            {"id": "a", "position": 2},
        ])
        store = PostgresSiblingStore(conn, CHAPTERS)

        assert await store.fetch_range("doc", 2) == [("b", 3), ("a", 2)]
        assert await store.fetch_range("doc", 2, 2)

        open_query, bounded_query = conn.queries("fetch")
        assert "document_id = $1" in open_query and "$3" not in open_query
        assert "position <= $3" in bounded_query
        assert "ORDER BY position DESC" in bounded_query
        assert conn.calls[1][2] == ("doc", 2, 2)

    @pytest.mark.asyncio
    async def test_fetch_whole_scope(self):
        conn = FakeConnection()
        await PostgresSiblingStore(conn, FRAGMENTS).fetch_range("chap", None)

        query = conn.queries("fetch")[0]
        assert ">=" not in query and "<=" not in query
        assert conn.calls[0][2] == ("chap",)

    @pytest.mark.asyncio
    async def test_in_transaction_follows_connection(self):
        conn = FakeConnection()
        store = PostgresSiblingStore(conn, FRAGMENTS)

        assert not store.in_transaction()
        async with conn.transaction():
            assert store.in_transaction()

    @pytest.mark.asyncio
    async def test_set_order_and_delete(self):
        conn = FakeConnection()
        store = PostgresSiblingStore(conn, FRAGMENTS)

        await store.set_order("frag", -2)
        await store.delete_record("frag")

        update, delete = conn.queries("execute")
        assert update.startswith("UPDATE fragments SET position = $1")
        assert conn.calls[0][2] == (-2, "frag")
        assert delete == "DELETE FROM fragments WHERE id = $1"
