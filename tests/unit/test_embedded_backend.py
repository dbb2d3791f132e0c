"""Tests for the aiosqlite document store and the embedded backend."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import date
from pathlib import Path

import pytest
import pytest_asyncio

from relstore.runtime.backends import create_backend
from relstore.runtime.backends.embedded import EmbeddedBackend, SQLiteStore, _id_pushdown
from relstore.runtime.config import DataLayerConfig, DbMode
from relstore.runtime.errors import NotFoundError
from relstore.runtime.event_bus import BULK_CHANNEL, ChangeBus, ChangeEvent
from relstore.runtime.identity import StaticIdentity
from relstore.runtime.schema_store import LINK_MODEL_ID, SchemaStore
from relstore.runtime.transaction import Operation


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[SQLiteStore]:
    async with SQLiteStore(tmp_path / "data.db") as s:
        yield s


@pytest_asyncio.fixture
async def embedded(
    tmp_path: Path,
    schema: SchemaStore,
    bus: ChangeBus,
    identity: StaticIdentity,
) -> AsyncIterator[EmbeddedBackend]:
    config = DataLayerConfig(db_mode=DbMode.EMBEDDED, db_path=str(tmp_path / "db" / "data.db"))
    async with EmbeddedBackend(schema, bus=bus, identity=identity, config=config) as backend:
        yield backend


class TestIdPushdown:
    """Test which predicates are answered by id."""

    def test_pure_id_predicates(self) -> None:
        assert _id_pushdown({"id": "a"}) == ["a"]
        assert _id_pushdown({"id": {"$in": ["a", "b"]}}) == ["a", "b"]

    def test_other_predicates(self) -> None:
        assert _id_pushdown({}) is None
        assert _id_pushdown({"id": "a", "name": "x"}) is None
        assert _id_pushdown({"id": {"$ne": "a"}}) is None


class TestSQLiteStore:
    """Test raw document persistence."""

    @pytest.mark.asyncio
    async def test_insert_get_and_query(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "title": "Ship"}, {"id": "t2", "title": "Plan"}])

        assert await store.get("task", "t1") == {"id": "t1", "title": "Ship"}
        assert await store.get("task", "nope") is None
        assert [d["id"] for d in await store.query("task", {"title": "Plan"})] == ["t2"]
        assert [d["id"] for d in await store.query("task", {"id": {"$in": ["t2", "t1"]}})] == ["t1", "t2"]
        assert await store.query("note", {}) == []

    @pytest.mark.asyncio
    async def test_insert_replaces_existing_id(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "title": "Ship"}])
        await store.insert("task", [{"id": "t1", "title": "Shipped"}])

        assert await store.count("task", {}) == 1
        assert (await store.get("task", "t1"))["title"] == "Shipped"

    @pytest.mark.asyncio
    async def test_non_json_values_are_encoded(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "due": date(2024, 3, 15), "tags": {"a"}}])

        assert await store.get("task", "t1") == {"id": "t1", "due": "2024-03-15", "tags": ["a"]}

    @pytest.mark.asyncio
    async def test_apply_sees_earlier_updates(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "a": 1}])

        updated = await store.apply(
            [Operation("task", "t1", {"b": 2}), Operation("task", "t1", {"a": 3})]
        )

        assert updated[-1] == {"id": "t1", "a": 3, "b": 2}
        assert await store.get("task", "t1") == {"id": "t1", "a": 3, "b": 2}

    @pytest.mark.asyncio
    async def test_apply_is_all_or_nothing(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "a": 1}])

        with pytest.raises(NotFoundError):
            await store.apply([Operation("task", "t1", {"a": 2}), Operation("task", "t9", {"a": 2})])

        assert await store.get("task", "t1") == {"id": "t1", "a": 1}

    @pytest.mark.asyncio
    async def test_remove_and_count(self, store: SQLiteStore) -> None:
        await store.insert("task", [{"id": "t1", "done": True}, {"id": "t2", "done": False}])

        assert await store.count("task", {"done": True}) == 1
        assert await store.remove("task", ["t1", "t9"]) == 1
        assert await store.remove("task", []) == 0
        assert await store.count("task", {}) == 1

    @pytest.mark.asyncio
    async def test_documents_survive_reopening(self, tmp_path: Path) -> None:
        path = tmp_path / "data.db"
        async with SQLiteStore(path) as first:
            await first.insert("task", [{"id": "t1", "title": "Ship"}])

        async with SQLiteStore(path) as second:
            assert await second.get("task", "t1") == {"id": "t1", "title": "Ship"}


class TestEmbeddedBackend:
    """Test the embedded backend end to end."""

    @pytest.mark.asyncio
    async def test_link_and_deep_update(
        self, embedded: EmbeddedBackend, events: list[ChangeEvent]
    ) -> None:
        await embedded.insert_one("customer", {"id": "c1", "name": "Acme"})
        await embedded.insert_one("order", {"id": "o1", "ref": "O-1", "price": 10, "quantity": 2, "amount": 20})
        link = {"id": "l1", "mX": "order", "rX": "o1", "fX": "customer", "mY": "customer", "rY": "c1", "fY": "orders"}
        await embedded.insert_one(LINK_MODEL_ID, link)
        await embedded.update_link(link)
        events.clear()

        result = await embedded.update_one_deep("order", "o1", {"quantity": 3})

        assert result.ok
        assert [e.channel for e in events] == [BULK_CHANNEL]
        assert events[0].db_mode == "embedded"
        customer = (await embedded.find_one("customer", "c1")).data
        assert (customer["orderCount"], customer["orderTotal"]) == (1, 30)
        assert (await embedded.find_one("order", "o1")).data["customerName"] == "Acme"

    @pytest.mark.asyncio
    async def test_find_and_delete(self, embedded: EmbeddedBackend) -> None:
        await embedded.insert_many(
            "customer", [{"id": "c1", "name": "B"}, {"id": "c2", "name": "A"}]
        )

        found = await embedded.find("customer", {"sort": [{"name": "asc"}]})
        deleted = await embedded.delete_one("customer", "c2", send_to_trash=True)

        assert [d["id"] for d in found.data] == ["c2", "c1"]
        assert deleted.ok
        assert (await embedded.count("customer")).data == 1
        assert (await embedded.count("trash")).data == 1

    @pytest.mark.asyncio
    async def test_store_from_config(self, tmp_path: Path, schema: SchemaStore) -> None:
        config = DataLayerConfig(db_mode=DbMode.EMBEDDED, db_path=str(tmp_path / "x" / "y.db"))

        backend = create_backend(schema, config, bus=ChangeBus())

        assert isinstance(backend, EmbeddedBackend)
        assert backend.store.db_path == tmp_path / "x" / "y.db"
        await backend.close()
