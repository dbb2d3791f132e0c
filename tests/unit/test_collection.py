"""Tests for event-maintained collections."""

from __future__ import annotations

import pytest
import pytest_asyncio

from relstore.runtime.backends.memory import MemoryBackend
from relstore.runtime.collection import Collection
from relstore.runtime.schema_store import LINK_MODEL_ID, SchemaStore

PARIS = {"filter": {"fieldId": "city", "operator": "=", "value": "Paris"}, "sort": [{"name": "asc"}]}


@pytest_asyncio.fixture
async def populated(backend: MemoryBackend) -> MemoryBackend:
    await backend.insert_many(
        "customer",
        [
            {"id": "c1", "name": "Bolt", "city": "Paris"},
            {"id": "c2", "name": "Acme", "city": "Lyon"},
            {"id": "c3", "name": "Core", "city": "Paris"},
        ],
    )
    return backend


def ids(collection: Collection) -> list[str]:
    return [r["id"] for r in collection.records]


class TestLoading:
    """Test loading and caching."""

    @pytest.mark.asyncio
    async def test_find_loads_then_caches(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)

        first = await collection.find()
        await populated.store.insert("customer", [{"id": "c4", "name": "Dash", "city": "Paris"}])
        second = await collection.find()
        forced = await collection.find(force=True)

        assert [r["id"] for r in first] == ["c1", "c3"]
        assert [r["id"] for r in second] == ["c1", "c3"]
        assert [r["id"] for r in forced] == ["c1", "c3", "c4"]
        assert collection.filter_fields == ["city"]
        assert len(collection) == 3

    @pytest.mark.asyncio
    async def test_new_query_reloads(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        records = await collection.find({"filter": {"city": "Lyon"}, "filterSyntax": "mongo"})

        assert [r["id"] for r in records] == ["c2"]
        assert collection.filter_fields == ["city"]

    @pytest.mark.asyncio
    async def test_accepts_a_model_handle(self, populated: MemoryBackend, schema: SchemaStore) -> None:
        collection = Collection(populated, schema.handle("customer"))

        assert len(await collection.find()) == 3
        assert collection.get_record("c2")["name"] == "Acme"
        assert collection.get_record("nope") is None


class TestChangeEvents:
    """Test keeping the cache current from change events."""

    @pytest.mark.asyncio
    async def test_matching_insert_is_added_in_sort_order(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.insert_one("customer", {"id": "c5", "name": "Able", "city": "Paris"})
        await populated.insert_one("customer", {"id": "c6", "name": "Zed", "city": "Rome"})

        assert ids(collection) == ["c5", "c1", "c3"]
        assert collection.has_changed is False

    @pytest.mark.asyncio
    async def test_insert_many(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.insert_many(
            "customer", [{"id": "c7", "name": "Cab", "city": "Paris"}, {"id": "c8", "name": "X", "city": "Oslo"}]
        )

        assert ids(collection) == ["c1", "c7", "c3"]

    @pytest.mark.asyncio
    async def test_inserted_records_are_projected(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", {**PARIS, "projection": {"name": 1}})
        await collection.find()

        await populated.insert_one("customer", {"id": "c5", "name": "Able", "city": "Paris"})

        assert collection.get_record("c1") == {"id": "c1", "name": "Bolt"}
        assert collection.get_record("c5") == {"id": "c5", "name": "Able"}

    @pytest.mark.asyncio
    async def test_update_leaving_the_filter_removes_the_record(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.update_one("customer", "c1", {"city": "Lyon"})

        assert ids(collection) == ["c3"]

    @pytest.mark.asyncio
    async def test_update_resorts(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.update_one("customer", "c1", {"name": "Zulu"})

        assert ids(collection) == ["c3", "c1"]
        assert collection.get_record("c1")["name"] == "Zulu"

    @pytest.mark.asyncio
    async def test_update_entering_the_filter_flags_a_reload(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.update_one("customer", "c2", {"name": "Acme 2"})
        assert collection.has_changed is False

        await populated.update_one("customer", "c2", {"city": "Paris"})
        assert collection.has_changed is True
        assert ids(collection) == ["c1", "c3"]

        assert [r["id"] for r in await collection.find()] == ["c2", "c1", "c3"]

    @pytest.mark.asyncio
    async def test_update_many(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", PARIS)
        await collection.find()

        await populated.update_many("customer", None, {"city": "Oslo"})

        assert ids(collection) == []

    @pytest.mark.asyncio
    async def test_deletes(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer")
        await collection.find()

        await populated.delete_one("customer", "c1")
        await populated.delete_many("customer", {"filter": {"city": "Lyon"}, "filterSyntax": "mongo"})

        assert ids(collection) == ["c3"]

    @pytest.mark.asyncio
    async def test_bulk_updates_apply_to_cached_records(self, populated: MemoryBackend) -> None:
        await populated.insert_one("order", {"id": "o1", "ref": "O-1", "price": 4, "quantity": 3, "amount": 12})
        collection = Collection(populated, "customer")
        await collection.find()
        link = {"id": "l1", "mX": "order", "rX": "o1", "fX": "customer", "mY": "customer", "rY": "c1", "fY": "orders"}
        await populated.insert_one(LINK_MODEL_ID, link)

        await populated.update_link(link)

        assert collection.get_record("c1")["orderCount"] == 1
        assert collection.get_record("c1")["orderTotal"] == 12
        assert collection.has_changed is False

    @pytest.mark.asyncio
    async def test_paged_queries_reload_on_any_change(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer", {"sort": [{"name": "asc"}], "limit": 2})
        assert ids(collection) == []
        await collection.find()
        assert ids(collection) == ["c2", "c1"]

        await populated.insert_one("customer", {"id": "c0", "name": "Aaa", "city": "Rome"})

        assert collection.has_changed is True
        assert [r["id"] for r in await collection.find()] == ["c0", "c2"]

    @pytest.mark.asyncio
    async def test_other_models_are_ignored(self, populated: MemoryBackend) -> None:
        collection = Collection(populated, "customer")
        await collection.find()

        await populated.insert_one("order", {"id": "o1", "ref": "O-1"})

        assert len(collection) == 3
        assert collection.has_changed is False

    @pytest.mark.asyncio
    async def test_destroy_stops_listening(self, populated: MemoryBackend) -> None:
        before = len(populated.bus.subscribers("EVT_DB_DELETE:CUSTOMER"))
        collection = Collection(populated, "customer")
        await collection.find()

        collection.destroy()
        await populated.delete_one("customer", "c1")

        assert "c1" in ids(collection)
        assert len(populated.bus.subscribers("EVT_DB_DELETE:CUSTOMER")) == before
