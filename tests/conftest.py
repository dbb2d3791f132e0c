"""Shared pytest fixtures for relstore tests."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from relstore.runtime.backends.memory import MemoryBackend
from relstore.runtime.config import DataLayerConfig, DbMode, get_config
from relstore.runtime.event_bus import ChangeBus, ChangeEvent, reset_change_bus
from relstore.runtime.identity import StaticIdentity
from relstore.runtime.schema_store import SchemaStore


@pytest.fixture(autouse=True)
def _isolated_globals() -> Iterator[None]:
    """Fresh global bus and config cache for every test."""
    reset_change_bus()
    get_config.cache_clear()
    yield
    reset_change_bus()
    get_config.cache_clear()


@pytest.fixture
def config() -> DataLayerConfig:
    return DataLayerConfig(db_mode=DbMode.MEMORY)


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity(user_id="alice", groups=("team-x",))


@pytest.fixture
def bus() -> ChangeBus:
    return ChangeBus()


@pytest.fixture
def events(bus: ChangeBus) -> list[ChangeEvent]:
    """Every event published on the bus, in order."""
    received: list[ChangeEvent] = []
    bus.subscribe("*", received.append)
    return received


@pytest.fixture
def customer_data() -> dict[str, Any]:
    """Customer model: name, city, orders link, order count and total."""
    return {
        "id": "customer",
        "name": "Customer",
        "fields": [
            {"id": "name", "label": "Name", "primary": True},
            {"id": "city", "label": "City"},
            {
                "id": "orders",
                "label": "Orders",
                "type": "link",
                "multiple": True,
                "link": {"model_id": "order", "field_id": "customer"},
            },
            {
                "id": "orderCount",
                "label": "Order count",
                "type": "summary",
                "summary": {"link_id": "orders", "field_id": "ref", "operation": "count"},
            },
            {
                "id": "orderTotal",
                "label": "Order total",
                "type": "summary",
                "summary": {"link_id": "orders", "field_id": "amount", "operation": "sum"},
            },
        ],
    }


@pytest.fixture
def order_data() -> dict[str, Any]:
    """Order model: price x quantity formula plus a customer lookup."""
    return {
        "id": "order",
        "name": "Order",
        "fields": [
            {"id": "ref", "label": "Reference", "primary": True},
            {"id": "price", "label": "Price", "type": "number", "precision": 2},
            {"id": "quantity", "label": "Quantity", "type": "number"},
            {
                "id": "amount",
                "label": "Amount",
                "type": "number",
                "computed": True,
                "formula": "{{Price}} * {{Quantity}}",
            },
            {
                "id": "customer",
                "label": "Customer",
                "type": "link",
                "link": {"model_id": "customer", "field_id": "orders"},
            },
            {
                "id": "customerName",
                "label": "Customer name",
                "type": "lookup",
                "lookup": {"link_id": "customer", "field_id": "name"},
            },
        ],
    }


@pytest.fixture
def schema(customer_data: dict[str, Any], order_data: dict[str, Any]) -> SchemaStore:
    """Customers linked to orders, with lookups, summaries and a formula."""
    store = SchemaStore()
    store.register_model(customer_data)
    store.register_model(order_data)
    return store


@pytest.fixture
def backend(
    schema: SchemaStore,
    bus: ChangeBus,
    identity: StaticIdentity,
    config: DataLayerConfig,
) -> MemoryBackend:
    return MemoryBackend(schema, bus=bus, identity=identity, config=config)
