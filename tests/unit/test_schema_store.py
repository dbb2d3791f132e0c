"""Tests for the schema store: arena, edits and relationship resolution."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from relstore.runtime.errors import NotFoundError, ValidationError
from relstore.runtime.schema_store import LINK_MODEL_ID, TRASH_MODEL_ID, SchemaStore
from relstore.specs.field import Dependent, FieldType


class TestArena:
    """Test model registration and handles."""

    def test_system_models_are_registered(self) -> None:
        store = SchemaStore()

        assert store.has_model(LINK_MODEL_ID)
        assert store.has_model(TRASH_MODEL_ID)

    def test_handle_follows_schema_edits(self, schema: SchemaStore) -> None:
        handle = schema.handle("customer")

        schema.add_field("customer", {"id": "email", "label": "Email"})

        assert handle.get().get_field("Email").id == "email"

    def test_unknown_model(self, schema: SchemaStore) -> None:
        with pytest.raises(NotFoundError):
            schema.get_model("nope")
        with pytest.raises(NotFoundError):
            schema.handle("nope")

    def test_computed_field_ids_and_formula_sources(self, schema: SchemaStore) -> None:
        order = schema.get_model("order")

        assert order.computed_field_ids == ["amount", "customerName"]
        assert order.get_field("amount").formula_source_field_ids == ["price", "quantity"]


class TestRelationshipResolution:
    """Test type derivation and the dependency index."""

    def test_lookup_type_comes_from_source(self, schema: SchemaStore) -> None:
        lookup = schema.get_field("order", "customerName")

        assert lookup.computed is True
        assert lookup.value_type == FieldType.TEXT

    def test_summary_types(self, schema: SchemaStore) -> None:
        assert schema.get_field("customer", "orderCount").value_type == FieldType.NUMBER
        assert schema.get_field("customer", "orderTotal").value_type == FieldType.NUMBER

    def test_numeric_lookup_inherits_precision(self, schema: SchemaStore) -> None:
        schema.add_field(
            "customer",
            {"id": "lastPrice", "type": "lookup", "lookup": {"link_id": "orders", "field_id": "price"}},
        )

        field = schema.get_field("customer", "lastPrice")

        assert field.value_type == FieldType.NUMBER
        assert field.precision == 2

    def test_stale_authored_type_is_rederived(
        self, customer_data: dict[str, Any], order_data: dict[str, Any]
    ) -> None:
        order_data["fields"][-1]["lookup"]["type"] = "date"
        store = SchemaStore()
        store.register_model(customer_data)
        store.register_model(order_data)

        assert store.get_field("order", "customerName").value_type == FieldType.TEXT

    def test_update_field_ignores_derived_type(self, schema: SchemaStore) -> None:
        schema.update_field("order", "customerName", {"lookup": {"type": "number"}, "label": "Client"})

        field = schema.get_field("order", "customerName")

        assert field.label == "Client"
        assert field.value_type == FieldType.TEXT

    def test_dependency_index(self, schema: SchemaStore) -> None:
        assert schema.dependents_of("customer", "name") == (
            Dependent(model_id="order", field_id="customerName", type=FieldType.LOOKUP),
        )
        assert schema.dependents_of("order", "amount") == (
            Dependent(model_id="customer", field_id="orderTotal", type=FieldType.SUMMARY),
        )
        assert schema.get_field("order", "ref").source_for[0].field_id == "orderCount"
        assert schema.get_model("order").source_for == ["customer"]

    def test_resolution_is_idempotent(self, schema: SchemaStore) -> None:
        before = schema.resolve_relationships().dependents

        after = schema.resolve_relationships().dependents

        assert before == after
        assert all(len(deps) == 1 for deps in after.values())

    def test_broken_lookup_degrades_to_text(self) -> None:
        store = SchemaStore()
        store.register_model(
            {
                "id": "task",
                "fields": [
                    {"id": "title", "primary": True},
                    {"id": "owner", "type": "link", "link": {"model_id": "person"}},
                    {"id": "ownerName", "type": "lookup", "lookup": {"link_id": "owner", "field_id": "name"}},
                ],
            }
        )

        assert store.get_field("task", "owner").type == FieldType.TEXT
        assert store.get_field("task", "ownerName").type == FieldType.TEXT
        assert {w.field_id for w in store.warnings} == {"owner", "ownerName"}

    def test_degraded_fields_recover_when_target_appears(self) -> None:
        store = SchemaStore()
        store.register_model(
            {
                "id": "task",
                "fields": [
                    {"id": "title", "primary": True},
                    {"id": "owner", "type": "link", "link": {"model_id": "person"}},
                    {"id": "ownerName", "type": "lookup", "lookup": {"link_id": "owner", "field_id": "name"}},
                ],
            }
        )

        store.register_model({"id": "person", "fields": [{"id": "name", "primary": True}]})

        assert store.get_field("task", "owner").type == FieldType.LINK
        assert store.get_field("task", "ownerName").type == FieldType.LOOKUP
        assert store.warnings == []


class TestSchemaEdits:
    """Test field and link edits."""

    def test_add_field_rejects_duplicates(self, schema: SchemaStore) -> None:
        with pytest.raises(ValidationError):
            schema.add_field("customer", {"id": "city"})

    def test_add_field_goes_to_named_or_last_section(self) -> None:
        store = SchemaStore()
        store.register_model(
            {
                "id": "m",
                "fields": [{"id": "a"}],
                "sections": [{"id": "s1", "field_ids": ["a"]}, {"id": "s2"}],
            }
        )

        store.add_field("m", {"id": "b"})
        store.add_field("m", {"id": "c"}, section_id="s1")

        sections = store.get_model("m").sections
        assert sections[0].field_ids == ["a", "c"]
        assert sections[1].field_ids == ["b"]

    def test_delete_field_refuses_primary(self, schema: SchemaStore) -> None:
        assert schema.delete_field("customer", "name") is False
        assert schema.delete_field("customer", "missing") is False

    def test_delete_field_is_soft(self, schema: SchemaStore) -> None:
        assert schema.delete_field("customer", "city") is True

        model = schema.get_model("customer")
        assert model.get_field("city").deleted is True
        assert "city" not in [f.id for f in model.active_fields]

    def test_connect_models_creates_reciprocal_link(self, schema: SchemaStore) -> None:
        schema.register_model({"id": "note", "fields": [{"id": "text", "primary": True}]})

        foreign = schema.connect_models("note", "customer", {"id": "about", "label": "About"})

        local = schema.get_field("note", "about")
        assert local.type == FieldType.LINK
        assert local.link.field_id == foreign.id
        assert foreign.link.model_id == "note"
        assert foreign.link.field_id == "about"

    def test_reconnect_restores_deleted_link_field(self, schema: SchemaStore) -> None:
        schema.register_model({"id": "note", "fields": [{"id": "text", "primary": True}]})
        first = schema.connect_models("note", "customer", {"id": "about"})
        assert schema.delete_links_to_model("note", "customer") == 1
        assert schema.get_model("customer").get_field(first.id).deleted is True

        second = schema.connect_models("note", "customer", {"id": "about"})

        assert second.id == first.id
        assert second.deleted is False
        assert schema.get_field("note", "about").deleted is False

    def test_check_formula(self, schema: SchemaStore) -> None:
        assert schema.check_formula("order", "{{Price}} * 2") is True
        assert schema.check_formula("order", "{{Nope}} * 2") is False
        assert schema.check_formula("order", "{{Price}} *") is False

    def test_listeners_are_notified(self, schema: SchemaStore) -> None:
        calls: list[tuple[str, str, str | None]] = []
        schema.add_listener(lambda *args: calls.append(args))

        schema.add_field("customer", {"id": "email"})
        schema.delete_field("customer", "email")

        assert calls == [("customer", "add_field", "email"), ("customer", "delete_field", "email")]


class TestPersistence:
    """Test saving and loading a schema."""

    def test_save_and_load(
        self, tmp_path: Path, customer_data: dict[str, Any], order_data: dict[str, Any]
    ) -> None:
        path = tmp_path / "schema" / "models.json"
        store = SchemaStore(path=path)
        store.register_model(customer_data)
        store.register_model(order_data)

        loaded = SchemaStore.load(path)

        assert loaded.get_field("order", "customerName").value_type == FieldType.TEXT
        assert loaded.dependents_of("customer", "name") == store.dependents_of("customer", "name")
        assert loaded.has_model(LINK_MODEL_ID)
