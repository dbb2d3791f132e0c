"""
Relationship engine.

Turns one field edit, link creation, link deletion or record deletion into
a single Transaction covering every lookup, summary and computed field that
has to change, on the edited record and on foreign records.

The engine reads through a ``DocumentReader`` and never writes: backends
apply the returned transaction and broadcast it once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from relstore.runtime.config import DEFAULT_MAX_COMPUTE_DEPTH
from relstore.runtime.errors import NotFoundError
from relstore.runtime.formula import FormulaEvaluator
from relstore.runtime.record import Record
from relstore.runtime.schema_store import LINK_MODEL_ID, SchemaStore
from relstore.runtime.transaction import Transaction
from relstore.specs.field import FieldSpec, FieldType, SummaryOperation

logger = logging.getLogger(__name__)

# Overlay of records modified (or deleted, as None) earlier in the same pass
Overlay = dict[tuple[str, str], dict[str, Any] | None]


class DocumentReader(Protocol):
    """Read access the engine needs from a store."""

    async def get(self, model_id: str, record_id: str) -> dict[str, Any] | None: ...

    async def query(self, model_id: str, predicate: dict[str, Any]) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class LinkEnd:
    """One endpoint of a link record."""

    model_id: str
    record_id: str
    field_id: str | None


# =============================================================================
# Aggregation
# =============================================================================


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _numeric_values(values: list[Any]) -> list[float]:
    result: list[float] = []
    for value in values:
        for item in value if isinstance(value, list) else [value]:
            if isinstance(item, bool) or _is_empty(item):
                continue
            if isinstance(item, int | float):
                result.append(item)
            elif isinstance(item, Decimal):
                result.append(float(item))
            else:
                try:
                    result.append(float(item))
                except (TypeError, ValueError):
                    pass
    return result


def _text_values(values: list[Any]) -> list[str]:
    result: list[str] = []
    for value in values:
        for item in value if isinstance(value, list) else [value]:
            if not _is_empty(item):
                result.append(str(item))
    return result


def summarize(operation: SummaryOperation, values: list[Any], precision: int | None = None) -> Any:
    """
    Aggregate the source values of every linked record.

    Supports: count, count_empty, count_non_empty, sum, avg, min, max,
    concatenate, list_name, percent (share of non-empty values)
    """
    result: Any
    if operation == SummaryOperation.COUNT:
        return len(values)
    if operation == SummaryOperation.COUNT_EMPTY:
        return sum(1 for v in values if _is_empty(v))
    if operation == SummaryOperation.COUNT_NON_EMPTY:
        return sum(1 for v in values if not _is_empty(v))
    if operation == SummaryOperation.CONCATENATE:
        return ", ".join(_text_values(values))
    if operation == SummaryOperation.LIST_NAME:
        return ", ".join(dict.fromkeys(_text_values(values)))

    if operation == SummaryOperation.PERCENT:
        if not values:
            return 0
        result = 100 * sum(1 for v in values if not _is_empty(v)) / len(values)
    else:
        numbers = _numeric_values(values)
        if operation == SummaryOperation.SUM:
            result = sum(numbers)
        elif operation == SummaryOperation.AVG:
            result = sum(numbers) / len(numbers) if numbers else 0
        elif operation == SummaryOperation.MIN:
            result = min(numbers) if numbers else None
        elif operation == SummaryOperation.MAX:
            result = max(numbers) if numbers else None
        else:
            return None

    if result is not None and precision is not None:
        result = round(result, precision)
    return result


# =============================================================================
# Engine
# =============================================================================


class RelationshipEngine:
    """
    Computes the transactions that keep derived fields consistent.

    Args:
        schema: The schema store (dependency index and field catalog)
        reader: Read access to the current documents
        formula_evaluator: Evaluator for same-record computed fields
        max_depth: Recursion cap for propagation across records
    """

    def __init__(
        self,
        schema: SchemaStore,
        reader: DocumentReader,
        formula_evaluator: FormulaEvaluator | None = None,
        max_depth: int = DEFAULT_MAX_COMPUTE_DEPTH,
    ) -> None:
        self.schema = schema
        self.reader = reader
        self.formula_evaluator = formula_evaluator or schema.formula_evaluator
        self.max_depth = max_depth

    # =========================================================================
    # Public operations
    # =========================================================================

    async def update_one_deep(
        self,
        model_id: str,
        record_id: str,
        update: dict[str, Any],
        user_id: str | None = None,
    ) -> Transaction:
        """
        Apply ``update`` to a record and collect every consequence.

        The first operation is the record's own update (including its
        recomputed computed fields); the following ones touch foreign records
        whose lookups/summaries read a changed field.

        Raises:
            NotFoundError: The record does not exist
        """
        data = await self.reader.get(model_id, record_id)
        if data is None:
            raise NotFoundError(model_id, record_id)

        record = self._record(model_id, data)
        local_update: dict[str, Any] = {}
        for field_id, value in update.items():
            local_update.update(record.set_field(field_id, value))

        tx = Transaction(user_id=user_id)
        tx.add_operation(model_id, record_id, local_update)

        overlay: Overlay = {(model_id, record_id): record.data}
        await self._propagate(model_id, record_id, list(local_update), tx, overlay, depth=0)

        logger.debug(
            "update_one_deep %s/%s produced %d operation(s)", model_id, record_id, len(tx)
        )
        return tx

    async def update_link(self, link: dict[str, Any], user_id: str | None = None) -> Transaction:
        """
        Recompute both endpoints of a link that was just created or deleted.

        Every lookup/summary sourced through the link's field on either side
        is recomputed from the current link set.
        """
        tx = Transaction(user_id=user_id)
        overlay: Overlay = {}
        for end in self._link_ends(link):
            data = await self._read(end.model_id, end.record_id, overlay)
            if data is None or end.field_id is None:
                continue
            fields = self.schema.fields_through_link(end.model_id, end.field_id)
            await self._recompute_fields(end.model_id, data, fields, tx, overlay, depth=0)
        return tx

    async def update_foreign_records(
        self,
        model_id: str,
        record: dict[str, Any],
        user_id: str | None = None,
    ) -> Transaction:
        """
        Recompute the records whose lookups/summaries read a deleted record.

        The transaction may be empty.
        """
        return await self.update_foreign_records_for_many(model_id, [record], user_id)

    async def update_foreign_records_for_many(
        self,
        model_id: str,
        records: list[dict[str, Any]],
        user_id: str | None = None,
    ) -> Transaction:
        """Same as ``update_foreign_records`` for a batch of deleted records."""
        tx = Transaction(user_id=user_id)
        overlay: Overlay = {(model_id, str(r["id"])): None for r in records}

        for deleted in records:
            for link in await self._links_of(model_id, str(deleted["id"])):
                ends = self._oriented(link, model_id, str(deleted["id"]))
                if ends is None:
                    continue
                _, other = ends
                if other.field_id is None:
                    continue
                # None when the other end was deleted in the same batch
                data = await self._read(other.model_id, other.record_id, overlay)
                if data is None:
                    continue
                fields = self.schema.fields_through_link(other.model_id, other.field_id)
                await self._recompute_fields(other.model_id, data, fields, tx, overlay, depth=0)
        return tx

    async def update_all_deep(self, model_id: str, user_id: str | None = None) -> Transaction:
        """
        Recompute every computed, lookup and summary field of every record.

        Only values that differ are emitted, so running it again after an
        interruption picks up where it stopped.
        """
        tx = Transaction(user_id=user_id)
        model = self.schema.get_model(model_id)
        derived = [f for f in model.active_fields if f.is_derived]

        for data in await self.reader.query(model_id, {}):
            record = self._record(model_id, data)
            update: dict[str, Any] = {}
            overlay: Overlay = {}
            for f in derived:
                value = await self.compute_derived(model_id, record.data, f, overlay)
                if value != record.data.get(f.id):
                    record.data[f.id] = value
                    update[f.id] = value
            for field_id in record.compute_fields():
                update[field_id] = record.data[field_id]
            if update:
                tx.add_operation(model_id, record.id, update)

        logger.info("update_all_deep %s: %d record(s) changed", model_id, len(tx))
        return tx

    # =========================================================================
    # Derived values
    # =========================================================================

    async def compute_derived(
        self,
        model_id: str,
        data: dict[str, Any],
        field: FieldSpec,
        overlay: Overlay | None = None,
    ) -> Any:
        """Current value of a lookup or summary field for one record."""
        overlay = overlay if overlay is not None else {}
        if field.type == FieldType.LOOKUP and field.lookup:
            return await self.compute_lookup(model_id, data, field, overlay)
        if field.type == FieldType.SUMMARY and field.summary:
            return await self.compute_summary(model_id, data, field, overlay)
        return data.get(field.id)

    async def compute_lookup(
        self,
        model_id: str,
        data: dict[str, Any],
        field: FieldSpec,
        overlay: Overlay,
    ) -> Any:
        """Source value of the first linked record (None without links)."""
        assert field.lookup is not None
        linked = await self.get_linked_records(
            model_id, str(data["id"]), field.lookup.link_id, overlay
        )
        if not linked:
            return None
        return linked[0].get(field.lookup.field_id)

    async def compute_summary(
        self,
        model_id: str,
        data: dict[str, Any],
        field: FieldSpec,
        overlay: Overlay,
    ) -> Any:
        """Aggregate of the source values over every linked record."""
        assert field.summary is not None
        linked = await self.get_linked_records(
            model_id, str(data["id"]), field.summary.link_id, overlay
        )
        values = [r.get(field.summary.field_id) for r in linked]
        return summarize(field.summary.operation, values, field.precision)

    async def get_linked_records(
        self,
        model_id: str,
        record_id: str,
        link_field_id: str,
        overlay: Overlay | None = None,
    ) -> list[dict[str, Any]]:
        """Records joined to ``record_id`` through ``link_field_id``, in link order."""
        overlay = overlay if overlay is not None else {}
        targets: list[tuple[str, str]] = []
        for link in await self._links_of(model_id, record_id):
            ends = self._oriented(link, model_id, record_id)
            if ends is None:
                continue
            own, other = ends
            if own.field_id == link_field_id and (other.model_id, other.record_id) not in targets:
                targets.append((other.model_id, other.record_id))

        fetched: dict[tuple[str, str], dict[str, Any]] = {}
        by_model: dict[str, list[str]] = {}
        for target_model, target_id in targets:
            if (target_model, target_id) not in overlay:
                by_model.setdefault(target_model, []).append(target_id)
        for target_model, ids in by_model.items():
            for doc in await self.reader.query(target_model, {"id": {"$in": ids}}):
                fetched[(target_model, str(doc["id"]))] = doc

        records: list[dict[str, Any]] = []
        for key in targets:
            doc = overlay[key] if key in overlay else fetched.get(key)
            if doc is not None:
                records.append(doc)
        return records

    # =========================================================================
    # Propagation
    # =========================================================================

    async def _propagate(
        self,
        model_id: str,
        record_id: str,
        changed_field_ids: list[str],
        tx: Transaction,
        overlay: Overlay,
        depth: int,
    ) -> None:
        """Recompute foreign lookups/summaries that read the changed fields."""
        if depth > self.max_depth:
            logger.warning(
                "Propagation depth cap reached at %s/%s (fields=%s)",
                model_id,
                record_id,
                changed_field_ids,
            )
            return

        # dependent model -> dependent fields, grouped by link field
        wanted: dict[tuple[str, str], list[FieldSpec]] = {}
        for field_id in changed_field_ids:
            for dependent in self.schema.dependents_of(model_id, field_id):
                dep_field = self.schema.get_field(dependent.model_id, dependent.field_id)
                if dep_field is None or dep_field.deleted or not dep_field.is_derived:
                    continue
                descriptor = dep_field.lookup if dep_field.type == FieldType.LOOKUP else dep_field.summary
                if descriptor is None:
                    continue
                fields = wanted.setdefault((dependent.model_id, descriptor.link_id), [])
                if dep_field not in fields:
                    fields.append(dep_field)

        if not wanted:
            return

        links = await self._links_of(model_id, record_id)
        for (dep_model_id, link_field_id), fields in wanted.items():
            for link in links:
                ends = self._oriented(link, model_id, record_id)
                if ends is None:
                    continue
                _, other = ends
                if other.model_id != dep_model_id or other.field_id != link_field_id:
                    continue
                data = await self._read(other.model_id, other.record_id, overlay)
                if data is None:
                    continue
                await self._recompute_fields(dep_model_id, data, fields, tx, overlay, depth + 1)

    async def _recompute_fields(
        self,
        model_id: str,
        data: dict[str, Any],
        fields: list[FieldSpec],
        tx: Transaction,
        overlay: Overlay,
        depth: int,
    ) -> None:
        """Recompute derived fields of one record, then cascade from it."""
        if not fields:
            return
        record = self._record(model_id, data)
        update: dict[str, Any] = {}
        for f in fields:
            value = await self.compute_derived(model_id, record.data, f, overlay)
            if value == record.data.get(f.id):
                continue
            update.update(record.set_field(f.id, value))

        if not update:
            return

        overlay[(model_id, record.id)] = record.data
        tx.add_operation(model_id, record.id, update)
        await self._propagate(model_id, record.id, list(update), tx, overlay, depth)

    # =========================================================================
    # Link helpers
    # =========================================================================

    async def _links_of(self, model_id: str, record_id: str) -> list[dict[str, Any]]:
        return await self.reader.query(
            LINK_MODEL_ID,
            {
                "$or": [
                    {"mX": model_id, "rX": record_id},
                    {"mY": model_id, "rY": record_id},
                ]
            },
        )

    def _reciprocal(self, model_id: str, field_id: str | None) -> str | None:
        if field_id is None or not self.schema.has_model(model_id):
            return None
        f = self.schema.get_field(model_id, field_id)
        return f.link.field_id if f and f.link else None

    def _link_ends(self, link: dict[str, Any]) -> tuple[LinkEnd, LinkEnd]:
        """Both endpoints, inferring a missing field id from its reciprocal."""
        fx = link.get("fX")
        fy = link.get("fY")
        if fy is None:
            fy = self._reciprocal(link["mX"], fx)
        if fx is None:
            fx = self._reciprocal(link["mY"], fy)
        return (
            LinkEnd(link["mX"], str(link["rX"]), fx),
            LinkEnd(link["mY"], str(link["rY"]), fy),
        )

    def _oriented(
        self, link: dict[str, Any], model_id: str, record_id: str
    ) -> tuple[LinkEnd, LinkEnd] | None:
        """(own end, other end) of a link as seen from one record."""
        x, y = self._link_ends(link)
        if x.model_id == model_id and x.record_id == record_id:
            return x, y
        if y.model_id == model_id and y.record_id == record_id:
            return y, x
        return None

    # =========================================================================
    # Internals
    # =========================================================================

    async def _read(self, model_id: str, record_id: str, overlay: Overlay) -> dict[str, Any] | None:
        key = (model_id, record_id)
        if key in overlay:
            return overlay[key]
        data = await self.reader.get(model_id, record_id)
        if data is not None:
            overlay[key] = dict(data)
            return overlay[key]
        return None

    def _record(self, model_id: str, data: dict[str, Any]) -> Record:
        return Record(
            self.schema.handle(model_id),
            dict(data),
            formula_evaluator=self.formula_evaluator,
            max_depth=self.max_depth,
        )
