"""
Collections: cached, query-bound views of a model's records.

A collection loads the records matching its query once, then keeps the
cache fresh from change events instead of re-querying. Events it cannot
apply locally (a record entering the result set, paged or grouped queries)
flag the collection as changed; the next ``find`` reloads it.
"""

from __future__ import annotations

import logging
from typing import Any

from relstore.runtime.backends.base import Backend, QueryInput
from relstore.runtime.event_bus import BULK_CHANNEL, ChangeBus, ChangeEvent, DbOperation, channel_name
from relstore.runtime.matcher import apply_projection, matches, sort_documents
from relstore.runtime.query_translator import get_filter_fields, normalize_query, to_mongo_query
from relstore.runtime.schema_store import ModelHandle
from relstore.specs.query import QuerySpec, QuerySyntax

logger = logging.getLogger(__name__)


def _predicate_fields(predicate: Any) -> list[str]:
    """Field paths referenced by a raw predicate."""
    fields: list[str] = []

    def collect(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if key.startswith("$"):
                    collect(value)
                elif key not in fields:
                    fields.append(key)
        elif isinstance(node, list):
            for item in node:
                collect(item)

    collect(predicate)
    return fields


class Collection:
    """
    Cached result set of one query over one model.

    Example:
        tasks = Collection(backend, "task", {"filter": {...}, "sort": [{"title": "asc"}]})
        records = await tasks.find()
        ...
        tasks.destroy()
    """

    def __init__(
        self,
        backend: Backend,
        model: str | ModelHandle,
        query: QueryInput = None,
        *,
        bus: ChangeBus | None = None,
    ) -> None:
        self.backend = backend
        self.model_id = model.model_id if isinstance(model, ModelHandle) else model
        self.bus = bus or backend.bus
        self.records: list[dict[str, Any]] = []
        self.has_changed = True
        self._subscriptions: list[str] = []
        self._set_query(normalize_query(query))
        self._subscribe()

    def __len__(self) -> int:
        return len(self.records)

    def __repr__(self) -> str:
        return f"Collection({self.model_id!r}, {len(self.records)} records)"

    # =========================================================================
    # Query
    # =========================================================================

    def _set_query(self, query: QuerySpec) -> None:
        self.query = query
        self._predicate, self._sort = to_mongo_query(query, self.backend.identity)
        if query.filter_syntax == QuerySyntax.NORMALIZED:
            self.filter_fields = get_filter_fields(query.filter)
        else:
            self.filter_fields = _predicate_fields(self._predicate)
        self._local = not (query.group or query.skip or query.limit)

    async def find(self, query: QueryInput = None, force: bool = False) -> list[dict[str, Any]]:
        """
        Records matching the collection's query.

        Passing a query replaces the collection's query. The cache is reused
        unless the query changed, an event invalidated it, or ``force``.
        """
        if query is not None:
            self._set_query(normalize_query(query))
            self.has_changed = True

        if not (force or self.has_changed):
            return self.records

        result = await self.backend.find(self.model_id, self.query)
        if not result.ok:
            logger.error("Collection %s failed to load: %s", self.model_id, result.error)
            return self.records

        self.records = list(result.data or [])
        self.has_changed = False
        logger.debug("Collection %s loaded %d record(s)", self.model_id, len(self.records))
        return self.records

    def get_record(self, record_id: str) -> dict[str, Any] | None:
        for record in self.records:
            if record.get("id") == record_id:
                return record
        return None

    # =========================================================================
    # Change events
    # =========================================================================

    def _subscribe(self) -> None:
        handlers = {
            DbOperation.INSERT: self._on_insert,
            DbOperation.INSERT_MANY: self._on_insert_many,
            DbOperation.UPDATE: self._on_update,
            DbOperation.UPDATE_MANY: self._on_update_many,
            DbOperation.DELETE: self._on_delete,
            DbOperation.DELETE_MANY: self._on_delete_many,
        }
        for operation, handler in handlers.items():
            self._subscriptions.append(
                self.bus.subscribe(channel_name(operation, self.model_id), handler)
            )
        self._subscriptions.append(self.bus.subscribe(BULK_CHANNEL, self._on_bulk))

    def destroy(self) -> None:
        """Stop listening to change events."""
        for subscription_id in self._subscriptions:
            self.bus.unsubscribe(subscription_id)
        self._subscriptions.clear()

    def _resort(self) -> None:
        if self._sort:
            self.records = sort_documents(self.records, self._sort)

    def _insert(self, document: dict[str, Any]) -> None:
        if not self._local:
            self.has_changed = True
            return
        if not matches(document, self._predicate):
            return
        projected = apply_projection(document, dict(self.query.projection) or None)
        existing = self.get_record(document["id"])
        if existing is not None:
            existing.update(projected)
        else:
            self.records.append(projected)

    def _update(self, record_id: str, updates: dict[str, Any]) -> None:
        if not self._local:
            self.has_changed = True
            return

        record = self.get_record(record_id)
        if record is None:
            # the record may now enter the result set
            if any(field_id in self.filter_fields for field_id in updates):
                self.has_changed = True
            return

        record.update(updates)
        if not matches(record, self._predicate):
            self.records.remove(record)

    def _on_insert(self, event: ChangeEvent) -> None:
        self._insert(event.data)
        self._resort()

    def _on_insert_many(self, event: ChangeEvent) -> None:
        for document in event.data or []:
            self._insert(document)
        self._resort()

    def _on_update(self, event: ChangeEvent) -> None:
        if event.id is None:
            return
        self._update(event.id, dict(event.data or {}))
        self._resort()

    def _on_update_many(self, event: ChangeEvent) -> None:
        data = event.data or {}
        for record_id in data.get("ids", []):
            self._update(record_id, dict(data.get("update") or {}))
        self._resort()

    def _on_delete(self, event: ChangeEvent) -> None:
        self._remove([event.id] if event.id else [])

    def _on_delete_many(self, event: ChangeEvent) -> None:
        self._remove(list(event.data or []))

    def _remove(self, record_ids: list[str]) -> None:
        if not self._local:
            self.has_changed = True
            return
        ids = set(record_ids)
        self.records = [r for r in self.records if r.get("id") not in ids]

    def _on_bulk(self, event: ChangeEvent) -> None:
        touched = False
        # applied in order: a record touched twice keeps the last values
        for op in event.data or []:
            if op.get("modelId") != self.model_id:
                continue
            touched = True
            self._update(op["recordId"], dict(op.get("updates") or {}))
        if touched:
            self._resort()
