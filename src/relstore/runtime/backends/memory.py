"""
In-memory backend.

Documents live in per-model dicts keyed by id (insertion ordered). Used for
tests, previews and short-lived sessions; nothing survives the process.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from relstore.runtime.backends.base import DocumentStore, LocalBackend
from relstore.runtime.config import DbMode
from relstore.runtime.errors import NotFoundError
from relstore.runtime.matcher import matches
from relstore.runtime.transaction import Operation

logger = logging.getLogger(__name__)


class MemoryStore(DocumentStore):
    """Dict-backed document store. Returned documents are copies."""

    def __init__(self, initial: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._models: dict[str, dict[str, dict[str, Any]]] = {}
        for model_id, documents in (initial or {}).items():
            self._table(model_id).update({str(d["id"]): copy.deepcopy(d) for d in documents})

    def _table(self, model_id: str) -> dict[str, dict[str, Any]]:
        return self._models.setdefault(model_id, {})

    async def get(self, model_id: str, record_id: str) -> dict[str, Any] | None:
        document = self._models.get(model_id, {}).get(str(record_id))
        return copy.deepcopy(document) if document is not None else None

    async def query(self, model_id: str, predicate: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(d)
            for d in self._models.get(model_id, {}).values()
            if matches(d, predicate)
        ]

    async def insert(self, model_id: str, documents: list[dict[str, Any]]) -> None:
        table = self._table(model_id)
        for document in documents:
            table[str(document["id"])] = copy.deepcopy(document)

    async def apply(self, operations: list[Operation]) -> list[dict[str, Any]]:
        for op in operations:
            if str(op.record_id) not in self._models.get(op.model_id, {}):
                raise NotFoundError(op.model_id, op.record_id)

        updated: list[dict[str, Any]] = []
        for op in operations:
            document = self._models[op.model_id][str(op.record_id)]
            document.update(copy.deepcopy(op.updates))
            updated.append(copy.deepcopy(document))
        return updated

    async def remove(self, model_id: str, record_ids: list[str]) -> int:
        table = self._models.get(model_id, {})
        removed = 0
        for record_id in record_ids:
            if table.pop(str(record_id), None) is not None:
                removed += 1
        return removed

    def clear(self) -> None:
        self._models.clear()

    def dump(self) -> dict[str, list[dict[str, Any]]]:
        """Snapshot of every model's documents."""
        return {m: copy.deepcopy(list(t.values())) for m, t in self._models.items()}


class MemoryBackend(LocalBackend):
    """
    Backend over a ``MemoryStore``.

    Example:
        backend = MemoryBackend(schema)
        await backend.insert_one("task", {"title": "Write docs"})
    """

    db_mode = DbMode.MEMORY

    def __init__(self, schema: Any, store: MemoryStore | None = None, **kwargs: Any) -> None:
        super().__init__(store or MemoryStore(), schema, **kwargs)
