"""
Embedded backend.

Documents are stored as JSON in a single SQLite table through aiosqlite.
Predicates are evaluated by the shared matcher, so the embedded and memory
backends answer every query identically. Lookups by id are pushed down to
SQL.

Tables created:
- relstore_documents: (model_id, id) -> JSON document
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from relstore.runtime.backends.base import DocumentStore, LocalBackend
from relstore.runtime.config import DbMode, get_config
from relstore.runtime.errors import NotFoundError
from relstore.runtime.matcher import matches
from relstore.runtime.transaction import Operation

logger = logging.getLogger(__name__)

CREATE_DOCUMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS relstore_documents (
    model_id TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (model_id, id)
);
"""

CREATE_DOCUMENTS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_documents_model ON relstore_documents(model_id);
"""

UPSERT_DOCUMENT = """
INSERT INTO relstore_documents (model_id, id, data) VALUES (?, ?, ?)
ON CONFLICT(model_id, id) DO UPDATE SET data = excluded.data
"""


def _json_default(value: Any) -> Any:
    """Convert values json cannot encode natively."""
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, set | tuple):
        return list(value)
    return str(value)


def _dumps(document: dict[str, Any]) -> str:
    return json.dumps(document, default=_json_default)


def _id_pushdown(predicate: dict[str, Any]) -> list[str] | None:
    """Ids to fetch directly when the predicate is a pure id lookup."""
    if set(predicate) != {"id"}:
        return None
    spec = predicate["id"]
    if isinstance(spec, str):
        return [spec]
    if isinstance(spec, dict) and set(spec) == {"$in"} and isinstance(spec["$in"], list):
        return [str(i) for i in spec["$in"]]
    return None


class SQLiteStore(DocumentStore):
    """
    aiosqlite document store.

    Writes are serialized with an ``asyncio.Lock``; ``apply`` runs inside a
    single SQLite transaction.

    Example:
        async with SQLiteStore("data.db") as store:
            await store.insert("task", [{"id": "t1", "title": "Ship"}])
    """

    def __init__(self, db_path: str | Path = ".relstore/data.db") -> None:
        self._db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def connect(self) -> None:
        """Open the database and create tables if needed."""
        if self._conn is not None:
            return
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(CREATE_DOCUMENTS_TABLE + CREATE_DOCUMENTS_INDEXES)
        await self._conn.commit()
        logger.debug("Opened embedded store at %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def _get_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection, opened on first use."""
        if self._conn is None:
            await self.connect()
        assert self._conn is not None
        yield self._conn

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _fetch(self, model_id: str, ids: list[str] | None = None) -> list[dict[str, Any]]:
        async with self._get_conn() as conn:
            if ids is None:
                cursor = await conn.execute(
                    "SELECT data FROM relstore_documents WHERE model_id = ? ORDER BY rowid",
                    (model_id,),
                )
            else:
                if not ids:
                    return []
                placeholders = ", ".join("?" for _ in ids)
                cursor = await conn.execute(
                    f"SELECT data FROM relstore_documents "
                    f"WHERE model_id = ? AND id IN ({placeholders}) ORDER BY rowid",
                    (model_id, *ids),
                )
            rows = await cursor.fetchall()
        return [json.loads(row["data"]) for row in rows]

    async def get(self, model_id: str, record_id: str) -> dict[str, Any] | None:
        documents = await self._fetch(model_id, [str(record_id)])
        return documents[0] if documents else None

    async def query(self, model_id: str, predicate: dict[str, Any]) -> list[dict[str, Any]]:
        predicate = predicate or {}
        ids = _id_pushdown(predicate)
        if ids is not None:
            return await self._fetch(model_id, ids)
        return [d for d in await self._fetch(model_id) if matches(d, predicate)]

    async def count(self, model_id: str, predicate: dict[str, Any]) -> int:
        if predicate:
            return len(await self.query(model_id, predicate))
        async with self._get_conn() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS n FROM relstore_documents WHERE model_id = ?",
                (model_id,),
            )
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, model_id: str, documents: list[dict[str, Any]]) -> None:
        async with self._lock, self._get_conn() as conn:
            await conn.executemany(
                UPSERT_DOCUMENT,
                [(model_id, str(d["id"]), _dumps(d)) for d in documents],
            )
            await conn.commit()

    async def apply(self, operations: list[Operation]) -> list[dict[str, Any]]:
        async with self._lock, self._get_conn() as conn:
            # current state per target, so repeated targets see earlier updates
            current: dict[tuple[str, str], dict[str, Any]] = {}
            updated: list[dict[str, Any]] = []
            try:
                for op in operations:
                    key = (op.model_id, str(op.record_id))
                    if key not in current:
                        cursor = await conn.execute(
                            "SELECT data FROM relstore_documents WHERE model_id = ? AND id = ?",
                            key,
                        )
                        row = await cursor.fetchone()
                        if row is None:
                            raise NotFoundError(op.model_id, op.record_id)
                        current[key] = json.loads(row["data"])
                    current[key].update(op.updates)
                    await conn.execute(
                        "UPDATE relstore_documents SET data = ? WHERE model_id = ? AND id = ?",
                        (_dumps(current[key]), *key),
                    )
                    updated.append(dict(current[key]))
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
        return updated

    async def remove(self, model_id: str, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        placeholders = ", ".join("?" for _ in record_ids)
        async with self._lock, self._get_conn() as conn:
            cursor = await conn.execute(
                f"DELETE FROM relstore_documents WHERE model_id = ? AND id IN ({placeholders})",
                (model_id, *[str(i) for i in record_ids]),
            )
            await conn.commit()
            return cursor.rowcount


class EmbeddedBackend(LocalBackend):
    """Backend over a ``SQLiteStore`` at ``config.db_path``."""

    db_mode = DbMode.EMBEDDED

    def __init__(self, schema: Any, store: SQLiteStore | None = None, **kwargs: Any) -> None:
        if store is None:
            config = kwargs.get("config") or get_config()
            store = SQLiteStore(config.db_path)
        super().__init__(store, schema, **kwargs)

    async def connect(self) -> None:
        assert isinstance(self.store, SQLiteStore)
        await self.store.connect()

    async def __aenter__(self) -> EmbeddedBackend:
        await self.connect()
        return self
