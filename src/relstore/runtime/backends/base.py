"""
Backend adapter contract.

Every backend exposes the same async operations and returns a ``DbResult``
instead of raising. Each successful mutation is broadcast on the change bus
as exactly one event.

Two layers live here:
- ``Backend``: the public contract, implemented by all three modes
- ``LocalBackend``: the shared implementation for backends that own their
  documents (memory and embedded). They differ only in their
  ``DocumentStore``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, ParamSpec

from relstore.runtime.config import DataLayerConfig, DbMode, get_config
from relstore.runtime.errors import (
    BackendUnavailable,
    DataLayerError,
    DbResult,
    NotFoundError,
    PermissionDenied,
)
from relstore.runtime.event_bus import ChangeBus, DbOperation, get_change_bus
from relstore.runtime.formula import FormulaEvaluator
from relstore.runtime.identity import Identity, current_user_id
from relstore.runtime.logging import get_db_logger, log_with_context
from relstore.runtime.matcher import group_documents, run_query
from relstore.runtime.query_translator import normalize_query, to_mongo_query
from relstore.runtime.record import new_id, timestamp
from relstore.runtime.relations import RelationshipEngine
from relstore.runtime.schema_store import TRASH_MODEL_ID, SchemaStore
from relstore.runtime.transaction import Operation, Transaction
from relstore.specs.query import QuerySpec

logger = logging.getLogger(__name__)
db_logger = get_db_logger()

P = ParamSpec("P")

# (identity, operation, model_id, document or None) -> allowed
AccessCheck = Callable[[Identity | None, str, str, dict[str, Any] | None], bool]

QueryInput = QuerySpec | dict[str, Any] | None


def as_result(method: Callable[P, Awaitable[Any]]) -> Callable[P, Awaitable[DbResult]]:
    """
    Wrap an adapter coroutine so it never raises.

    Relstore errors become failed results as-is; anything else is logged and
    reported as ``BackendUnavailable``. A returned ``DbResult`` passes
    through untouched.
    """

    @functools.wraps(method)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> DbResult:
        try:
            value = await method(*args, **kwargs)
        except DataLayerError as e:
            logger.info("%s failed: %s", method.__name__, e.message)
            return DbResult.failure(e)
        except Exception as e:
            logger.exception("%s failed", method.__name__)
            return DbResult.failure(BackendUnavailable(str(e), operation=method.__name__))
        if isinstance(value, DbResult):
            return value
        return DbResult.success(value)

    return wrapper


def trash_document(
    model_id: str,
    document: dict[str, Any],
    user_id: str | None,
    account_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Copy of a document as stored in the trash model."""
    trashed = dict(document)
    trashed["sourceModelId"] = model_id
    trashed["deletedAt"] = timestamp(now)
    trashed["deletedBy"] = user_id
    if account_id:
        trashed["accountId"] = account_id
    return trashed


# =============================================================================
# Document Store
# =============================================================================


class DocumentStore(ABC):
    """
    Raw document persistence underneath a local backend.

    Stores know nothing about schemas, events or derived fields. They also
    satisfy the relationship engine's ``DocumentReader`` protocol.
    """

    @abstractmethod
    async def get(self, model_id: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one document, or None."""

    @abstractmethod
    async def query(self, model_id: str, predicate: dict[str, Any]) -> list[dict[str, Any]]:
        """Every document of a model matching a predicate, in insertion order."""

    async def find(
        self,
        model_id: str,
        predicate: dict[str, Any],
        sort: dict[str, int] | None = None,
        projection: dict[str, int] | None = None,
        skip: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Filter, sort, page and project documents."""
        docs = await self.query(model_id, predicate)
        return run_query(docs, None, sort, projection, skip, limit)

    @abstractmethod
    async def insert(self, model_id: str, documents: list[dict[str, Any]]) -> None:
        """Insert documents; an existing id is replaced."""

    @abstractmethod
    async def apply(self, operations: list[Operation]) -> list[dict[str, Any]]:
        """
        Merge updates into existing documents, all or nothing.

        Raises:
            NotFoundError: One of the targets is missing (nothing is written)

        Returns:
            The updated documents, in operation order
        """

    @abstractmethod
    async def remove(self, model_id: str, record_ids: list[str]) -> int:
        """Delete documents by id; returns how many existed."""

    async def count(self, model_id: str, predicate: dict[str, Any]) -> int:
        return len(await self.query(model_id, predicate))

    async def close(self) -> None:
        """Release resources held by the store."""


# =============================================================================
# Backend Contract
# =============================================================================


class Backend(ABC):
    """
    Data layer adapter.

    All operations are async and return ``DbResult``. Mutations broadcast one
    ``EVT_DB_<OP>:<MODELID>`` event, or one ``EVT_DB_UPDATE_BULK`` event for
    transactions spanning several records.
    """

    db_mode: DbMode

    def __init__(
        self,
        schema: SchemaStore,
        *,
        bus: ChangeBus | None = None,
        identity: Identity | None = None,
        config: DataLayerConfig | None = None,
        access_check: AccessCheck | None = None,
    ) -> None:
        self.schema = schema
        self.bus = bus or get_change_bus()
        self.identity = identity
        self.config = config or get_config()
        self.access_check = access_check
        self._pending: set[asyncio.Task[DbResult]] = set()

    async def __aenter__(self) -> Backend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unfollow_schema()
        await self.close()

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return current_user_id(self.identity)

    @property
    def account_id(self) -> str | None:
        if self.identity is not None and self.identity.get_account_id():
            return self.identity.get_account_id()
        return self.config.account_id

    def check_permission(
        self,
        operation: str,
        model_id: str,
        document: dict[str, Any] | None = None,
    ) -> None:
        """
        Run the injected access check, if any.

        Raises:
            PermissionDenied: The check refused the operation
        """
        if self.access_check is None:
            return
        if not self.access_check(self.identity, operation, model_id, document):
            raise PermissionDenied(
                f"{operation} on {model_id} denied",
                operation=operation,
                model_id=model_id,
                user_id=self.user_id,
            )

    async def emit(
        self,
        operation: DbOperation,
        model_id: str | None,
        *,
        record_id: str | None = None,
        data: Any = None,
    ) -> None:
        """Broadcast one change event stamped with this backend's context."""
        event = await self.bus.emit(
            operation,
            model_id,
            record_id=record_id,
            data=data,
            db_mode=str(self.db_mode),
            account_id=self.account_id,
            user_id=self.user_id,
        )
        log_with_context(
            db_logger,
            logging.DEBUG,
            f"Broadcast {event.channel}",
            db_mode=event.db_mode,
            record_id=record_id,
        )

    # -------------------------------------------------------------------------
    # Schema changes
    # -------------------------------------------------------------------------

    def follow_schema(self) -> None:
        """
        Recompute a model's derived fields whenever one of them is added or
        edited in the schema store.

        The recomputation runs as a task on the running event loop; await
        ``wait_pending()`` to observe its result.
        """
        self.schema.remove_listener(self._on_schema_change)
        self.schema.add_listener(self._on_schema_change)

    def unfollow_schema(self) -> None:
        self.schema.remove_listener(self._on_schema_change)

    def _on_schema_change(self, model_id: str, change: str, field_id: str | None) -> None:
        if change not in ("add_field", "update_field") or field_id is None:
            return
        field = self.schema.get_field(model_id, field_id)
        if field is None or not (field.computed or field.is_derived):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop: call update_all_deep(%r) to refresh %s",
                model_id,
                field_id,
            )
            return
        logger.info("Recomputing %s after %s on %s", model_id, change, field_id)
        task = loop.create_task(self.update_all_deep(model_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_pending(self) -> list[DbResult]:
        """Wait for recomputations started by schema changes."""
        if not self._pending:
            return []
        return list(await asyncio.gather(*self._pending))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_one(self, model_id: str, data: dict[str, Any]) -> DbResult:
        """Insert one document; ``data`` is the stored document."""

    @abstractmethod
    async def insert_many(self, model_id: str, documents: list[dict[str, Any]]) -> DbResult:
        """Insert several documents of one model."""

    @abstractmethod
    async def update_one(self, model_id: str, record_id: str, update: dict[str, Any]) -> DbResult:
        """Shallow update: no derived-field propagation."""

    @abstractmethod
    async def update_many(self, model_id: str, query: QueryInput, update: dict[str, Any]) -> DbResult:
        """Shallow update of every document matching ``query``."""

    @abstractmethod
    async def update_bulk(self, operations: list[Operation] | Transaction) -> DbResult:
        """Apply a batch of per-record updates as one broadcast."""

    @abstractmethod
    async def update_one_deep(self, model_id: str, record_id: str, update: dict[str, Any]) -> DbResult:
        """Update a record and every derived field depending on it."""

    @abstractmethod
    async def update_link(self, link: dict[str, Any]) -> DbResult:
        """Recompute both ends of a link after it was created or deleted."""

    @abstractmethod
    async def update_all_deep(self, model_id: str) -> DbResult:
        """Recompute every derived field of a model (schema changes, repairs)."""

    @abstractmethod
    async def find_one(self, model_id: str, record_id: str) -> DbResult:
        """One document by id; ``data`` is None when it does not exist."""

    @abstractmethod
    async def find_by_id(self, model_id: str, record_ids: list[str]) -> DbResult:
        """Documents with the given ids."""

    @abstractmethod
    async def find(self, model_id: str, query: QueryInput = None) -> DbResult:
        """Documents matching a query (grouped when the query groups)."""

    @abstractmethod
    async def delete_one(self, model_id: str, record_id: str, send_to_trash: bool = False) -> DbResult:
        """Delete one document, then recompute foreign records reading it."""

    @abstractmethod
    async def delete_many(self, model_id: str, query: QueryInput, send_to_trash: bool = False) -> DbResult:
        """Delete every document matching ``query``."""

    @abstractmethod
    async def count(self, model_id: str, query: QueryInput = None) -> DbResult:
        """Number of documents matching ``query``."""

    @abstractmethod
    async def copy_one_to_trash(self, model_id: str, record_id: str) -> DbResult:
        """Copy a document into the trash model without deleting it."""

    @abstractmethod
    async def copy_many_to_trash(self, model_id: str, query: QueryInput) -> DbResult:
        """Copy every matching document into the trash model."""

    async def close(self) -> None:
        """Release connections held by the backend."""


# =============================================================================
# Local Backend
# =============================================================================


class LocalBackend(Backend):
    """
    Backend over a local ``DocumentStore``.

    Deep mutations run the relationship engine against the store, then apply
    the resulting transaction in one store call and one broadcast.
    """

    def __init__(
        self,
        store: DocumentStore,
        schema: SchemaStore,
        *,
        bus: ChangeBus | None = None,
        identity: Identity | None = None,
        config: DataLayerConfig | None = None,
        access_check: AccessCheck | None = None,
        formula_evaluator: FormulaEvaluator | None = None,
    ) -> None:
        super().__init__(
            schema, bus=bus, identity=identity, config=config, access_check=access_check
        )
        self.store = store
        self.engine = RelationshipEngine(
            schema,
            store,
            formula_evaluator=formula_evaluator,
            max_depth=self.config.max_compute_depth,
        )

    def _predicate(self, query: QueryInput) -> dict[str, Any]:
        predicate, _ = to_mongo_query(query, self.identity)
        return predicate

    async def _commit(
        self, tx: Transaction, *, bulk: bool = False, merge: bool = True
    ) -> list[dict[str, Any]]:
        """
        Apply a transaction with exactly one broadcast.

        A single operation goes out as ``EVT_DB_UPDATE:<MODEL>`` unless
        ``bulk`` forces the bulk channel. With ``merge`` off the operations
        are applied and broadcast as given, repeats included.
        """
        if merge:
            operations = tx.merged()
        else:
            operations = [Operation(op.model_id, op.record_id, dict(op.updates)) for op in tx]
        if not operations:
            return []

        if tx.user_id:
            stamp = timestamp()
            for op in operations:
                op.updates.setdefault("updatedAt", stamp)
                op.updates.setdefault("updatedBy", tx.user_id)

        await self.store.apply(operations)

        if len(operations) == 1 and not bulk:
            op = operations[0]
            await self.emit(
                DbOperation.UPDATE, op.model_id, record_id=op.record_id, data=dict(op.updates)
            )
        else:
            await self.emit(
                DbOperation.UPDATE_BULK, None, data=[op.to_dict() for op in operations]
            )
        return [op.to_dict() for op in operations]

    # -------------------------------------------------------------------------
    # Inserts
    # -------------------------------------------------------------------------

    def _prepare_insert(self, model_id: str, data: dict[str, Any]) -> dict[str, Any]:
        document = dict(data)
        if not document.get("id"):
            document["id"] = new_id()
        document.setdefault("createdAt", timestamp())
        if self.user_id:
            document.setdefault("createdBy", self.user_id)
        self.check_permission("insert", model_id, document)
        return document

    @as_result
    async def insert_one(self, model_id: str, data: dict[str, Any]) -> dict[str, Any]:
        document = self._prepare_insert(model_id, data)
        await self.store.insert(model_id, [document])
        await self.emit(DbOperation.INSERT, model_id, record_id=document["id"], data=document)
        return document

    @as_result
    async def insert_many(self, model_id: str, documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        prepared = [self._prepare_insert(model_id, d) for d in documents]
        if not prepared:
            return []
        await self.store.insert(model_id, prepared)
        await self.emit(DbOperation.INSERT_MANY, model_id, data=prepared)
        return prepared

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def _stamp_update(self, update: dict[str, Any]) -> dict[str, Any]:
        stamped = dict(update)
        if self.user_id:
            stamped.setdefault("updatedAt", timestamp())
            stamped.setdefault("updatedBy", self.user_id)
        return stamped

    @as_result
    async def update_one(self, model_id: str, record_id: str, update: dict[str, Any]) -> dict[str, Any]:
        self.check_permission("update", model_id, {"id": record_id, **update})
        stamped = self._stamp_update(update)
        [document] = await self.store.apply([Operation(model_id, record_id, stamped)])
        await self.emit(DbOperation.UPDATE, model_id, record_id=record_id, data=stamped)
        return document

    @as_result
    async def update_many(self, model_id: str, query: QueryInput, update: dict[str, Any]) -> dict[str, Any]:
        self.check_permission("update", model_id, dict(update))
        targets = await self.store.query(model_id, self._predicate(query))
        ids = [str(d["id"]) for d in targets]
        stamped = self._stamp_update(update)
        if ids:
            await self.store.apply([Operation(model_id, i, dict(stamped)) for i in ids])
            await self.emit(DbOperation.UPDATE_MANY, model_id, data={"ids": ids, "update": stamped})
        return {"ids": ids, "update": stamped}

    @as_result
    async def update_bulk(self, operations: list[Operation] | Transaction) -> list[dict[str, Any]]:
        if isinstance(operations, Transaction):
            tx = operations
        else:
            tx = Transaction(list(operations))
        for op in tx:
            self.check_permission("update", op.model_id, {"id": op.record_id, **op.updates})
        return await self._commit(tx, bulk=True, merge=False)

    @as_result
    async def update_one_deep(
        self, model_id: str, record_id: str, update: dict[str, Any]
    ) -> list[dict[str, Any]]:
        self.check_permission("update", model_id, {"id": record_id, **update})
        tx = await self.engine.update_one_deep(model_id, record_id, update, user_id=self.user_id)
        return await self._commit(tx)

    @as_result
    async def update_link(self, link: dict[str, Any]) -> list[dict[str, Any]]:
        tx = await self.engine.update_link(link, user_id=self.user_id)
        return await self._commit(tx)

    @as_result
    async def update_all_deep(self, model_id: str) -> list[dict[str, Any]]:
        """Recompute every derived field of a model (schema changes, repairs)."""
        tx = await self.engine.update_all_deep(model_id, user_id=self.user_id)
        return await self._commit(tx, bulk=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @as_result
    async def find_one(self, model_id: str, record_id: str) -> dict[str, Any] | None:
        document = await self.store.get(model_id, record_id)
        if document is not None:
            self.check_permission("read", model_id, document)
        return document

    @as_result
    async def find_by_id(self, model_id: str, record_ids: list[str]) -> list[dict[str, Any]]:
        self.check_permission("read", model_id)
        if not record_ids:
            return []
        return await self.store.query(model_id, {"id": {"$in": list(record_ids)}})

    @as_result
    async def find(self, model_id: str, query: QueryInput = None) -> list[dict[str, Any]]:
        self.check_permission("read", model_id)
        spec = normalize_query(query)
        predicate, sort = to_mongo_query(spec, self.identity)
        documents = await self.store.find(
            model_id,
            predicate,
            sort,
            dict(spec.projection) or None,
            spec.skip,
            spec.limit,
        )
        if not spec.group:
            return documents
        return [
            {"group": dict(zip(spec.group, key)), "records": records}
            for key, records in group_documents(documents, spec.group, spec.group_unwind).items()
        ]

    @as_result
    async def count(self, model_id: str, query: QueryInput = None) -> int:
        self.check_permission("read", model_id)
        return await self.store.count(model_id, self._predicate(query))

    # -------------------------------------------------------------------------
    # Deletes
    # -------------------------------------------------------------------------

    async def _trash(self, model_id: str, documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        trashed = [trash_document(model_id, d, self.user_id, self.account_id) for d in documents]
        if trashed:
            await self.store.insert(TRASH_MODEL_ID, trashed)
        return trashed

    @as_result
    async def delete_one(self, model_id: str, record_id: str, send_to_trash: bool = False) -> dict[str, Any]:
        document = await self.store.get(model_id, record_id)
        if document is None:
            raise NotFoundError(model_id, record_id)
        self.check_permission("delete", model_id, document)

        if send_to_trash:
            await self._trash(model_id, [document])
        await self.store.remove(model_id, [record_id])
        await self.emit(DbOperation.DELETE, model_id, record_id=record_id, data=document)

        tx = await self.engine.update_foreign_records(model_id, document, user_id=self.user_id)
        await self._commit(tx, bulk=True)
        return document

    @as_result
    async def delete_many(
        self, model_id: str, query: QueryInput, send_to_trash: bool = False
    ) -> list[str]:
        documents = await self.store.query(model_id, self._predicate(query))
        for document in documents:
            self.check_permission("delete", model_id, document)
        if not documents:
            return []

        ids = [str(d["id"]) for d in documents]
        if send_to_trash:
            await self._trash(model_id, documents)
        await self.store.remove(model_id, ids)
        await self.emit(DbOperation.DELETE_MANY, model_id, data=ids)

        tx = await self.engine.update_foreign_records_for_many(
            model_id, documents, user_id=self.user_id
        )
        await self._commit(tx, bulk=True)
        return ids

    @as_result
    async def copy_one_to_trash(self, model_id: str, record_id: str) -> dict[str, Any]:
        document = await self.store.get(model_id, record_id)
        if document is None:
            raise NotFoundError(model_id, record_id)
        [trashed] = await self._trash(model_id, [document])
        await self.emit(DbOperation.INSERT, TRASH_MODEL_ID, record_id=trashed["id"], data=trashed)
        return trashed

    @as_result
    async def copy_many_to_trash(self, model_id: str, query: QueryInput) -> list[dict[str, Any]]:
        documents = await self.store.query(model_id, self._predicate(query))
        trashed = await self._trash(model_id, documents)
        if trashed:
            await self.emit(DbOperation.INSERT_MANY, TRASH_MODEL_ID, data=trashed)
        return trashed

    async def close(self) -> None:
        await self.store.close()
