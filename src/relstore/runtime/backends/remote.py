"""
Remote backend.

Talks to a relstore server over REST with httpx. The server owns the
documents and runs the relationship engine, so it is the serialization
point for deep mutations; this adapter only broadcasts local change events
built from the server's responses.

Responses are JSON objects ``{"data": ...}``; failures carry
``{"error": {"code": ..., "message": ...}}`` with a non-2xx status.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from relstore.runtime.backends.base import Backend, QueryInput, as_result
from relstore.runtime.config import DbMode
from relstore.runtime.errors import (
    BackendUnavailable,
    DataLayerError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from relstore.runtime.event_bus import DbOperation
from relstore.runtime.query_translator import normalize_query, to_mongo_query
from relstore.runtime.schema_store import TRASH_MODEL_ID
from relstore.runtime.transaction import Operation, Transaction

logger = logging.getLogger(__name__)


class RemoteBackend(Backend):
    """
    REST client backend.

    Args:
        schema: Schema store (used for model ids and the query translator)
        client: Preconfigured ``httpx.AsyncClient`` (tests pass one built on
            ``httpx.MockTransport``); by default one is created from
            ``config.remote_url`` and ``config.remote_timeout``
    """

    db_mode = DbMode.REMOTE

    def __init__(self, schema: Any, client: httpx.AsyncClient | None = None, **kwargs: Any) -> None:
        super().__init__(schema, **kwargs)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.config.remote_url:
                raise BackendUnavailable("RELSTORE_REMOTE_URL is not configured")
            self._client = httpx.AsyncClient(
                base_url=self.config.remote_url,
                timeout=self.config.remote_timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.user_id:
            headers["X-Relstore-User"] = self.user_id
        if self.account_id:
            headers["X-Relstore-Account"] = self.account_id
        return headers

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        """
        Send one request and unwrap ``data``.

        Raises:
            DataLayerError: Mapped from the status code and error payload
        """
        try:
            response = await self.client.request(
                method, path, json=body, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{method} {path} failed: {e}", path=path) from e

        if response.is_success:
            if not response.content:
                return None
            return response.json().get("data")

        raise self._error_from(response, path)

    @staticmethod
    def _error_from(response: httpx.Response, path: str) -> DataLayerError:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        message = error.get("message") or response.reason_phrase or "Request failed"
        status = response.status_code
        if status == 404:
            parts = path.strip("/").split("/")
            return NotFoundError(parts[0], parts[1] if len(parts) > 1 else None)
        if status in (401, 403):
            return PermissionDenied(message, path=path)
        if status in (400, 422):
            return ValidationError(message, path=path)
        return BackendUnavailable(message, path=path, status=status)

    def _search_body(self, query: QueryInput) -> dict[str, Any]:
        """Query envelope with filter and sort already translated."""
        spec = normalize_query(query)
        predicate, sort = to_mongo_query(spec, self.identity)
        body: dict[str, Any] = {
            "filter": predicate,
            "filterSyntax": "mongo",
            "sort": sort,
            "sortSyntax": "mongo",
        }
        if spec.projection:
            body["projection"] = dict(spec.projection)
        if spec.skip is not None:
            body["skip"] = spec.skip
        if spec.limit is not None:
            body["limit"] = spec.limit
        if spec.group:
            body["group"] = list(spec.group)
            body["groupUnwind"] = spec.group_unwind
        return body

    def _predicate(self, query: QueryInput) -> dict[str, Any]:
        predicate, _ = to_mongo_query(query, self.identity)
        return predicate

    async def _emit_operations(self, operations: list[dict[str, Any]], *, bulk: bool = False) -> None:
        """Broadcast operations reported by the server."""
        if not operations:
            return
        if len(operations) == 1 and not bulk:
            op = Operation.from_dict(operations[0])
            await self.emit(DbOperation.UPDATE, op.model_id, record_id=op.record_id, data=op.updates)
        else:
            await self.emit(DbOperation.UPDATE_BULK, None, data=operations)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @as_result
    async def insert_one(self, model_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self.check_permission("insert", model_id, data)
        document = await self._request("POST", f"/{model_id}", data)
        await self.emit(DbOperation.INSERT, model_id, record_id=document.get("id"), data=document)
        return document

    @as_result
    async def insert_many(self, model_id: str, documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for document in documents:
            self.check_permission("insert", model_id, document)
        inserted = await self._request(
            "POST", f"/{model_id}", {"operation": "insertMany", "documents": documents}
        )
        if inserted:
            await self.emit(DbOperation.INSERT_MANY, model_id, data=inserted)
        return inserted or []

    @as_result
    async def update_one(self, model_id: str, record_id: str, update: dict[str, Any]) -> dict[str, Any]:
        self.check_permission("update", model_id, {"id": record_id, **update})
        document = await self._request("PATCH", f"/{model_id}/{record_id}", {"update": update})
        await self.emit(DbOperation.UPDATE, model_id, record_id=record_id, data=update)
        return document

    @as_result
    async def update_many(self, model_id: str, query: QueryInput, update: dict[str, Any]) -> dict[str, Any]:
        self.check_permission("update", model_id, dict(update))
        result = await self._request(
            "PATCH",
            f"/{model_id}",
            {"operation": "updateMany", "filter": self._predicate(query), "update": update},
        )
        ids = list((result or {}).get("ids") or [])
        if ids:
            await self.emit(DbOperation.UPDATE_MANY, model_id, data={"ids": ids, "update": update})
        return {"ids": ids, "update": update}

    @as_result
    async def update_bulk(self, operations: list[Operation] | Transaction) -> list[dict[str, Any]]:
        tx = operations if isinstance(operations, Transaction) else Transaction(list(operations))
        payload = [op.to_dict() for op in tx]
        for op in tx:
            self.check_permission("update", op.model_id, {"id": op.record_id, **op.updates})
        if not payload:
            return []
        # partial application is possible: the server applies record by record
        applied = await self._request("PATCH", "/bulk", {"operations": payload})
        applied = applied if applied is not None else payload
        await self._emit_operations(applied, bulk=True)
        return applied

    @as_result
    async def update_one_deep(
        self, model_id: str, record_id: str, update: dict[str, Any]
    ) -> list[dict[str, Any]]:
        self.check_permission("update", model_id, {"id": record_id, **update})
        operations = await self._request(
            "PATCH",
            f"/{model_id}/{record_id}",
            {"operation": "updateOneDeep", "update": update},
        )
        await self._emit_operations(operations or [])
        return operations or []

    @as_result
    async def update_link(self, link: dict[str, Any]) -> list[dict[str, Any]]:
        operations = await self._request("POST", "/updateLink", {"link": link})
        await self._emit_operations(operations or [])
        return operations or []

    @as_result
    async def update_all_deep(self, model_id: str) -> list[dict[str, Any]]:
        operations = await self._request("PATCH", f"/{model_id}", {"operation": "updateAllDeep"})
        await self._emit_operations(operations or [], bulk=True)
        return operations or []

    @as_result
    async def find_one(self, model_id: str, record_id: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", f"/{model_id}/{record_id}")
        except NotFoundError:
            return None

    @as_result
    async def find_by_id(self, model_id: str, record_ids: list[str]) -> list[dict[str, Any]]:
        if not record_ids:
            return []
        documents = await self._request(
            "POST",
            f"/{model_id}",
            {
                "operation": "search",
                "filter": {"id": {"$in": list(record_ids)}},
                "filterSyntax": "mongo",
            },
        )
        return documents or []

    @as_result
    async def find(self, model_id: str, query: QueryInput = None) -> list[dict[str, Any]]:
        self.check_permission("read", model_id)
        documents = await self._request(
            "POST", f"/{model_id}", {"operation": "search", **self._search_body(query)}
        )
        return documents or []

    @as_result
    async def count(self, model_id: str, query: QueryInput = None) -> int:
        self.check_permission("read", model_id)
        result = await self._request(
            "POST",
            f"/{model_id}",
            {"operation": "count", "filter": self._predicate(query), "filterSyntax": "mongo"},
        )
        return int(result or 0)

    @as_result
    async def delete_one(self, model_id: str, record_id: str, send_to_trash: bool = False) -> dict[str, Any]:
        self.check_permission("delete", model_id, {"id": record_id})
        result = await self._request(
            "DELETE", f"/{model_id}/{record_id}", {"sendToTrash": send_to_trash}
        )
        result = result or {}
        document = result.get("document") or {"id": record_id}
        await self.emit(DbOperation.DELETE, model_id, record_id=record_id, data=document)
        await self._emit_operations(result.get("operations") or [], bulk=True)
        return document

    @as_result
    async def delete_many(
        self, model_id: str, query: QueryInput, send_to_trash: bool = False
    ) -> list[str]:
        self.check_permission("delete", model_id)
        result = await self._request(
            "POST",
            f"/{model_id}",
            {"operation": "delete", "filter": self._predicate(query), "sendToTrash": send_to_trash},
        )
        result = result or {}
        ids = list(result.get("ids") or [])
        if ids:
            await self.emit(DbOperation.DELETE_MANY, model_id, data=ids)
            await self._emit_operations(result.get("operations") or [], bulk=True)
        return ids

    @as_result
    async def copy_one_to_trash(self, model_id: str, record_id: str) -> dict[str, Any]:
        trashed = await self._request(
            "POST",
            f"/{model_id}",
            {"operation": "copyToTrash", "filter": {"id": record_id}, "filterSyntax": "mongo"},
        )
        if not trashed:
            raise NotFoundError(model_id, record_id)
        document = trashed[0]
        await self.emit(DbOperation.INSERT, TRASH_MODEL_ID, record_id=document.get("id"), data=document)
        return document

    @as_result
    async def copy_many_to_trash(self, model_id: str, query: QueryInput) -> list[dict[str, Any]]:
        trashed = await self._request(
            "POST",
            f"/{model_id}",
            {"operation": "copyToTrash", "filter": self._predicate(query), "filterSyntax": "mongo"},
        )
        if trashed:
            await self.emit(DbOperation.INSERT_MANY, TRASH_MODEL_ID, data=trashed)
        return trashed or []
