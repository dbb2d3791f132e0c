"""
Storage backends.

The mode is chosen once, at construction:
- memory: ``MemoryBackend`` (dict documents, nothing persisted)
- embedded: ``EmbeddedBackend`` (aiosqlite JSON documents)
- remote: ``RemoteBackend`` (httpx REST client)
"""

from __future__ import annotations

import logging
from typing import Any

from relstore.runtime.backends.base import (
    AccessCheck,
    Backend,
    DocumentStore,
    LocalBackend,
    as_result,
    trash_document,
)
from relstore.runtime.backends.embedded import EmbeddedBackend, SQLiteStore
from relstore.runtime.backends.memory import MemoryBackend, MemoryStore
from relstore.runtime.backends.remote import RemoteBackend
from relstore.runtime.config import DataLayerConfig, DbMode, get_config
from relstore.runtime.event_bus import ChangeBus
from relstore.runtime.identity import Identity
from relstore.runtime.logging import get_log_dir, setup_logging
from relstore.runtime.schema_store import SchemaStore

logger = logging.getLogger(__name__)

_BACKENDS: dict[DbMode, type[Backend]] = {
    DbMode.MEMORY: MemoryBackend,
    DbMode.EMBEDDED: EmbeddedBackend,
    DbMode.REMOTE: RemoteBackend,
}


def create_backend(
    schema: SchemaStore,
    config: DataLayerConfig | None = None,
    *,
    bus: ChangeBus | None = None,
    identity: Identity | None = None,
    **kwargs: Any,
) -> Backend:
    """
    Create the backend for the configured mode.

    Args:
        schema: Schema store shared with records and collections
        config: Configuration (defaults to ``get_config()``); a ``log_dir``
            turns on file logging the first time a backend is created
        bus: Change bus (defaults to the global bus)
        identity: Acting identity
        **kwargs: Passed to the backend (``access_check``, ``store``,
            ``client``, ``formula_evaluator``)
    """
    config = config or get_config()
    if config.log_dir and get_log_dir() is None:
        setup_logging(config.log_dir, config.log_level)
    backend_class = _BACKENDS[config.db_mode]
    logger.info("Creating %s backend", config.db_mode)
    return backend_class(schema, bus=bus, identity=identity, config=config, **kwargs)


__all__ = [
    "AccessCheck",
    "Backend",
    "DocumentStore",
    "EmbeddedBackend",
    "LocalBackend",
    "MemoryBackend",
    "MemoryStore",
    "RemoteBackend",
    "SQLiteStore",
    "as_result",
    "create_backend",
    "trash_document",
]
