"""
relstore runtime.

Engines, backends and observers of the data layer.

Example usage:
    >>> from relstore.runtime import SchemaStore, create_backend, Collection
    >>>
    >>> schema = SchemaStore()
    >>> schema.register_model({"id": "task", "fields": [{"id": "title", "primary": True}]})
    >>> backend = create_backend(schema)
    >>> await backend.insert_one("task", {"title": "Write docs"})
    >>> tasks = Collection(backend, "task")
    >>> await tasks.find()
"""

from relstore.runtime.backends import (
    Backend,
    EmbeddedBackend,
    LocalBackend,
    MemoryBackend,
    RemoteBackend,
    create_backend,
)
from relstore.runtime.collection import Collection
from relstore.runtime.config import DataLayerConfig, DbMode, get_config, load_config
from relstore.runtime.errors import (
    BackendUnavailable,
    DataLayerError,
    DbResult,
    FormulaError,
    NotFoundError,
    PermissionDenied,
    SchemaInconsistency,
    ValidationError,
)
from relstore.runtime.event_bus import (
    ChangeBus,
    ChangeEvent,
    DbOperation,
    channel_name,
    get_change_bus,
    reset_change_bus,
    set_change_bus,
)
from relstore.runtime.formula import ExpressionEvaluator, FormulaEvaluator
from relstore.runtime.identity import Identity, SessionIdentity, StaticIdentity
from relstore.runtime.logging import get_logger, log_with_context, setup_logging
from relstore.runtime.query_translator import (
    get_filter_fields,
    normalize_query,
    to_mongo_query,
    translate_filter,
    translate_filter_group,
    translate_sort,
)
from relstore.runtime.record import Record, create_record
from relstore.runtime.relations import RelationshipEngine
from relstore.runtime.schema_store import LINK_MODEL_ID, TRASH_MODEL_ID, ModelHandle, SchemaStore
from relstore.runtime.transaction import Operation, Transaction

__all__ = [
    # Backends
    "Backend",
    "EmbeddedBackend",
    "LocalBackend",
    "MemoryBackend",
    "RemoteBackend",
    "create_backend",
    # Observers
    "ChangeBus",
    "ChangeEvent",
    "Collection",
    "DbOperation",
    "channel_name",
    "get_change_bus",
    "reset_change_bus",
    "set_change_bus",
    # Configuration
    "DataLayerConfig",
    "DbMode",
    "get_config",
    "load_config",
    # Errors
    "BackendUnavailable",
    "DataLayerError",
    "DbResult",
    "FormulaError",
    "NotFoundError",
    "PermissionDenied",
    "SchemaInconsistency",
    "ValidationError",
    # Formulas and identity
    "ExpressionEvaluator",
    "FormulaEvaluator",
    "Identity",
    "SessionIdentity",
    "StaticIdentity",
    # Logging
    "get_logger",
    "log_with_context",
    "setup_logging",
    # Queries
    "get_filter_fields",
    "normalize_query",
    "to_mongo_query",
    "translate_filter",
    "translate_filter_group",
    "translate_sort",
    # Records and relationships
    "LINK_MODEL_ID",
    "TRASH_MODEL_ID",
    "ModelHandle",
    "Operation",
    "Record",
    "RelationshipEngine",
    "SchemaStore",
    "Transaction",
    "create_record",
]
