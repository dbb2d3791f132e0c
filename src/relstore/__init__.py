"""
relstore - relationally-aware document data layer.

Models with computed, lookup and summary fields, kept consistent across
linked records, over memory, embedded (SQLite) or remote storage.

This package provides:
- specs: Field, model and query declarations (pydantic)
- runtime: Schema store, relationship engine, backends, change bus
"""

__version__ = "0.1.0"

from relstore.runtime import Collection, SchemaStore, create_backend
from relstore.specs import FieldSpec, ModelSpec, QuerySpec

__all__ = [
    "Collection",
    "FieldSpec",
    "ModelSpec",
    "QuerySpec",
    "SchemaStore",
    "__version__",
    "create_backend",
]
