"""
Error taxonomy for the relstore data layer.

Backend adapters never raise for expected failure paths. They catch storage
and network errors at their boundary and hand back a ``DbResult`` whose
``error`` attribute carries one of the exceptions below. Only programming
contract violations (e.g. a malformed formula) are raised, and those are
caught one level up and logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class DataLayerError(Exception):
    """Base class for all relstore errors."""

    code = "data_layer_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging or wire transport."""
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(DataLayerError):
    """A schema rule was violated by incoming data."""

    code = "validation_error"


class PermissionDenied(DataLayerError):
    """An authorization check refused the operation."""

    code = "permission_denied"


class NotFoundError(DataLayerError):
    """The target of an update or delete does not exist."""

    code = "not_found"

    def __init__(self, model_id: str, record_id: str | None = None) -> None:
        target = f"{model_id}/{record_id}" if record_id else model_id
        super().__init__(f"Not found: {target}", model_id=model_id, record_id=record_id)
        self.model_id = model_id
        self.record_id = record_id


class BackendUnavailable(DataLayerError):
    """Storage or network failure underneath an adapter."""

    code = "backend_unavailable"


class SchemaInconsistency(DataLayerError):
    """A link, lookup or summary field points at a model or field that is gone.

    Never fatal: the offending field is degraded to plain text and the
    operation continues.
    """

    code = "schema_inconsistency"

    def __init__(self, model_id: str, field_id: str, reason: str) -> None:
        super().__init__(
            f"Field {model_id}.{field_id}: {reason}",
            model_id=model_id,
            field_id=field_id,
        )
        self.model_id = model_id
        self.field_id = field_id
        self.reason = reason


class FormulaError(DataLayerError):
    """A formula could not be parsed or evaluated."""

    code = "formula_error"


# =============================================================================
# Results
# =============================================================================


@dataclass
class DbResult:
    """Outcome of a backend adapter operation.

    Callers check ``ok`` (or ``error``) instead of catching exceptions.
    """

    data: Any = None
    error: DataLayerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, data: Any = None) -> DbResult:
        return cls(data=data)

    @classmethod
    def failure(cls, error: DataLayerError) -> DbResult:
        return cls(error=error)
