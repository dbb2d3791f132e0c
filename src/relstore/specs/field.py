"""
Field specification types.

Defines the field-type taxonomy, including the derived types (link, lookup,
summary) and the computed-field descriptors.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Field Type System
# =============================================================================


class FieldType(StrEnum):
    """Field types."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    CHECKBOX = "checkbox"
    SELECT = "select"
    RATING = "rating"
    SLIDER = "slider"
    COLOR = "color"
    ICON = "icon"
    DIRECTORY = "directory"
    ATTACHMENT = "attachment"
    PASSWORD = "password"
    # Relational types
    LINK = "link"
    LOOKUP = "lookup"
    SUMMARY = "summary"


NUMERIC_TYPES = frozenset({FieldType.NUMBER, FieldType.RATING, FieldType.SLIDER})
DERIVED_TYPES = frozenset({FieldType.LOOKUP, FieldType.SUMMARY})

# Fields every record may carry regardless of its model
SYSTEM_FIELD_IDS = (
    "createdAt",
    "createdBy",
    "updatedAt",
    "updatedBy",
    "deletedAt",
    "deletedBy",
)


class SummaryOperation(StrEnum):
    """Aggregations a summary field can apply over linked records."""

    COUNT = "count"
    COUNT_EMPTY = "count_empty"
    COUNT_NON_EMPTY = "count_non_empty"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    CONCATENATE = "concatenate"
    LIST_NAME = "list_name"
    PERCENT = "percent"


# =============================================================================
# Relational Descriptors
# =============================================================================


class LinkSpec(BaseModel):
    """Target of a link field: the foreign model and its reciprocal link field."""

    model_id: str = Field(description="Foreign model id")
    field_id: str | None = Field(
        default=None,
        description="Reciprocal link field on the foreign model",
    )

    model_config = ConfigDict(frozen=True)


class LookupSpec(BaseModel):
    """Lookup descriptor: mirrors one source field through a link field."""

    link_id: str = Field(description="Local link field the value is pulled through")
    field_id: str = Field(description="Source field on the foreign model")
    type: FieldType | None = Field(
        default=None,
        description="Derived from the source field on every relationship pass",
    )

    model_config = ConfigDict(frozen=True)


class SummarySpec(BaseModel):
    """Summary descriptor: aggregates one source field over all linked records."""

    link_id: str = Field(description="Local link field the values are pulled through")
    field_id: str = Field(description="Source field on the foreign model")
    operation: SummaryOperation = Field(
        default=SummaryOperation.COUNT,
        description="Aggregation applied to the linked values",
    )
    type: FieldType | None = Field(
        default=None,
        description="Derived from the operation and the source field",
    )

    model_config = ConfigDict(frozen=True)


class Dependent(BaseModel):
    """Back-edge stored on a source field: a lookup/summary that reads it."""

    model_id: str
    field_id: str
    type: FieldType

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Field Specification
# =============================================================================


class FieldSpec(BaseModel):
    """
    Field specification.

    Lookup and summary fields carry their derived ``type`` inside their
    descriptor; ``value_type`` returns whichever type actually describes the
    stored value.
    """

    id: str = Field(description="Field id, unique within the model")
    label: str | None = Field(default=None, description="Display label")
    type: FieldType = Field(default=FieldType.TEXT, description="Field type")
    primary: bool = Field(default=False, description="Primary key field")
    deleted: bool = Field(default=False, description="Soft-deleted flag")
    multiple: bool = Field(default=False, description="Link accepts many records")
    computed: bool = Field(default=False, description="Value is derived")
    formula: str | None = Field(default=None, description="Formula for computed fields")
    formula_source_field_ids: list[str] = Field(
        default_factory=list,
        description="Field ids referenced by the formula (resolved from labels)",
    )
    link: LinkSpec | None = None
    lookup: LookupSpec | None = None
    summary: SummarySpec | None = None
    precision: int | None = Field(default=None, description="Decimal precision for numbers")
    default_value: Any = Field(default=None, description="Default value or token")
    source_for: list[Dependent] = Field(
        default_factory=list,
        description="Lookup/summary fields sourcing their value from this field",
    )

    model_config = ConfigDict(frozen=True)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v:
            raise ValueError("Field id cannot be empty")
        return v

    @property
    def display_label(self) -> str:
        return self.label or self.id

    @property
    def value_type(self) -> FieldType:
        """Type of the stored value (lookup/summary types come from the descriptor)."""
        if self.type == FieldType.LOOKUP and self.lookup and self.lookup.type:
            return self.lookup.type
        if self.type == FieldType.SUMMARY and self.summary and self.summary.type:
            return self.summary.type
        return self.type

    @property
    def is_numeric(self) -> bool:
        return self.value_type in NUMERIC_TYPES

    @property
    def is_derived(self) -> bool:
        """True for lookup and summary fields."""
        return self.type in DERIVED_TYPES

    @property
    def is_formula(self) -> bool:
        """True for same-record computed fields evaluated from a formula."""
        return self.computed and not self.is_derived and bool(self.formula)
