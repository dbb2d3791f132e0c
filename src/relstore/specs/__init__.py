"""
relstore specification types.

This module exports the field, model and query declarations.
"""

from relstore.specs.field import (
    DERIVED_TYPES,
    NUMERIC_TYPES,
    SYSTEM_FIELD_IDS,
    Dependent,
    FieldSpec,
    FieldType,
    LinkSpec,
    LookupSpec,
    SummaryOperation,
    SummarySpec,
)
from relstore.specs.model import ModelSpec, SectionSpec
from relstore.specs.query import (
    TODAY_TOKEN,
    USER_ID_TOKEN,
    DateOperator,
    FilterGroupSpec,
    FilterNode,
    FilterOperator,
    FilterSpec,
    QuerySpec,
    QuerySyntax,
    SortDirection,
)

__all__ = [
    # Fields
    "DERIVED_TYPES",
    "NUMERIC_TYPES",
    "SYSTEM_FIELD_IDS",
    "Dependent",
    "FieldSpec",
    "FieldType",
    "LinkSpec",
    "LookupSpec",
    "SummaryOperation",
    "SummarySpec",
    # Models
    "ModelSpec",
    "SectionSpec",
    # Queries
    "TODAY_TOKEN",
    "USER_ID_TOKEN",
    "DateOperator",
    "FilterGroupSpec",
    "FilterNode",
    "FilterOperator",
    "FilterSpec",
    "QuerySpec",
    "QuerySyntax",
    "SortDirection",
]
