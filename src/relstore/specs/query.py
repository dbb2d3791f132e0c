"""
Query specification types.

The normalized query model: filters, filter groups, sorts and the query
envelope that travels between collections and backends.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FilterOperator(StrEnum):
    """Comparison operators of a leaf filter."""

    EQUAL = "="
    NOT_EQUAL = "<>"
    LESS_THAN = "<"
    GREATER_THAN = ">"
    LESS_OR_EQUAL = "<="
    GREATER_OR_EQUAL = ">="
    CONTAINS = "contains"
    NOT_CONTAINS = "does not contain"
    IS_EMPTY = "is empty"
    IS_NOT_EMPTY = "is not empty"


class DateOperator(StrEnum):
    """Relative date expressions applied to a filter value."""

    TODAY = "today"
    DAYS_FROM_NOW = "days from now"
    DAYS_AGO = "days ago"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


class QuerySyntax(StrEnum):
    """Whether filter/sort are relstore ASTs or raw backend predicates."""

    NORMALIZED = "normalized"
    MONGO = "mongo"


# Dynamic placeholder values resolved at translation time
USER_ID_TOKEN = "$userId"
TODAY_TOKEN = "$today"


class FilterSpec(BaseModel):
    """
    Leaf filter.

    ``operator`` is kept as a plain string: an unknown operator is a valid
    node that simply contributes no constraint.
    """

    type: Literal["filter"] = "filter"
    field_id: str = Field(validation_alias=AliasChoices("field_id", "fieldId"))
    operator: str = FilterOperator.EQUAL.value
    value: Any = None
    date_operator: str | None = Field(
        default=None,
        validation_alias=AliasChoices("date_operator", "dateOperator"),
    )
    field_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("field_type", "fieldType"),
        description="Type of the filtered field, enables date handling",
    )

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class FilterGroupSpec(BaseModel):
    """Boolean combination of filters and nested groups."""

    type: Literal["group"] = "group"
    operator: Literal["and", "or"] = "and"
    filters: list[FilterNode] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


FilterNode = Annotated[FilterSpec | FilterGroupSpec, Field(discriminator="type")]

FilterGroupSpec.model_rebuild()


class QuerySpec(BaseModel):
    """
    Normalized query envelope.

    ``filter`` holds a FilterSpec/FilterGroupSpec (or ``{}``) when
    ``filter_syntax`` is normalized, and a raw predicate dict otherwise.
    ``sort`` likewise holds ``[{field: "asc"|"desc"}]`` or a raw sort dict.
    """

    filter: Any = Field(default_factory=dict)
    filter_syntax: QuerySyntax = QuerySyntax.NORMALIZED
    sort: Any = Field(default_factory=list)
    sort_syntax: QuerySyntax = QuerySyntax.NORMALIZED
    group: list[str] = Field(default_factory=list)
    group_unwind: bool = False
    projection: dict[str, int] = Field(default_factory=dict)
    skip: int | None = None
    limit: int | None = None

    model_config = ConfigDict(frozen=True)
