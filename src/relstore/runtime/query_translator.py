"""
Query translation for relstore.

Turns the normalized query model (filters, filter groups, sorts) into
Mongo-style predicates understood by every backend. Translation is a pure
function of its inputs: dynamic values ($userId, $today, relative dates)
are resolved from the identity and clock passed in.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from relstore.runtime.identity import Identity
from relstore.specs.query import (
    TODAY_TOKEN,
    USER_ID_TOKEN,
    DateOperator,
    FilterGroupSpec,
    FilterOperator,
    FilterSpec,
    QuerySpec,
    QuerySyntax,
    SortDirection,
)

logger = logging.getLogger(__name__)

# Mapping of comparison operators to predicate operators
COMPARISON_OPERATORS: dict[str, str] = {
    FilterOperator.NOT_EQUAL: "$ne",
    FilterOperator.LESS_THAN: "$lt",
    FilterOperator.GREATER_THAN: "$gt",
    FilterOperator.LESS_OR_EQUAL: "$lte",
    FilterOperator.GREATER_OR_EQUAL: "$gte",
}

# Timestamps stored with a time part; date filters compare the day only
TIMESTAMP_FIELDS = frozenset({"createdAt", "updatedAt", "deletedAt"})

_WIRE_KEYS = {
    "filterSyntax": "filter_syntax",
    "sortSyntax": "sort_syntax",
    "groupUnwind": "group_unwind",
}


# =============================================================================
# Normalization
# =============================================================================


def parse_filter(raw: Any) -> FilterSpec | FilterGroupSpec | dict[str, Any]:
    """
    Parse a wire-format filter tree.

    Returns ``{}`` for an empty filter. Nodes without an explicit ``type``
    are treated as groups when they carry ``filters``.
    """
    if raw is None or raw == {}:
        return {}
    if isinstance(raw, FilterSpec | FilterGroupSpec):
        return raw
    if not isinstance(raw, dict):
        raise TypeError(f"Filter must be a dict, got {type(raw).__name__}")

    node_type = raw.get("type") or ("group" if "filters" in raw else "filter")
    if node_type == "group":
        children = [parse_filter(child) for child in raw.get("filters") or [] if child]
        return FilterGroupSpec(
            operator=raw.get("operator", "and"),
            filters=[child for child in children if child != {}],
        )
    return FilterSpec.model_validate({**raw, "type": "filter"})


def normalize_query(raw: QuerySpec | dict[str, Any] | None = None) -> QuerySpec:
    """
    Fill every part of a query with a safe default.

    Accepts a ``QuerySpec`` or a wire-format dict (camelCase keys such as
    ``filterSyntax`` are accepted). Downstream code never has to branch on a
    missing key.
    """
    if isinstance(raw, QuerySpec):
        return raw

    data: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        if value is None and key in ("filter", "sort", "group", "projection"):
            continue
        data[_WIRE_KEYS.get(key, key)] = value

    query = QuerySpec.model_validate(data)
    if query.filter_syntax == QuerySyntax.NORMALIZED:
        query = query.model_copy(update={"filter": parse_filter(query.filter)})
    return query


# =============================================================================
# Dynamic Values
# =============================================================================


def _today(now: datetime | None) -> date:
    return (now or datetime.now()).date()


def _resolve_date_value(filter: FilterSpec, now: datetime | None) -> Any:
    """Resolve $today and relative date operators to an ISO date."""
    value = filter.value
    if value == TODAY_TOKEN:
        value = _today(now).isoformat()

    if filter.date_operator == DateOperator.TODAY:
        return _today(now).isoformat()
    if filter.date_operator in (DateOperator.DAYS_FROM_NOW, DateOperator.DAYS_AGO):
        try:
            days = int(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric day count %r on %s", value, filter.field_id)
            return value
        if filter.date_operator == DateOperator.DAYS_AGO:
            days = -days
        return (_today(now) + timedelta(days=days)).isoformat()
    return value


def _is_date_filter(filter: FilterSpec) -> bool:
    return filter.field_type == "date" or filter.date_operator is not None


# =============================================================================
# Translation
# =============================================================================


def translate_filter(
    filter: FilterSpec | dict[str, Any],
    identity: Identity | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Translate a leaf filter into a predicate.

    Args:
        filter: The leaf filter (or its wire dict)
        identity: Current actor, used to resolve ``$userId``
        now: Clock override for date resolution

    Returns:
        A predicate dict; ``{}`` for an unknown operator.
    """
    if isinstance(filter, dict):
        filter = FilterSpec.model_validate(filter)

    field_id = filter.field_id
    operator = filter.operator
    value = filter.value

    if _is_date_filter(filter) or value == TODAY_TOKEN:
        value = _resolve_date_value(filter, now)

        # Timestamps carry a time part: match on the day prefix
        if field_id in TIMESTAMP_FIELDS and isinstance(value, str):
            day = {"$regex": "^" + re.escape(value[:10])}
            if operator == FilterOperator.EQUAL:
                return {field_id: day}
            if operator == FilterOperator.NOT_EQUAL:
                return {field_id: {"$not": day}}

    if value == USER_ID_TOKEN:
        acl = identity.get_acl() if identity is not None else []
        if operator in (FilterOperator.EQUAL, FilterOperator.CONTAINS):
            return {field_id: {"$in": acl}}
        if operator in (FilterOperator.NOT_EQUAL, FilterOperator.NOT_CONTAINS):
            return {field_id: {"$nin": acl}}

    if operator == FilterOperator.EQUAL:
        return {field_id: value}

    if operator in COMPARISON_OPERATORS:
        return {field_id: {COMPARISON_OPERATORS[operator]: value}}

    if operator == FilterOperator.CONTAINS:
        return {field_id: {"$regex": re.escape(str(value)), "$options": "i"}}

    if operator == FilterOperator.NOT_CONTAINS:
        return {field_id: {"$not": {"$regex": re.escape(str(value)), "$options": "i"}}}

    if operator == FilterOperator.IS_EMPTY:
        return {
            "$or": [
                {field_id: ""},
                {field_id: []},
                {field_id: None},
                {field_id: {"$exists": False}},
            ]
        }

    if operator == FilterOperator.IS_NOT_EMPTY:
        return {
            "$and": [
                {field_id: {"$ne": ""}},
                {field_id: {"$ne": []}},
                {field_id: {"$ne": None}},
                {field_id: {"$exists": True}},
            ]
        }

    logger.debug("Unknown filter operator %r on field %s: no constraint", operator, field_id)
    return {}


def translate_filter_group(
    group: FilterGroupSpec | FilterSpec | dict[str, Any],
    identity: Identity | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Translate a filter tree into a predicate.

    Groups map their boolean operator over the translated children; leaves
    delegate to ``translate_filter``.
    """
    if isinstance(group, dict):
        parsed = parse_filter(group)
        if parsed == {}:
            return {}
        group = parsed  # type: ignore[assignment]

    if isinstance(group, FilterSpec):
        return translate_filter(group, identity, now)

    children: list[dict[str, Any]] = []
    for child in group.filters:
        if child is None:
            continue
        if isinstance(child, FilterGroupSpec):
            children.append(translate_filter_group(child, identity, now))
        else:
            children.append(translate_filter(child, identity, now))

    return {"$" + group.operator: children}


def translate_sort(sort: list[dict[str, str]] | None) -> dict[str, int]:
    """
    Translate ``[{field: "asc"|"desc"}]`` into ``{field: 1|-1}``.

    Key order follows the input order, which is the tie-break order.
    """
    result: dict[str, int] = {}
    for entry in sort or []:
        for field_id, direction in entry.items():
            result[field_id] = -1 if str(direction).lower() == SortDirection.DESC else 1
    return result


def get_filter_fields(filter: FilterSpec | FilterGroupSpec | dict[str, Any] | None) -> list[str]:
    """
    Collect the ids of every field referenced in a filter tree.

    Used by collections to decide whether an update can change the result
    set of a cached query.
    """
    if not filter:
        return []
    if isinstance(filter, dict):
        try:
            filter = parse_filter(filter)  # type: ignore[assignment]
        except (TypeError, PydanticValidationError):
            return []
        if filter == {}:
            return []

    fields: list[str] = []

    def collect(node: Any) -> None:
        if isinstance(node, FilterSpec):
            if node.field_id not in fields:
                fields.append(node.field_id)
        elif isinstance(node, FilterGroupSpec):
            for child in node.filters:
                collect(child)

    collect(filter)
    return fields


def to_mongo_query(
    query: QuerySpec | dict[str, Any] | None,
    identity: Identity | None = None,
    now: datetime | None = None,
) -> tuple[dict[str, Any], dict[str, int]]:
    """
    Produce the ``(predicate, sort)`` pair for a query.

    Mongo-syntax filters and sorts pass through untouched.
    """
    query = normalize_query(query)

    if query.filter_syntax == QuerySyntax.MONGO:
        predicate = dict(query.filter or {})
    elif query.filter:
        predicate = translate_filter_group(query.filter, identity, now)
    else:
        predicate = {}

    if query.sort_syntax == QuerySyntax.MONGO:
        sort = dict(query.sort or {})
    else:
        sort = translate_sort(query.sort)

    return predicate, sort
