"""
Mongo-style predicate evaluation over plain dicts.

The in-memory and embedded backends keep documents as JSON-compatible
dicts and evaluate translated queries here: matching, sorting, projection,
paging and grouping.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import cmp_to_key
from typing import Any

_MISSING = object()


class PredicateError(ValueError):
    """Raised for predicates using an unsupported operator."""


# =============================================================================
# Value access
# =============================================================================


def get_path(doc: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning a sentinel when absent."""
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _candidates(value: Any) -> list[Any]:
    """Values an operator is tested against: the value, plus list members."""
    if isinstance(value, list):
        return [value, *value]
    return [value]


def _comparable(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, int | float) and isinstance(b, int | float):
        return True
    return type(a) is type(b)


def _compile_regex(pattern: Any, options: str = "") -> re.Pattern[str]:
    if isinstance(pattern, re.Pattern):
        return pattern
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    return re.compile(str(pattern), flags)


# =============================================================================
# Matching
# =============================================================================


def _match_operator(value: Any, op: str, operand: Any, spec: dict[str, Any]) -> bool:
    if op == "$eq":
        return value is not _MISSING and any(c == operand for c in _candidates(value))
    if op == "$ne":
        return not _match_operator(value, "$eq", operand, spec)
    if op in ("$lt", "$lte", "$gt", "$gte"):
        if value is _MISSING or value is None:
            return False
        for candidate in _candidates(value):
            if not _comparable(candidate, operand):
                continue
            if op == "$lt" and candidate < operand:
                return True
            if op == "$lte" and candidate <= operand:
                return True
            if op == "$gt" and candidate > operand:
                return True
            if op == "$gte" and candidate >= operand:
                return True
        return False
    if op == "$in":
        if value is _MISSING:
            return None in operand
        return any(c in operand for c in _candidates(value))
    if op == "$nin":
        return not _match_operator(value, "$in", operand, spec)
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if op == "$regex":
        if value is _MISSING:
            return False
        regex = _compile_regex(operand, spec.get("$options", ""))
        return any(isinstance(c, str) and regex.search(c) for c in _candidates(value))
    if op == "$options":
        return True
    if op == "$not":
        if isinstance(operand, dict):
            return not _match_field(value, operand)
        return not _match_operator(value, "$regex", operand, {})
    if op == "$size":
        return isinstance(value, list) and len(value) == operand
    if op == "$all":
        return isinstance(value, list) and all(item in value for item in operand)
    raise PredicateError(f"Unsupported operator: {op}")


def _is_operator_spec(spec: Any) -> bool:
    return isinstance(spec, dict) and bool(spec) and all(k.startswith("$") for k in spec)


def _match_field(value: Any, spec: Any) -> bool:
    if isinstance(spec, re.Pattern):
        return _match_operator(value, "$regex", spec, {})
    if _is_operator_spec(spec):
        return all(_match_operator(value, op, operand, spec) for op, operand in spec.items())
    return _match_operator(value, "$eq", spec, {})


def matches(doc: dict[str, Any], predicate: dict[str, Any] | None) -> bool:
    """
    Test a document against a predicate.

    An empty predicate matches everything.
    """
    if not predicate:
        return True

    for key, spec in predicate.items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in spec):
                return False
        elif key == "$or":
            if not any(matches(doc, sub) for sub in spec):
                return False
        elif key == "$nor":
            if any(matches(doc, sub) for sub in spec):
                return False
        elif key.startswith("$"):
            raise PredicateError(f"Unsupported top-level operator: {key}")
        elif not _match_field(get_path(doc, key), spec):
            return False
    return True


# =============================================================================
# Sorting, projection, paging
# =============================================================================


def _sort_key_compare(a: Any, b: Any) -> int:
    # Missing and None sort first, then numbers, then strings, then the rest
    def rank(v: Any) -> int:
        if v is _MISSING or v is None:
            return 0
        if isinstance(v, bool):
            return 1
        if isinstance(v, int | float):
            return 2
        if isinstance(v, str):
            return 3
        return 4

    ra, rb = rank(a), rank(b)
    if ra != rb:
        return -1 if ra < rb else 1
    if ra in (0, 4):
        return 0
    if ra == 3:
        a, b = a.lower(), b.lower()
    return (a > b) - (a < b)


def sort_documents(docs: list[dict[str, Any]], sort: dict[str, int] | None) -> list[dict[str, Any]]:
    """Stable multi-key sort; the first key of ``sort`` has priority."""
    if not sort:
        return list(docs)

    def compare(x: dict[str, Any], y: dict[str, Any]) -> int:
        for field_id, direction in sort.items():
            result = _sort_key_compare(get_path(x, field_id), get_path(y, field_id))
            if result:
                return result if direction >= 0 else -result
        return 0

    return sorted(docs, key=cmp_to_key(compare))


def apply_projection(doc: dict[str, Any], projection: dict[str, int] | None) -> dict[str, Any]:
    """Inclusion or exclusion projection; ``id`` is always kept on inclusion."""
    if not projection:
        return dict(doc)
    included = {k for k, v in projection.items() if v}
    if included:
        return {k: v for k, v in doc.items() if k in included or k == "id"}
    excluded = {k for k, v in projection.items() if not v}
    return {k: v for k, v in doc.items() if k not in excluded}


def run_query(
    docs: Iterable[dict[str, Any]],
    predicate: dict[str, Any] | None = None,
    sort: dict[str, int] | None = None,
    projection: dict[str, int] | None = None,
    skip: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Filter, sort, page and project a document set."""
    result = [doc for doc in docs if matches(doc, predicate)]
    result = sort_documents(result, sort)
    if skip:
        result = result[skip:]
    if limit:
        result = result[:limit]
    return [apply_projection(doc, projection) for doc in result]


def group_documents(
    docs: list[dict[str, Any]],
    group: list[str],
    unwind: bool = False,
) -> dict[tuple[Any, ...], list[dict[str, Any]]]:
    """
    Group documents by the values of ``group`` fields, in first-seen order.

    With ``unwind``, a document whose group value is a list joins one group
    per list member.
    """
    groups: dict[tuple[Any, ...], list[dict[str, Any]]] = {}
    for doc in docs:
        keys: list[tuple[Any, ...]] = [()]
        for field_id in group:
            value = doc.get(field_id)
            values = value if unwind and isinstance(value, list) and value else [value]
            keys = [
                (*key, _hashable(v)) for key in keys for v in values
            ]
        for key in keys:
            groups.setdefault(key, []).append(doc)
    return groups


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    return value
