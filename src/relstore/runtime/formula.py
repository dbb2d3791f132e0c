"""
Formula evaluation for computed fields.

Records only rely on the ``FormulaEvaluator`` contract:
``execute(formula, record, fields) -> value`` raising ``FormulaError`` for a
malformed formula. ``ExpressionEvaluator`` is the default implementation: it
replaces ``{{Field label}}`` tags with the record's values and evaluates the
remaining expression over a small whitelist of Python syntax and functions.

Example:
    {{Price}} * {{Quantity}}
    IF({{Status}} == "done", 1, 0)
    CONCATENATE({{First name}}, " ", {{Last name}})
"""

from __future__ import annotations

import ast
import logging
import math
import operator
import re
from collections.abc import Callable, Sequence
from datetime import date
from typing import Any, Protocol

from relstore.runtime.errors import FormulaError
from relstore.specs.field import FieldSpec

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"{{(.*?)}}")


def find_tags(formula: str | None) -> list[str]:
    """Unique ``{{tag}}`` contents of a formula, in order of appearance."""
    if not formula:
        return []
    tags: list[str] = []
    for tag in TAG_PATTERN.findall(formula):
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def resolve_tag(tag: str, fields: Sequence[FieldSpec]) -> FieldSpec | None:
    """Resolve a tag to a field: by id, by label (case-insensitive), then by index."""
    for f in fields:
        if f.id == tag:
            return f
    wanted = tag.lower()
    for f in fields:
        if not f.deleted and f.label and f.label.lower() == wanted:
            return f
    if tag.isdigit():
        index = int(tag)
        if 0 <= index < len(fields):
            return fields[index]
    return None


class FormulaEvaluator(Protocol):
    """Contract for evaluating a computed field's formula."""

    def execute(
        self,
        formula: str,
        record: dict[str, Any],
        fields: Sequence[FieldSpec],
    ) -> Any: ...


# =============================================================================
# Built-in functions
# =============================================================================


def _numbers(values: Sequence[Any]) -> list[float]:
    flat: list[Any] = []
    for v in values:
        flat.extend(v if isinstance(v, list) else [v])
    result: list[float] = []
    for v in flat:
        if v is None or v == "":
            continue
        try:
            result.append(float(v))
        except (TypeError, ValueError):
            continue
    return result


def _sum(*values: Any) -> float:
    return sum(_numbers(values))


def _avg(*values: Any) -> float:
    nums = _numbers(values)
    return sum(nums) / len(nums) if nums else 0


def _min(*values: Any) -> float | None:
    nums = _numbers(values)
    return min(nums) if nums else None


def _max(*values: Any) -> float | None:
    nums = _numbers(values)
    return max(nums) if nums else None


def _round(value: Any, digits: int = 0) -> float:
    return round(float(value or 0), int(digits))


def _concatenate(*values: Any) -> str:
    return "".join("" if v is None else str(v) for v in values)


def _if(condition: Any, when_true: Any, when_false: Any = "") -> Any:
    return when_true if condition else when_false


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "SUM": _sum,
    "AVERAGE": _avg,
    "AVG": _avg,
    "MIN": _min,
    "MAX": _max,
    "ROUND": _round,
    "ABS": lambda v: abs(float(v or 0)),
    "FLOOR": lambda v: math.floor(float(v or 0)),
    "CEILING": lambda v: math.ceil(float(v or 0)),
    "CONCATENATE": _concatenate,
    "UPPERCASE": lambda v: str(v or "").upper(),
    "LOWERCASE": lambda v: str(v or "").lower(),
    "LENGTH": lambda v: len(v or ""),
    "IF": _if,
    "TODAY": lambda: date.today().isoformat(),
}

MAX_EXPONENT = 1000
MAX_RESULT_BITS = 100_000


def _power(base: int | float, exponent: int | float) -> int | float:
    if abs(exponent) > MAX_EXPONENT:
        raise FormulaError(f"Exponent {exponent} exceeds {MAX_EXPONENT}")
    if isinstance(base, int) and base.bit_length() * abs(exponent) > MAX_RESULT_BITS:
        raise FormulaError(f"Result of {base} ** {exponent} is too large")
    return operator.pow(base, exponent)


_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


# =============================================================================
# Expression Evaluator
# =============================================================================


class ExpressionEvaluator:
    """Default formula evaluator over a safe subset of Python expressions."""

    def __init__(self, functions: dict[str, Callable[..., Any]] | None = None) -> None:
        self.functions = {**FUNCTIONS, **(functions or {})}

    def execute(
        self,
        formula: str,
        record: dict[str, Any],
        fields: Sequence[FieldSpec],
    ) -> Any:
        variables: dict[str, Any] = {}

        def substitute(match: re.Match[str]) -> str:
            tag = match.group(1).strip()
            field = resolve_tag(tag, fields)
            if field is None:
                raise FormulaError(f"Unknown field in formula: {tag}", formula=formula)
            name = f"_v{len(variables)}"
            variables[name] = record.get(field.id)
            return name

        expression = TAG_PATTERN.sub(substitute, formula).strip()
        if not expression:
            return ""

        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as e:
            raise FormulaError(f"Malformed formula: {formula}", formula=formula) from e

        try:
            return self._eval(tree.body, variables)
        except FormulaError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, ArithmeticError) as e:
            raise FormulaError(f"Cannot evaluate formula: {e}", formula=formula) from e

    def _eval(self, node: ast.AST, variables: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in variables:
                value = variables[node.id]
                return 0 if value is None else value
            if node.id in ("true", "True"):
                return True
            if node.id in ("false", "False"):
                return False
            raise FormulaError(f"Unknown name in formula: {node.id}")

        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left = self._eval(node.left, variables)
            right = self._eval(node.right, variables)
            if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
                return f"{left}{right}"
            return _BIN_OPS[type(node.op)](_to_number(left), _to_number(right))

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, variables)
            if isinstance(node.op, ast.USub):
                return -_to_number(operand)
            if isinstance(node.op, ast.UAdd):
                return _to_number(operand)
            if isinstance(node.op, ast.Not):
                return not operand

        if isinstance(node, ast.BoolOp):
            values = [self._eval(v, variables) for v in node.values]
            return all(values) if isinstance(node.op, ast.And) else any(values)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables)
            for op, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator, variables)
                if type(op) not in _COMPARE_OPS or not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, variables):
                return self._eval(node.body, variables)
            return self._eval(node.orelse, variables)

        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            func = self.functions.get(node.func.id.upper())
            if func is None:
                raise FormulaError(f"Unknown function: {node.func.id}")
            args = [self._eval(arg, variables) for arg in node.args]
            return func(*args)

        if isinstance(node, ast.List):
            return [self._eval(el, variables) for el in node.elts]

        raise FormulaError(f"Unsupported formula syntax: {type(node).__name__}")


def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    if value is None or value == "":
        return 0
    return float(value)
