"""Condition evaluation against an execution context.

Fields are resolved by dot-path (``order.total``, ``items.0.sku``). A path
that cannot be resolved yields ``MISSING``; every operator except
``not_equals`` is false for a missing field.
"""

from __future__ import annotations

import logging
from numbers import Number
from typing import Any, Mapping

from .contracts import Condition

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot-notation path within ``context``."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _strict_equal(left: Any, right: Any) -> bool:
    """Equality that never treats booleans and numbers as interchangeable."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Make a numeric string comparable with a number."""
    if _is_number(left) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(left, str) and _is_number(right):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _ordered(left: Any, right: Any, op: str) -> bool:
    left, right = _coerce_pair(left, right)
    try:
        return left > right if op == "greater_than" else left < right
    except TypeError:
        logger.debug(f"Cannot compare {left!r} and {right!r} for {op}")
        return False


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, str):
        return str(needle) in haystack
    if isinstance(haystack, (list, tuple, set, frozenset, Mapping)):
        try:
            return needle in haystack
        except TypeError:
            return False
    return str(needle) in str(haystack)


def evaluate_condition(context: Mapping[str, Any], condition: Condition) -> bool:
    """Return whether ``condition`` holds for ``context``."""
    value = resolve_path(context, condition.field)
    op = condition.operator

    if value is MISSING:
        return op == "not_equals"

    if op == "equals":
        return _strict_equal(value, condition.value)
    if op == "not_equals":
        return not _strict_equal(value, condition.value)
    if op in ("greater_than", "less_than"):
        return _ordered(value, condition.value, op)
    if op == "contains":
        return _contains(value, condition.value)
    raise ValueError(f"Unsupported condition operator: {op}")


__all__ = ["MISSING", "evaluate_condition", "resolve_path"]
