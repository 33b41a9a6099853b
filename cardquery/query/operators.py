"""Comparison operators applied to card field values."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from .types import OPERATORS


def as_decimal(value: Any) -> Optional[Decimal]:
    """Numeric view of ``value`` or ``None`` when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip().replace(",", ""))
        except InvalidOperation:
            return None
    return None


def equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.strip().lower() == right.strip().lower()
    left_num, right_num = as_decimal(left), as_decimal(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right


def _numeric(compare: Callable[[Decimal, Decimal], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(left: Any, right: Any) -> bool:
        left_num, right_num = as_decimal(left), as_decimal(right)
        if left_num is None or right_num is None:
            return False
        return compare(left_num, right_num)

    return evaluate


def between(left: Any, right: Any) -> bool:
    """Inclusive on both ends."""
    if not isinstance(right, (tuple, list)) or len(right) != 2:
        return False
    value, low, high = as_decimal(left), as_decimal(right[0]), as_decimal(right[1])
    if value is None or low is None or high is None:
        return False
    return low <= value <= high


def within(left: Any, right: Any) -> bool:
    if not isinstance(right, (tuple, list, set, frozenset)):
        return False
    return any(equals(left, item) for item in right)


def contains(left: Any, right: Any) -> bool:
    return str(right).strip().lower() in str(left).lower()


_EVALUATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": equals,
    "ne": lambda left, right: not equals(left, right),
    "gt": _numeric(lambda a, b: a > b),
    "gte": _numeric(lambda a, b: a >= b),
    "lt": _numeric(lambda a, b: a < b),
    "lte": _numeric(lambda a, b: a <= b),
    "between": between,
    "in": within,
    "contains": contains,
}


def evaluate(left: Any, operator: str, right: Any) -> bool:
    """Apply ``operator`` to a field value and a literal.

    A missing field value only satisfies ``eq None`` and ``ne <value>``.
    """
    evaluator = _EVALUATORS.get(operator)
    if evaluator is None:
        raise ValueError(f"Invalid operator: {operator}. Valid operators: {', '.join(OPERATORS)}")
    if left is None:
        if operator == "eq":
            return right is None
        if operator == "ne":
            return right is not None
        return False
    return evaluator(left, right)


__all__ = ["as_decimal", "between", "contains", "equals", "evaluate", "within"]
