"""Structural validation of ``StructuredQuery`` plans."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, NoReturn

from . import vocabulary as vocab
from .errors import InvalidQueryShape
from .operators import as_decimal
from .types import AGGREGATIONS, OPERATORS, FilterClause, Slot, StructuredQuery

_NUMERIC_OPERATORS = frozenset({"gt", "gte", "lt", "lte", "between"})

# Inclusive value ranges per field unit.
_RANGES: dict[str, tuple[Decimal, Decimal]] = {
    "money": (Decimal("0"), Decimal("100000000")),
    "percent_points": (Decimal("0"), Decimal("100")),
    "ratio": (Decimal("0"), Decimal("10")),
    "day_of_month": (Decimal("1"), Decimal("31")),
    "days": (Decimal("0"), Decimal("366")),
    "multiplier": (Decimal("0"), Decimal("100")),
}


def _reject(message: str) -> NoReturn:
    raise InvalidQueryShape(message, user_message="I couldn't turn that into a valid query. " + message)


def _check_range(attribute: str, value: Any) -> None:
    kind = vocab.field_kind(attribute)
    bounds = _RANGES.get(kind or "")
    number = as_decimal(value)
    if bounds is None or number is None:
        return
    low, high = bounds
    if not low <= number <= high:
        _reject(f"Value {value} is out of range for {attribute}.")


def _validate_filter(clause: FilterClause) -> None:
    if not vocab.is_known_field(clause.attribute):
        _reject(f"Unknown field '{clause.attribute}'.")
    if clause.operator not in OPERATORS:
        _reject(f"Unknown operator '{clause.operator}'.")

    values = clause.value if isinstance(clause.value, (tuple, list)) else (clause.value,)
    if any(isinstance(value, Slot) for value in values):
        _reject(f"Filter on {clause.attribute} has an unbound placeholder.")

    if clause.operator in _NUMERIC_OPERATORS and not vocab.is_numeric_field(clause.attribute):
        _reject(f"'{clause.operator}' needs a numeric field, not {clause.attribute}.")

    if clause.operator == "between":
        if not isinstance(clause.value, (tuple, list)) or len(clause.value) != 2:
            _reject("A range needs exactly two values.")
        low, high = as_decimal(clause.value[0]), as_decimal(clause.value[1])
        if low is None or high is None:
            _reject("Range bounds must be numbers.")
        if low > high:
            _reject("Range lower bound exceeds upper bound.")
    elif clause.operator == "in":
        if not isinstance(clause.value, (tuple, list)) or not clause.value:
            _reject(f"'in' on {clause.attribute} needs a non-empty set of values.")
    elif clause.operator in _NUMERIC_OPERATORS and as_decimal(clause.value) is None:
        _reject(f"'{clause.operator}' on {clause.attribute} needs a number.")
    elif clause.operator == "contains" and not isinstance(clause.value, str):
        _reject(f"'contains' on {clause.attribute} needs text.")

    if vocab.is_numeric_field(clause.attribute):
        for value in values:
            _check_range(clause.attribute, value)


def validate_structured_query(query: StructuredQuery) -> StructuredQuery:
    """Return ``query`` unchanged or raise ``InvalidQueryShape``."""
    for clause in query.filters:
        _validate_filter(clause)

    aggregation = query.aggregation
    if aggregation is not None:
        if aggregation.op not in AGGREGATIONS:
            _reject(f"Unknown aggregation '{aggregation.op}'.")
        if aggregation.attribute is None and aggregation.op != "count":
            _reject(f"'{aggregation.op}' needs a field to aggregate.")
        if aggregation.attribute is not None and not vocab.is_numeric_field(aggregation.attribute):
            _reject(f"Cannot {aggregation.op} the non-numeric field {aggregation.attribute}.")

    if query.group_by is not None:
        if aggregation is None:
            _reject("Grouping requires an aggregation.")
        if not vocab.is_known_field(query.group_by):
            _reject(f"Unknown grouping field '{query.group_by}'.")

    if query.limit is not None:
        if isinstance(query.limit, bool) or not isinstance(query.limit, int) or query.limit < 1:
            _reject("Limit must be a positive whole number.")
        if query.sort is None:
            _reject("A limit needs a sort order.")

    if query.sort is not None:
        if query.sort.direction not in ("asc", "desc"):
            _reject(f"Unknown sort direction '{query.sort.direction}'.")
        allowed = set()
        if aggregation is not None:
            allowed.add(aggregation.column)
            if query.group_by:
                allowed.add(query.group_by)
        if query.sort.attribute not in allowed and not vocab.is_known_field(query.sort.attribute):
            _reject(f"Cannot sort by '{query.sort.attribute}'.")

    for name in query.select:
        if not vocab.is_known_field(name):
            _reject(f"Unknown field '{name}'.")

    return query


__all__ = ["validate_structured_query"]
