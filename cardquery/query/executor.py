"""
Deterministic execution of a ``StructuredQuery`` over an in-memory snapshot
of card records.

Stages always run in the same order: filter, group, aggregate, sort, select,
limit. Insights are computed over the filtered records.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from cardquery.core.config import PipelineOptions
from cardquery.core.log import get_logger, timeit
from cardquery.schemas.cards import CardRecord

from . import vocabulary as vocab
from .errors import ExecutionError, InvalidQueryShape
from .insights import generate_insights
from .operators import as_decimal, evaluate
from .types import Aggregation, ExecutionResult, FilterClause, StructuredQuery
from .validation import validate_structured_query

LOGGER = get_logger(__name__)

DEFAULT_COLUMNS: tuple[str, ...] = (
    "card_id",
    "card_name",
    "issuer",
    "card_network",
    "current_balance",
    "credit_limit",
    "apr",
)

_DERIVED = {
    "utilization": lambda record, as_of: record.utilization,
    "available_credit": lambda record, as_of: record.available_credit,
    "card_label": lambda record, as_of: record.card_label,
    "days_until_due": lambda record, as_of: record.days_until_due(as_of),
}


def resolve_field(record: CardRecord, attribute: str, as_of: date) -> Any:
    """Value of a stored or derived field for one record."""
    if attribute.startswith(vocab.REWARD_PREFIX):
        return record.reward_multiplier(attribute[len(vocab.REWARD_PREFIX):])
    derived = _DERIVED.get(attribute)
    if derived is not None:
        return derived(record, as_of)
    if attribute not in vocab.FIELD_KINDS:
        raise ExecutionError(f"Unknown field {attribute!r}")
    return getattr(record, attribute)


def _sort_key(value: Any) -> Any:
    if isinstance(value, str):
        return (1, value.strip().lower())
    number = as_decimal(value)
    if number is not None:
        return (0, number)
    return (2, str(value))


def _aggregate(aggregation: Aggregation, values: Sequence[Any], row_count: int) -> Any:
    if aggregation.op == "count":
        if aggregation.attribute is None:
            return row_count
        return sum(1 for value in values if value is not None)

    numbers = [number for number in (as_decimal(value) for value in values) if number is not None]
    if aggregation.op == "sum":
        return sum(numbers, Decimal("0"))
    if not numbers:
        return None
    if aggregation.op == "avg":
        return sum(numbers, Decimal("0")) / len(numbers)
    if aggregation.op == "min":
        return min(numbers)
    if aggregation.op == "max":
        return max(numbers)
    raise ExecutionError(f"Unsupported aggregation {aggregation.op!r}")


class QueryExecutor:
    """Run validated plans against a read-only record snapshot."""

    def __init__(
        self,
        options: Optional[PipelineOptions] = None,
        clock: Callable[[], date] = date.today,
    ):
        self.options = options or PipelineOptions()
        self.clock = clock

    def execute(
        self,
        query: StructuredQuery,
        records: Iterable[CardRecord],
        as_of: Optional[date] = None,
    ) -> ExecutionResult:
        try:
            validate_structured_query(query)
        except InvalidQueryShape as exc:
            raise ExecutionError(f"Refusing to execute malformed query: {exc}") from exc

        as_of = as_of or self.clock()
        snapshot = tuple(records)

        with timeit("Query execution", logger=LOGGER, total=len(snapshot), unit="records"):
            filtered = [record for record in snapshot if self._matches(record, query.filters, as_of)]

            rows: list[Any]
            if query.aggregation is not None:
                rows = self._aggregate_rows(query, filtered, as_of)
            else:
                rows = list(filtered)

            if query.sort is not None:
                rows = self._sorted(rows, query, as_of)

            if query.aggregation is None:
                columns = self._columns(query)
                rows = [
                    {column: resolve_field(record, column, as_of) for column in columns}
                    for record in rows
                ]

            total = len(rows)
            truncated = query.limit is not None and total > query.limit
            if query.limit is not None:
                rows = rows[: query.limit]

        insights = generate_insights(filtered, as_of, self.options)
        LOGGER.debug(
            "Executed query filters=%d matched=%d rows=%d truncated=%s",
            len(query.filters),
            len(filtered),
            len(rows),
            truncated,
        )
        return ExecutionResult(
            rows=tuple(rows),
            insights=insights,
            row_count=len(rows),
            truncated=truncated,
        )

    @staticmethod
    def _matches(record: CardRecord, filters: Sequence[FilterClause], as_of: date) -> bool:
        for clause in filters:
            value = resolve_field(record, clause.attribute, as_of)
            try:
                if not evaluate(value, clause.operator, clause.value):
                    return False
            except ValueError as exc:
                raise ExecutionError(str(exc)) from exc
        return True

    @staticmethod
    def _aggregate_rows(
        query: StructuredQuery, records: Sequence[CardRecord], as_of: date
    ) -> list[dict[str, Any]]:
        aggregation = query.aggregation
        assert aggregation is not None

        def values_of(members: Sequence[CardRecord]) -> list[Any]:
            if aggregation.attribute is None:
                return []
            return [resolve_field(record, aggregation.attribute, as_of) for record in members]

        if query.group_by is None:
            return [{aggregation.column: _aggregate(aggregation, values_of(records), len(records))}]

        # Groups keep first-appearance order; text keys group case-insensitively.
        groups: dict[Any, tuple[Any, list[CardRecord]]] = {}
        for record in records:
            raw = resolve_field(record, query.group_by, as_of)
            key = raw.strip().lower() if isinstance(raw, str) else raw
            if key not in groups:
                groups[key] = (raw, [])
            groups[key][1].append(record)

        return [
            {
                query.group_by: label,
                aggregation.column: _aggregate(aggregation, values_of(members), len(members)),
            }
            for label, members in groups.values()
        ]

    @staticmethod
    def _sorted(rows: list[Any], query: StructuredQuery, as_of: date) -> list[Any]:
        sort = query.sort
        assert sort is not None

        if query.aggregation is not None:
            def value_of(row: Any) -> Any:
                return row.get(sort.attribute)
        else:
            def value_of(row: Any) -> Any:
                return resolve_field(row, sort.attribute, as_of)

        present = [row for row in rows if value_of(row) is not None]
        missing = [row for row in rows if value_of(row) is None]
        try:
            present.sort(key=lambda row: _sort_key(value_of(row)), reverse=sort.direction == "desc")
        except TypeError as exc:
            raise ExecutionError(f"Cannot order values of {sort.attribute}: {exc}") from exc
        return present + missing

    @staticmethod
    def _columns(query: StructuredQuery) -> tuple[str, ...]:
        if query.select:
            base = ("card_id", "card_name", *query.select)
        else:
            base = DEFAULT_COLUMNS
        extra = [clause.attribute for clause in query.filters]
        if query.sort is not None:
            extra.append(query.sort.attribute)
        return tuple(dict.fromkeys((*base, *extra)))


__all__ = ["DEFAULT_COLUMNS", "QueryExecutor", "resolve_field"]
