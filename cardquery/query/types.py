"""Typed value objects passed between the pipeline stages."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

Operator = Literal["eq", "ne", "gt", "lt", "gte", "lte", "between", "in", "contains"]
AggregationOp = Literal["sum", "avg", "count", "min", "max", "none"]
Modifier = Literal["highest", "lowest", "none"]
IntentLabel = Literal["filter", "aggregate", "rank", "compare", "distinct", "conversational"]
IntentMethod = Literal["vector", "pattern", "language_model", "fallback"]
ConfidenceBand = Literal["high", "medium", "low"]
EntityKind = Literal["filter", "modifier", "aggregation", "group", "mention"]
SortDirection = Literal["asc", "desc"]
FeedbackKind = Literal["explicit", "implicit"]
FeedbackSignal = Literal["abandonment", "correction", "reformulation", "navigation", "timeout"]

OPERATORS: tuple[str, ...] = ("eq", "ne", "gt", "lt", "gte", "lte", "between", "in", "contains")
AGGREGATIONS: tuple[str, ...] = ("sum", "avg", "count", "min", "max")
INTENT_LABELS: tuple[str, ...] = (
    "filter",
    "aggregate",
    "rank",
    "compare",
    "distinct",
    "conversational",
)


@dataclass(frozen=True)
class ExtractedEntity:
    """One typed fact pulled out of an utterance."""

    kind: EntityKind
    attribute: Optional[str] = None
    operator: Optional[Operator] = None
    value: Any = None
    modifier: Modifier = "none"
    aggregation: AggregationOp = "none"
    category: Optional[str] = None
    position: int = field(default=0, compare=False)

    @property
    def value_type(self) -> str:
        """Coarse type of ``value`` used in trigger signatures."""
        return _value_type(self.value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "attribute": self.attribute,
            "operator": self.operator,
            "value": _jsonable(self.value),
            "modifier": self.modifier,
            "aggregation": self.aggregation,
            "category": self.category,
        }


@dataclass(frozen=True)
class IntentMatch:
    """Outcome of intent classification."""

    label: IntentLabel
    confidence: float
    method: IntentMethod
    tier: ConfidenceBand = "low"
    needs_confirmation: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "tier": self.tier,
            "needs_confirmation": self.needs_confirmation,
        }


@dataclass(frozen=True)
class Slot:
    """Placeholder in a learned template, bound to the n-th literal of one entity shape."""

    shape: str
    occurrence: int = 0


@dataclass(frozen=True)
class FilterClause:
    attribute: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class Aggregation:
    op: AggregationOp
    attribute: Optional[str] = None

    @property
    def column(self) -> str:
        """Name of the output column the aggregate lands in."""
        if self.attribute is None:
            return self.op
        return f"{self.op}_{self.attribute}"


@dataclass(frozen=True)
class SortClause:
    attribute: str
    direction: SortDirection = "desc"


@dataclass(frozen=True)
class StructuredQuery:
    """Canonical filter / aggregate / sort / select plan.

    ``method`` and ``pattern_id`` describe how the plan was produced and do
    not take part in equality.
    """

    filters: tuple[FilterClause, ...] = ()
    aggregation: Optional[Aggregation] = None
    group_by: Optional[str] = None
    sort: Optional[SortClause] = None
    limit: Optional[int] = None
    select: tuple[str, ...] = ()
    method: str = field(default="decomposer", compare=False)
    pattern_id: Optional[str] = field(default=None, compare=False)

    @property
    def is_aggregate(self) -> bool:
        return self.aggregation is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "filters": [
                {"attribute": f.attribute, "operator": f.operator, "value": _jsonable(f.value)}
                for f in self.filters
            ],
            "aggregation": (
                {"op": self.aggregation.op, "attribute": self.aggregation.attribute}
                if self.aggregation
                else None
            ),
            "group_by": self.group_by,
            "sort": (
                {"attribute": self.sort.attribute, "direction": self.sort.direction}
                if self.sort
                else None
            ),
            "limit": self.limit,
            "select": list(self.select),
            "method": self.method,
            "pattern_id": self.pattern_id,
        }


@dataclass(frozen=True)
class QueryPattern:
    """A learned (trigger signature -> template) pair. Replaced, never mutated."""

    pattern_id: str
    trigger_signature: str
    template: StructuredQuery
    confidence: float
    usage_count: int = 0
    failure_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    intent_label: Optional[str] = None
    near_signature: Optional[str] = None


@dataclass(frozen=True)
class PatternMatch:
    """A stored pattern whose placeholders were bound to the current literals."""

    pattern: QueryPattern
    query: StructuredQuery


@dataclass(frozen=True)
class ExecutionResult:
    rows: tuple[dict[str, Any], ...]
    insights: tuple[str, ...]
    row_count: int
    truncated: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "rows": [{k: _jsonable(v) for k, v in row.items()} for row in self.rows],
            "insights": list(self.insights),
            "row_count": self.row_count,
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class AnalyticsRecord:
    """Append-only trace of one processed query."""

    record_id: str
    query_text: str
    user_id: Optional[str]
    entities: tuple[ExtractedEntity, ...]
    structured_query: Optional[StructuredQuery]
    intent_match: Optional[IntentMatch]
    response_time_ms: float
    success: bool
    failure_kind: Optional[str] = None
    pattern_id_used: Optional[str] = None
    decomposition_method: Optional[str] = None
    row_count: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class FeedbackRecord:
    """A user's verdict on one recorded query.

    Explicit feedback carries a 1-5 ``rating`` or a ``helpful`` flag;
    implicit feedback is inferred from what the user did next (``signal``).
    """

    feedback_id: str
    record_id: str
    kind: FeedbackKind
    signal: Optional[str] = None
    rating: Optional[int] = None
    helpful: Optional[bool] = None
    correction: Optional[str] = None
    pattern_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def positive(self) -> Optional[bool]:
        """``True``/``False`` when the feedback judges the answer, ``None`` when it is neutral."""
        if self.rating is not None:
            return self.rating >= 4
        return self.helpful

    def as_dict(self) -> dict[str, Any]:
        return {
            "feedback_id": self.feedback_id,
            "record_id": self.record_id,
            "kind": self.kind,
            "signal": self.signal,
            "rating": self.rating,
            "helpful": self.helpful,
            "pattern_id": self.pattern_id,
            "positive": self.positive,
        }


@dataclass(frozen=True)
class QueryResponse:
    """What ``process_query`` hands back to the chat layer."""

    intent_match: IntentMatch
    entities: tuple[ExtractedEntity, ...] = ()
    structured_query: Optional[StructuredQuery] = None
    execution_result: Optional[ExecutionResult] = None
    message: Optional[str] = None
    failure_kind: Optional[str] = None
    record_id: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.execution_result is not None


def _value_type(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, str):
        return "text"
    if isinstance(value, (tuple, list)):
        inner = sorted({_value_type(item) for item in value})
        return f"seq[{','.join(inner)}]"
    return type(value).__name__


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (tuple, list)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Slot):
        return {"slot": value.shape, "occurrence": value.occurrence}
    return value


__all__ = [
    "AGGREGATIONS",
    "INTENT_LABELS",
    "OPERATORS",
    "Aggregation",
    "AnalyticsRecord",
    "ExecutionResult",
    "ExtractedEntity",
    "FeedbackRecord",
    "FilterClause",
    "IntentMatch",
    "PatternMatch",
    "QueryPattern",
    "QueryResponse",
    "Slot",
    "SortClause",
    "StructuredQuery",
]
