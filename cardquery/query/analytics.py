"""
Query analytics and user feedback.

Every processed query leaves one immutable ``AnalyticsRecord``. Users can
later judge an answer, explicitly (a 1-5 rating or a helpful flag) or
implicitly through what they did next; each judgement is an immutable
``FeedbackRecord`` tied to the query it is about. Both are kept in memory
for reporting and forwarded to any configured sinks (for example the SQL
sink in ``cardquery.repositories``).
"""
from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from cardquery.core.log import get_logger

from .pattern_learner import PatternStats
from .types import AnalyticsRecord, ExtractedEntity, FeedbackRecord, IntentMatch, StructuredQuery

LOGGER = get_logger(__name__)

# Implicit signal -> (rating, helpful) it stands for.
IMPLICIT_SIGNALS: Mapping[str, tuple[Optional[int], Optional[bool]]] = {
    "abandonment": (1, False),
    "correction": (2, False),
    "reformulation": (3, False),
    "navigation": (4, True),
    "timeout": (None, None),
}

TOP_QUERIES = 5


class AnalyticsSink(ABC):
    """Destination for analytics records beyond the in-memory log."""

    @abstractmethod
    def write(self, record: AnalyticsRecord) -> None:
        ...

    def write_feedback(self, feedback: FeedbackRecord) -> None:
        """Persist one feedback entry; sinks that only keep queries ignore it."""


@dataclass(frozen=True)
class AnalyticsSummary:
    total: int = 0
    successes: int = 0
    mean_response_time_ms: float = 0.0
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    by_decomposition_method: dict[str, int] = field(default_factory=dict)
    by_intent: dict[str, int] = field(default_factory=dict)
    top_queries: tuple[tuple[str, int], ...] = ()
    feedback_count: int = 0
    negative_feedback: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "success_rate": round(self.success_rate, 4),
            "mean_response_time_ms": round(self.mean_response_time_ms, 3),
            "failures_by_kind": dict(self.failures_by_kind),
            "by_decomposition_method": dict(self.by_decomposition_method),
            "by_intent": dict(self.by_intent),
            "top_queries": [{"query": text, "count": count} for text, count in self.top_queries],
            "feedback_count": self.feedback_count,
            "negative_feedback": self.negative_feedback,
        }


@dataclass(frozen=True)
class ProblemPattern:
    """A pattern that is used often but rarely ends in a good answer."""

    pattern_id: str
    uses: int
    success_rate: float
    negative_feedback: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "uses": self.uses,
            "success_rate": round(self.success_rate, 4),
            "negative_feedback": self.negative_feedback,
        }


class QueryAnalytics:
    """Append-only query and feedback log with simple reporting."""

    def __init__(
        self,
        sinks: Iterable[AnalyticsSink] = (),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.sinks = tuple(sinks)
        self.clock = clock
        self._lock = threading.Lock()
        self._records: tuple[AnalyticsRecord, ...] = ()
        self._by_id: dict[str, AnalyticsRecord] = {}
        self._feedback: tuple[FeedbackRecord, ...] = ()

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> tuple[AnalyticsRecord, ...]:
        return self._records

    @property
    def feedback(self) -> tuple[FeedbackRecord, ...]:
        return self._feedback

    def get(self, record_id: str) -> Optional[AnalyticsRecord]:
        return self._by_id.get(record_id)

    def record(
        self,
        query_text: str,
        *,
        user_id: Optional[str] = None,
        entities: Sequence[ExtractedEntity] = (),
        structured_query: Optional[StructuredQuery] = None,
        intent_match: Optional[IntentMatch] = None,
        response_time_ms: float = 0.0,
        success: bool,
        failure_kind: Optional[str] = None,
        row_count: Optional[int] = None,
    ) -> AnalyticsRecord:
        entry = AnalyticsRecord(
            record_id=uuid.uuid4().hex,
            query_text=query_text,
            user_id=user_id,
            entities=tuple(entities),
            structured_query=structured_query,
            intent_match=intent_match,
            response_time_ms=response_time_ms,
            success=success,
            failure_kind=failure_kind,
            pattern_id_used=structured_query.pattern_id if structured_query else None,
            decomposition_method=structured_query.method if structured_query else None,
            row_count=row_count,
            created_at=self.clock(),
        )
        with self._lock:
            self._records = self._records + (entry,)
            self._by_id[entry.record_id] = entry

        LOGGER.debug(
            "Recorded query success=%s failure_kind=%s method=%s %.1fms",
            success,
            failure_kind,
            entry.decomposition_method,
            response_time_ms,
        )
        for sink in self.sinks:
            sink.write(entry)
        return entry

    # -- feedback -----------------------------------------------------------

    def record_feedback(
        self,
        record_id: str,
        *,
        rating: Optional[int] = None,
        helpful: Optional[bool] = None,
        correction: Optional[str] = None,
    ) -> FeedbackRecord:
        """Store a user's explicit judgement of one answered query.

        Raises:
            LookupError: ``record_id`` is not a recorded query
            ValueError: no rating or helpful flag, or a rating outside 1-5
        """
        if rating is None and helpful is None:
            raise ValueError("Feedback needs a rating or a helpful flag")
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError("Rating must be between 1 and 5")
        if rating is not None:
            signal = "rating"
        else:
            signal = "thumbs_up" if helpful else "thumbs_down"
        return self._append_feedback(
            record_id, "explicit", signal, rating=rating, helpful=helpful, correction=correction
        )

    def record_implicit_feedback(
        self, record_id: str, signal: str, *, correction: Optional[str] = None
    ) -> FeedbackRecord:
        """Store feedback inferred from behaviour (see ``IMPLICIT_SIGNALS``).

        Raises:
            LookupError: ``record_id`` is not a recorded query
            ValueError: unknown ``signal``
        """
        if signal not in IMPLICIT_SIGNALS:
            raise ValueError(
                f"Unknown feedback signal {signal!r}; expected one of {', '.join(IMPLICIT_SIGNALS)}"
            )
        rating, helpful = IMPLICIT_SIGNALS[signal]
        return self._append_feedback(
            record_id, "implicit", signal, rating=rating, helpful=helpful, correction=correction
        )

    def _append_feedback(
        self,
        record_id: str,
        kind: str,
        signal: str,
        *,
        rating: Optional[int],
        helpful: Optional[bool],
        correction: Optional[str],
    ) -> FeedbackRecord:
        record = self._by_id.get(record_id)
        if record is None:
            raise LookupError(f"Unknown query record {record_id}")
        entry = FeedbackRecord(
            feedback_id=uuid.uuid4().hex,
            record_id=record_id,
            kind=kind,  # type: ignore[arg-type]
            signal=signal,
            rating=rating,
            helpful=helpful,
            correction=correction or None,
            pattern_id=record.pattern_id_used,
            user_id=record.user_id,
            created_at=self.clock(),
        )
        with self._lock:
            self._feedback = self._feedback + (entry,)

        LOGGER.info(
            "Recorded %s feedback %s for query %s (positive=%s)",
            kind,
            signal,
            record_id,
            entry.positive,
        )
        for sink in self.sinks:
            sink.write_feedback(entry)
        return entry

    def _negatively_judged(self) -> set[str]:
        return {entry.record_id for entry in self._feedback if entry.positive is False}

    # -- reporting ----------------------------------------------------------

    def stats(
        self, user_id: Optional[str] = None, since: Optional[datetime] = None
    ) -> AnalyticsSummary:
        """Summarise recorded queries, optionally for one user and from ``since`` on."""
        records = [
            r
            for r in self._records
            if (user_id is None or r.user_id == user_id)
            and (since is None or (r.created_at is not None and r.created_at >= since))
        ]
        if not records:
            return AnalyticsSummary()
        ids = {r.record_id for r in records}
        feedback = [entry for entry in self._feedback if entry.record_id in ids]

        failures = Counter(r.failure_kind for r in records if r.failure_kind)
        methods = Counter(r.decomposition_method for r in records if r.decomposition_method)
        intents = Counter(r.intent_match.label for r in records if r.intent_match)
        queries = Counter(" ".join(r.query_text.lower().split()) for r in records)
        return AnalyticsSummary(
            total=len(records),
            successes=sum(1 for r in records if r.success),
            mean_response_time_ms=sum(r.response_time_ms for r in records) / len(records),
            failures_by_kind=dict(failures),
            by_decomposition_method=dict(methods),
            by_intent=dict(intents),
            top_queries=tuple(queries.most_common(TOP_QUERIES)),
            feedback_count=len(feedback),
            negative_feedback=sum(1 for entry in feedback if entry.positive is False),
        )

    def pattern_metrics(self) -> dict[str, PatternStats]:
        """Uses and successes per pattern id.

        A use only counts as a success when the query ran and no user judged
        the answer negatively.
        """
        judged_bad = self._negatively_judged()
        uses: Counter[str] = Counter()
        successes: Counter[str] = Counter()
        negative: Counter[str] = Counter()
        for record in self._records:
            if record.pattern_id_used is None:
                continue
            uses[record.pattern_id_used] += 1
            if record.record_id in judged_bad:
                negative[record.pattern_id_used] += 1
            elif record.success:
                successes[record.pattern_id_used] += 1
        return {
            pattern_id: PatternStats(
                uses=count,
                successes=successes[pattern_id],
                negative_feedback=negative[pattern_id],
            )
            for pattern_id, count in uses.items()
        }

    def identify_problem_patterns(
        self, threshold: float = 0.7, min_uses: int = 5, limit: int = 50
    ) -> list[ProblemPattern]:
        """Patterns used at least ``min_uses`` times whose success rate is below ``threshold``.

        Worst first.
        """
        problems = [
            ProblemPattern(
                pattern_id=pattern_id,
                uses=stat.uses,
                success_rate=stat.success_rate,
                negative_feedback=stat.negative_feedback,
            )
            for pattern_id, stat in self.pattern_metrics().items()
            if stat.uses >= min_uses and stat.success_rate < threshold
        ]
        problems.sort(key=lambda problem: (problem.success_rate, -problem.uses))
        if problems:
            LOGGER.info("%d patterns below %.0f%% success", len(problems), threshold * 100)
        return problems[:limit]


__all__ = [
    "IMPLICIT_SIGNALS",
    "AnalyticsSink",
    "AnalyticsSummary",
    "ProblemPattern",
    "QueryAnalytics",
]
