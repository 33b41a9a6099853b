"""Persistence for analytics records and user feedback."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from cardquery.core.log import get_logger
from cardquery.db import session_scope
from cardquery.models import QueryFeedback, QueryLog
from cardquery.query.analytics import AnalyticsSink
from cardquery.query.types import AnalyticsRecord, FeedbackRecord

from .base import BaseRepository

LOGGER = get_logger(__name__)


def to_row(record: AnalyticsRecord) -> QueryLog:
    intent = record.intent_match
    return QueryLog(
        record_id=record.record_id,
        query_text=record.query_text,
        user_id=record.user_id,
        entities=[entity.as_dict() for entity in record.entities],
        structured_query=record.structured_query.as_dict() if record.structured_query else None,
        intent_label=intent.label if intent else None,
        intent_confidence=intent.confidence if intent else None,
        intent_method=intent.method if intent else None,
        response_time_ms=record.response_time_ms,
        success=record.success,
        failure_kind=record.failure_kind,
        pattern_id_used=record.pattern_id_used,
        decomposition_method=record.decomposition_method,
        row_count=record.row_count,
        created_at=record.created_at or datetime.now(timezone.utc),
    )


def feedback_to_row(feedback: FeedbackRecord) -> QueryFeedback:
    return QueryFeedback(
        feedback_id=feedback.feedback_id,
        record_id=feedback.record_id,
        kind=feedback.kind,
        signal=feedback.signal,
        rating=feedback.rating,
        helpful=feedback.helpful,
        correction=feedback.correction,
        pattern_id=feedback.pattern_id,
        user_id=feedback.user_id,
        created_at=feedback.created_at or datetime.now(timezone.utc),
    )


class AnalyticsRepository(BaseRepository):
    """Read and write ``query_log`` and ``query_feedback`` rows."""

    def add(self, record: AnalyticsRecord) -> QueryLog:
        row = to_row(record)
        self._session.add(row)
        self._session.flush()
        return row

    def add_feedback(self, feedback: FeedbackRecord) -> QueryFeedback:
        row = feedback_to_row(feedback)
        self._session.add(row)
        self._session.flush()
        return row

    def feedback_for(self, record_id: str) -> list[QueryFeedback]:
        statement = (
            select(QueryFeedback)
            .where(QueryFeedback.record_id == record_id)
            .order_by(QueryFeedback.id)
        )
        return list(self._session.scalars(statement))

    def recent(self, limit: int = 50, user_id: Optional[str] = None) -> list[QueryLog]:
        statement = select(QueryLog).order_by(QueryLog.id.desc()).limit(limit)
        if user_id is not None:
            statement = statement.where(QueryLog.user_id == user_id)
        return list(self._session.scalars(statement))

    def failure_counts(self) -> dict[str, int]:
        statement = (
            select(QueryLog.failure_kind, func.count())
            .where(QueryLog.failure_kind.is_not(None))
            .group_by(QueryLog.failure_kind)
        )
        return {kind: int(count) for kind, count in self._session.execute(statement)}

    def summary(self) -> dict[str, Any]:
        total, successes, mean_ms = self._session.execute(
            select(
                func.count(QueryLog.id),
                func.coalesce(func.sum(case((QueryLog.success.is_(True), 1), else_=0)), 0),
                func.avg(QueryLog.response_time_ms),
            )
        ).one()
        return {
            "total": int(total),
            "successes": int(successes),
            "mean_response_time_ms": float(mean_ms or 0.0),
            "failures_by_kind": self.failure_counts(),
        }


class SqlAnalyticsSink(AnalyticsSink):
    """Write analytics records and feedback, one transaction per write.

    Storage errors are logged and dropped; analytics never fails a query.
    """

    def __init__(self, factory: sessionmaker) -> None:
        self._factory = factory

    def write(self, record: AnalyticsRecord) -> None:
        try:
            with session_scope(self._factory) as session:
                AnalyticsRepository(session).add(record)
        except SQLAlchemyError:
            LOGGER.exception("Failed to persist analytics record %s", record.record_id)

    def write_feedback(self, feedback: FeedbackRecord) -> None:
        try:
            with session_scope(self._factory) as session:
                AnalyticsRepository(session).add_feedback(feedback)
        except SQLAlchemyError:
            LOGGER.exception("Failed to persist feedback %s", feedback.feedback_id)
