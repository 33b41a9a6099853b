"""Persistence for learned query patterns."""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, select

from cardquery.core.log import get_logger
from cardquery.models import LearnedPattern
from cardquery.query.pattern_learner import PatternLearner, template_from_dict, template_to_dict
from cardquery.query.types import QueryPattern

from .base import BaseRepository

LOGGER = get_logger(__name__)


class PatternRepository(BaseRepository):
    """Save and restore ``PatternLearner`` snapshots in ``learned_pattern``."""

    def save_snapshot(self, patterns: Iterable[QueryPattern]) -> int:
        """Replace the stored patterns with ``patterns``."""

        self._session.execute(delete(LearnedPattern))
        count = 0
        for pattern in patterns:
            self._session.add(
                LearnedPattern(
                    pattern_id=pattern.pattern_id,
                    trigger_signature=pattern.trigger_signature,
                    near_signature=pattern.near_signature,
                    template=template_to_dict(pattern.template),
                    confidence=pattern.confidence,
                    usage_count=pattern.usage_count,
                    failure_count=pattern.failure_count,
                    intent_label=pattern.intent_label,
                    last_used_at=pattern.last_used_at,
                    created_at=pattern.created_at,
                )
            )
            count += 1
        self._session.flush()
        LOGGER.info("Saved %d learned patterns", count)
        return count

    def load_snapshot(self) -> list[QueryPattern]:
        rows = self._session.scalars(select(LearnedPattern).order_by(LearnedPattern.created_at))
        return [
            QueryPattern(
                pattern_id=row.pattern_id,
                trigger_signature=row.trigger_signature,
                near_signature=row.near_signature,
                template=template_from_dict(row.template),
                confidence=row.confidence,
                usage_count=row.usage_count,
                failure_count=row.failure_count,
                intent_label=row.intent_label,
                last_used_at=self._coerce_datetime(row.last_used_at),
                created_at=self._coerce_datetime(row.created_at),
            )
            for row in rows
        ]

    def save_learner(self, learner: PatternLearner) -> int:
        return self.save_snapshot(learner.snapshot())

    def restore_learner(self, learner: PatternLearner) -> int:
        return learner.load(self.load_snapshot())
