"""
Query decomposition.

Builds a ``StructuredQuery`` from extracted entities and the classified
intent. A learned pattern, when one matched, is tried first; if it fails
validation the learner is told and the full decomposition runs instead.
"""
from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Optional, Sequence

from cardquery.core.log import get_logger

from . import vocabulary as vocab
from .errors import ExtractionAmbiguity, InvalidQueryShape
from .types import (
    Aggregation,
    ExtractedEntity,
    FilterClause,
    IntentMatch,
    PatternMatch,
    SortClause,
    StructuredQuery,
)
from .validation import validate_structured_query

if TYPE_CHECKING:
    from .pattern_learner import PatternLearner

LOGGER = get_logger(__name__)

_DEFAULT_SUM_FIELD = "current_balance"
_GROUPABLE = frozenset({"issuer", "card_network", "card_type"})


def is_listing_request(utterance: str) -> bool:
    """True for requests such as "show my cards" or "list all cards"."""
    return bool(vocab.find_spans(utterance or "", vocab.LISTING_PHRASES, label="listing"))


class QueryDecomposer:
    """Turn entities plus an intent into a validated plan."""

    def __init__(self, learner: Optional["PatternLearner"] = None):
        self.learner = learner

    def decompose(
        self,
        utterance: str,
        entities: Sequence[ExtractedEntity],
        intent: IntentMatch,
        learned: Optional[PatternMatch] = None,
    ) -> StructuredQuery:
        if learned is not None:
            reused = self._try_learned(learned)
            if reused is not None:
                return reused

        query = self._build(utterance, list(entities), intent)
        return validate_structured_query(query)

    def _try_learned(self, learned: PatternMatch) -> Optional[StructuredQuery]:
        pattern_id = learned.pattern.pattern_id
        try:
            validate_structured_query(learned.query)
        except InvalidQueryShape as exc:
            LOGGER.info("Learned pattern %s rejected: %s", pattern_id, exc)
            if self.learner is not None:
                self.learner.record_failure(pattern_id)
            return None
        LOGGER.debug("Reusing learned pattern %s", pattern_id)
        return replace(learned.query, method="pattern", pattern_id=pattern_id)

    def _build(
        self, utterance: str, entities: list[ExtractedEntity], intent: IntentMatch
    ) -> StructuredQuery:
        filters = [
            FilterClause(entity.attribute, entity.operator, entity.value)
            for entity in entities
            if entity.kind == "filter" and entity.attribute and entity.operator
        ]
        aggregations = [entity for entity in entities if entity.kind == "aggregation"]
        groups = [entity for entity in entities if entity.kind == "group" and entity.attribute]
        modifiers = [entity for entity in entities if entity.kind == "modifier"]
        mentions = [entity for entity in entities if entity.kind == "mention" and entity.attribute]

        aggregation = self._aggregation(aggregations)
        if aggregation is not None and aggregation.attribute is not None:
            kept = [clause for clause in filters if clause.attribute != aggregation.attribute]
            if len(kept) != len(filters):
                LOGGER.warning(
                    "Dropping filter on %s because it is also being aggregated",
                    aggregation.attribute,
                )
            filters = kept

        group_by = groups[0].attribute if groups else None
        if group_by is None and intent.label == "distinct":
            group_by = next((m.attribute for m in mentions if m.attribute in _GROUPABLE), None)
        if group_by is not None and aggregation is None:
            aggregation = Aggregation(op="count")

        sort: Optional[SortClause] = None
        limit = None
        if modifiers:
            sort, limit = self._ranking(modifiers[0], mentions, aggregation, group_by)

        if sort is None:
            ordered = next((m for m in mentions if m.modifier != "none"), None)
            if ordered is not None:
                sort = SortClause(ordered.attribute, "desc" if ordered.modifier == "highest" else "asc")
            elif aggregation is None and intent.label in ("rank", "compare"):
                numeric = next((m for m in mentions if vocab.is_numeric_field(m.attribute)), None)
                if numeric is not None:
                    sort = SortClause(numeric.attribute, "desc" if intent.label == "rank" else "asc")

        select: tuple[str, ...] = ()
        if aggregation is None:
            sorted_on = sort.attribute if sort else None
            select = tuple(
                dict.fromkeys(m.attribute for m in mentions if m.attribute != sorted_on)
            )

        query = StructuredQuery(
            filters=tuple(filters),
            aggregation=aggregation,
            group_by=group_by,
            sort=sort,
            limit=limit,
            select=select,
        )

        if query == StructuredQuery() and not self._is_listing(utterance, entities, intent):
            raise ExtractionAmbiguity(
                f"Nothing usable extracted from {utterance!r}",
                user_message=(
                    "I'm not sure what you'd like to know about your cards. "
                    "Try asking about a balance, APR, credit limit or due date."
                ),
            )
        LOGGER.debug("Decomposed %r into %s", utterance, query.as_dict())
        return query

    @staticmethod
    def _aggregation(aggregations: list[ExtractedEntity]) -> Optional[Aggregation]:
        if not aggregations:
            return None
        entity = next((a for a in aggregations if a.attribute is not None), aggregations[0])
        attribute = entity.attribute
        if entity.aggregation == "count":
            return Aggregation(op="count", attribute=None)
        if attribute is None:
            if entity.aggregation != "sum":
                raise ExtractionAmbiguity(
                    f"Aggregation {entity.aggregation} without a field",
                    user_message="Which value should I calculate that for, e.g. balance or APR?",
                )
            attribute = _DEFAULT_SUM_FIELD
        return Aggregation(op=entity.aggregation, attribute=attribute)

    @staticmethod
    def _ranking(
        modifier: ExtractedEntity,
        mentions: list[ExtractedEntity],
        aggregation: Optional[Aggregation],
        group_by: Optional[str],
    ) -> tuple[Optional[SortClause], Optional[int]]:
        direction = "desc" if modifier.modifier == "highest" else "asc"
        limit = modifier.value if isinstance(modifier.value, int) and modifier.value > 0 else 1

        if aggregation is not None:
            if group_by is None:
                return None, None
            return SortClause(aggregation.column, direction), limit

        attribute = modifier.attribute
        if attribute is None and modifier.category:
            attribute = vocab.reward_field(modifier.category)
        if attribute is None:
            numeric = next((m for m in mentions if vocab.is_numeric_field(m.attribute)), None)
            attribute = numeric.attribute if numeric else None
        if attribute is None:
            # Left without a sort so validation rejects the bare limit.
            return None, limit
        return SortClause(attribute, direction), limit

    @staticmethod
    def _is_listing(utterance: str, entities: Sequence[ExtractedEntity], intent: IntentMatch) -> bool:
        if entities:
            return False
        return intent.label != "conversational" and is_listing_request(utterance)


__all__ = ["QueryDecomposer", "is_listing_request"]
