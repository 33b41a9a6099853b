"""
Query pipeline orchestration.

Main entry point: ``QueryPipeline.process_query`` runs extraction, intent
classification, pattern lookup, decomposition and execution for one
question, then records analytics and learns from the outcome.
"""
from __future__ import annotations

import time
import uuid
from datetime import date
from typing import Iterable, Optional

from cardquery.core.config import PipelineOptions, Settings, get_settings
from cardquery.core.formatting import humanize_currency, humanize_number
from cardquery.core.log import get_logger, log_context
from cardquery.schemas.cards import CardRecord

from . import vocabulary as vocab
from .analytics import AnalyticsSink, QueryAnalytics
from .decomposer import QueryDecomposer
from .embeddings import InMemoryVectorStore, build_embedding_provider
from .entity_extractor import EntityExtractor
from .errors import ExecutionError, ExtractionAmbiguity, InvalidQueryShape
from .executor import QueryExecutor
from .intent_classifier import FallbackClassifier, IntentClassifier, LLMFallbackClassifier
from .llm_providers import LLMProviderFactory
from .pattern_learner import PatternLearner
from .types import (
    ExecutionResult,
    ExtractedEntity,
    FeedbackRecord,
    IntentMatch,
    QueryResponse,
    StructuredQuery,
)

LOGGER = get_logger(__name__)

CONVERSATIONAL_REPLY = (
    "I can answer questions about your credit cards, for example "
    "\"which cards have an APR over 20%?\" or \"what is my total balance?\""
)


def summarize(query: StructuredQuery, result: ExecutionResult) -> str:
    """One-line human summary of an execution result."""
    if query.aggregation is not None and query.group_by is None and result.rows:
        column = query.aggregation.column
        value = result.rows[0].get(column)
        if value is None:
            return "No matching cards to calculate that over."
        attribute = query.aggregation.attribute
        if query.aggregation.op == "count":
            return f"{humanize_number(value)} matching card{'s' if value != 1 else ''}."
        label = f"{query.aggregation.op} of {attribute.replace('_', ' ')}" if attribute else column
        rendered = humanize_currency(value) if vocab.field_kind(attribute) == "money" else humanize_number(value)
        return f"The {label} is {rendered}."
    if query.group_by is not None:
        return f"{result.row_count} group{'s' if result.row_count != 1 else ''} found."
    if not result.row_count:
        return "No cards match that."
    suffix = " (showing the top results)" if result.truncated else ""
    return f"Found {result.row_count} card{'s' if result.row_count != 1 else ''}{suffix}."


class QueryPipeline:
    """Answer natural-language questions over a snapshot of card records."""

    def __init__(
        self,
        extractor: EntityExtractor,
        classifier: IntentClassifier,
        decomposer: QueryDecomposer,
        executor: QueryExecutor,
        learner: Optional[PatternLearner] = None,
        analytics: Optional[QueryAnalytics] = None,
        options: Optional[PipelineOptions] = None,
    ):
        self.extractor = extractor
        self.classifier = classifier
        self.decomposer = decomposer
        self.executor = executor
        self.learner = learner
        self.analytics = analytics
        self.options = options or PipelineOptions()

    async def process_query(
        self,
        utterance: str,
        records: Iterable[CardRecord],
        user_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> QueryResponse:
        """
        Process one question end-to-end.

        Args:
            utterance: The user's question
            records: Read-only snapshot of the user's cards
            user_id: Optional identifier carried into logs and analytics
            as_of: Reference date for due-date calculations (defaults to today)

        Returns:
            ``QueryResponse``; clarification and invalid-shape outcomes carry
            a user-facing ``message`` instead of a result.

        Raises:
            ExecutionError: when a validated plan still fails to execute
        """
        with log_context.scope(user_id=user_id or "-", query_id=uuid.uuid4().hex[:8]):
            started = time.perf_counter()

            entities = tuple(self.extractor.extract(utterance))
            intent = await self.classifier.classify(utterance, entities)
            LOGGER.info(
                "Intent %s (%.2f via %s), %d entities",
                intent.label,
                intent.confidence,
                intent.method,
                len(entities),
            )

            if intent.label == "conversational" and not entities:
                logged = self._record(
                    utterance, user_id, started, entities, intent, None,
                    success=False, failure_kind="conversational",
                )
                return QueryResponse(
                    intent_match=intent,
                    message=CONVERSATIONAL_REPLY,
                    failure_kind="conversational",
                    record_id=logged,
                )

            learned = None
            if self.learner is not None and self.options.enable_pattern_learning:
                learned = self.learner.find_matching_pattern(entities, intent)

            try:
                query = self.decomposer.decompose(utterance, entities, intent, learned)
            except (ExtractionAmbiguity, InvalidQueryShape) as exc:
                LOGGER.info("Could not decompose %r: %s", utterance, exc)
                logged = self._record(
                    utterance, user_id, started, entities, intent, None,
                    success=False, failure_kind=exc.failure_kind,
                )
                return QueryResponse(
                    intent_match=intent,
                    entities=entities,
                    message=exc.user_message,
                    failure_kind=exc.failure_kind,
                    record_id=logged,
                )

            try:
                result = self.executor.execute(query, records, as_of=as_of)
            except ExecutionError as exc:
                LOGGER.error("Execution failed for %r: %s", utterance, exc)
                self._record(
                    utterance, user_id, started, entities, intent, query,
                    success=False, failure_kind=exc.failure_kind,
                )
                raise

            logged = self._record(
                utterance, user_id, started, entities, intent, query,
                success=True, row_count=result.row_count,
            )
            self._learn(query, entities, intent, result)

            return QueryResponse(
                intent_match=intent,
                entities=entities,
                structured_query=query,
                execution_result=result,
                message=summarize(query, result),
                record_id=logged,
            )

    def record_feedback(
        self,
        record_id: str,
        *,
        rating: Optional[int] = None,
        helpful: Optional[bool] = None,
        signal: Optional[str] = None,
        correction: Optional[str] = None,
    ) -> FeedbackRecord:
        """
        Record a user's judgement of an earlier answer and feed it back to
        the pattern that produced it.

        Pass ``signal`` for implicit feedback (abandonment, correction,
        reformulation, navigation, timeout), otherwise a ``rating`` (1-5)
        or ``helpful`` flag.

        Raises:
            LookupError: analytics are disabled or ``record_id`` is unknown
            ValueError: the feedback itself is invalid
        """
        if self.analytics is None or not self.options.enable_analytics:
            raise LookupError("Analytics are disabled; feedback cannot be matched to a query")

        if signal is not None:
            feedback = self.analytics.record_implicit_feedback(record_id, signal, correction=correction)
        else:
            feedback = self.analytics.record_feedback(
                record_id, rating=rating, helpful=helpful, correction=correction
            )

        if (
            feedback.pattern_id is not None
            and self.learner is not None
            and self.options.enable_pattern_learning
            and self.options.apply_feedback
        ):
            self.learner.apply_feedback(feedback.pattern_id, feedback.positive)
        return feedback

    def _learn(
        self,
        query: StructuredQuery,
        entities: tuple[ExtractedEntity, ...],
        intent: IntentMatch,
        result: ExecutionResult,
    ) -> None:
        if self.learner is None or not self.options.enable_pattern_learning:
            return
        # Only a result that actually answered something counts as a success.
        if result.row_count == 0 and not query.is_aggregate:
            return
        self.learner.learn_from_success(query, entities, intent, pattern_id=query.pattern_id)

    def _record(
        self,
        utterance: str,
        user_id: Optional[str],
        started: float,
        entities: tuple[ExtractedEntity, ...],
        intent: IntentMatch,
        query: Optional[StructuredQuery],
        *,
        success: bool,
        failure_kind: Optional[str] = None,
        row_count: Optional[int] = None,
    ) -> Optional[str]:
        if self.analytics is None or not self.options.enable_analytics:
            return None
        entry = self.analytics.record(
            utterance,
            user_id=user_id,
            entities=entities,
            structured_query=query,
            intent_match=intent,
            response_time_ms=(time.perf_counter() - started) * 1000.0,
            success=success,
            failure_kind=failure_kind,
            row_count=row_count,
        )
        return entry.record_id


def build_fallback(provider_name: str) -> Optional[FallbackClassifier]:
    """Language-model fallback for low-confidence intents, if a key is configured."""
    try:
        provider = LLMProviderFactory.create(provider_name)
    except ValueError as exc:
        LOGGER.warning("Language-model fallback disabled: %s", exc)
        return None
    return LLMFallbackClassifier(provider)


def build_pipeline(
    options: Optional[PipelineOptions] = None,
    *,
    settings: Optional[Settings] = None,
    fallback: Optional[FallbackClassifier] = None,
    sinks: Iterable[AnalyticsSink] = (),
    use_language_model: bool = True,
) -> QueryPipeline:
    """Wire the default components."""
    settings = settings or get_settings()
    options = options or settings.pipeline

    if fallback is None and use_language_model:
        fallback = build_fallback(settings.llm_provider)

    learner = PatternLearner(options)
    classifier = IntentClassifier(
        embedder=build_embedding_provider(settings.embedding_backend),
        store=InMemoryVectorStore(),
        fallback=fallback,
        options=options,
    )
    return QueryPipeline(
        extractor=EntityExtractor(association_window=options.association_window),
        classifier=classifier,
        decomposer=QueryDecomposer(learner),
        executor=QueryExecutor(options),
        learner=learner,
        analytics=QueryAnalytics(sinks) if options.enable_analytics else None,
        options=options,
    )


__all__ = ["CONVERSATIONAL_REPLY", "QueryPipeline", "build_fallback", "build_pipeline", "summarize"]
