import asyncio
from decimal import Decimal

import pytest

from cardquery.core.config import PipelineOptions
from cardquery.query.analytics import QueryAnalytics
from cardquery.query.decomposer import QueryDecomposer
from cardquery.query.embeddings import EmbeddingProvider, HashingEmbeddingProvider, InMemoryVectorStore
from cardquery.query.entity_extractor import EntityExtractor
from cardquery.query.errors import ExecutionError, ExternalServiceFailure
from cardquery.query.executor import QueryExecutor
from cardquery.query.intent_classifier import IntentClassifier
from cardquery.query.pattern_learner import PatternLearner
from cardquery.query.pipeline import CONVERSATIONAL_REPLY, QueryPipeline

EXAMPLES = {
    "conversational": ["hello there"],
    "filter": [
        "cards with balance over 5000 and APR under 20%",
        "cards with balance over 3000 and APR under 19%",
        "cards with balance over 9000",
        "cards with balance over 5000 and credit limit over 5000",
        "cards with balance over 3000 and credit limit over 15000",
        "tell me something",
    ],
    "aggregate": ["total balance across all cards"],
    "rank": ["show me my 3 highest balance cards"],
}


class DownEmbedder(EmbeddingProvider):
    async def embed(self, text):
        raise ExternalServiceFailure("embeddings", "down")


class BrokenExecutor(QueryExecutor):
    def execute(self, query, records, as_of=None):
        raise ExecutionError("record snapshot was unreadable")


def _pipeline(options, as_of, executor=None, **option_overrides):
    if option_overrides:
        options = PipelineOptions(**option_overrides)
    classifier = IntentClassifier(
        embedder=HashingEmbeddingProvider(),
        store=InMemoryVectorStore(),
        options=options,
    )
    asyncio.run(classifier.seed(EXAMPLES))
    learner = PatternLearner(options)
    return QueryPipeline(
        extractor=EntityExtractor(),
        classifier=classifier,
        decomposer=QueryDecomposer(learner),
        executor=executor or QueryExecutor(options, clock=lambda: as_of),
        learner=learner,
        analytics=QueryAnalytics(),
        options=options,
    )


@pytest.fixture()
def pipeline(options, as_of):
    return _pipeline(options, as_of)


def test_greeting_is_answered_without_execution(pipeline, cards):
    response = asyncio.run(pipeline.process_query("hello there", cards, user_id="u1"))

    assert response.intent_match.label == "conversational"
    assert response.message == CONVERSATIONAL_REPLY
    assert response.execution_result is None
    assert not response.answered
    record = pipeline.analytics.records[-1]
    assert (record.success, record.failure_kind, record.user_id) == (False, "conversational", "u1")


def test_compound_filter_end_to_end(pipeline, cards):
    response = asyncio.run(
        pipeline.process_query("cards with balance over 5000 and APR under 20%", cards)
    )

    assert response.intent_match.label == "filter"
    assert [row["card_id"] for row in response.execution_result.rows] == ["1"]
    assert response.structured_query.method == "decomposer"
    assert response.message == "Found 1 card."
    assert pipeline.analytics.records[-1].success is True
    assert pipeline.analytics.records[-1].row_count == 1


def test_total_balance(pipeline, cards):
    response = asyncio.run(pipeline.process_query("total balance across all cards", cards))

    assert response.execution_result.rows == ({"sum_current_balance": Decimal("30000")},)
    assert response.message == "The sum of current balance is $30,000.00."


def test_ranking_with_fewer_cards_than_requested(pipeline, cards):
    response = asyncio.run(pipeline.process_query("show me my 3 highest balance cards", cards[:2]))

    result = response.execution_result
    assert [row["current_balance"] for row in result.rows] == [Decimal("6000"), Decimal("4000")]
    assert result.truncated is False
    assert response.message == "Found 2 cards."


def test_second_query_with_same_shape_reuses_learned_pattern(pipeline, cards):
    asyncio.run(pipeline.process_query("cards with balance over 5000 and APR under 20%", cards))
    assert len(pipeline.learner) == 1

    response = asyncio.run(
        pipeline.process_query("cards with balance over 3000 and APR under 19%", cards)
    )

    assert response.structured_query.method == "pattern"
    assert [row["card_id"] for row in response.execution_result.rows] == ["1", "4"]
    pattern = pipeline.learner.get(response.structured_query.pattern_id)
    assert pattern.usage_count == 2
    assert pipeline.analytics.records[-1].pattern_id_used == pattern.pattern_id
    assert pipeline.analytics.stats().by_decomposition_method == {"decomposer": 1, "pattern": 1}


def test_reused_pattern_binds_each_clause_to_its_own_literal(pipeline, options, as_of, cards):
    asyncio.run(
        pipeline.process_query("cards with balance over 5000 and credit limit over 5000", cards)
    )
    question = "cards with balance over 3000 and credit limit over 15000"

    reused = asyncio.run(pipeline.process_query(question, cards))
    fresh = asyncio.run(_pipeline(options, as_of).process_query(question, cards))

    assert reused.structured_query.method == "pattern"
    assert fresh.structured_query.method == "decomposer"
    assert reused.structured_query == fresh.structured_query
    assert reused.execution_result.rows == fresh.execution_result.rows


def test_empty_result_is_not_learned(pipeline, cards):
    response = asyncio.run(pipeline.process_query("cards with balance over 9000", cards))

    assert response.execution_result.row_count == 0
    assert response.message == "No cards match that."
    assert len(pipeline.learner) == 0


def test_learning_can_be_disabled(options, as_of, cards):
    pipeline = _pipeline(options, as_of, enable_pattern_learning=False)

    asyncio.run(pipeline.process_query("cards with balance over 5000 and APR under 20%", cards))

    assert len(pipeline.learner) == 0


def test_unusable_question_asks_for_clarification(pipeline, cards):
    response = asyncio.run(pipeline.process_query("tell me something", cards))

    assert response.failure_kind == "extraction_ambiguity"
    assert response.message
    assert response.execution_result is None
    assert pipeline.analytics.records[-1].failure_kind == "extraction_ambiguity"


def test_execution_errors_are_recorded_and_raised(options, as_of, cards):
    pipeline = _pipeline(options, as_of, executor=BrokenExecutor(options))

    with pytest.raises(ExecutionError):
        asyncio.run(pipeline.process_query("total balance across all cards", cards))

    record = pipeline.analytics.records[-1]
    assert (record.success, record.failure_kind) == (False, "execution_error")
    assert record.structured_query is not None
    assert len(pipeline.learner) == 0


def test_embedding_outage_still_answers_from_entities(options, as_of, cards):
    classifier = IntentClassifier(embedder=DownEmbedder(), store=InMemoryVectorStore(), options=options)
    learner = PatternLearner(options)
    pipeline = QueryPipeline(
        extractor=EntityExtractor(),
        classifier=classifier,
        decomposer=QueryDecomposer(learner),
        executor=QueryExecutor(options, clock=lambda: as_of),
        learner=learner,
        analytics=QueryAnalytics(),
        options=options,
    )

    response = asyncio.run(pipeline.process_query("total balance across all cards", cards))

    assert response.intent_match.method == "pattern"
    assert response.execution_result.rows == ({"sum_current_balance": Decimal("30000")},)
    assert len(pipeline.analytics.records) == 1
    assert not classifier.seeded


def test_feedback_on_a_reused_pattern_adjusts_it(pipeline, cards):
    asyncio.run(pipeline.process_query("cards with balance over 5000 and APR under 20%", cards))
    reused = asyncio.run(
        pipeline.process_query("cards with balance over 3000 and APR under 19%", cards)
    )
    pattern_id = reused.structured_query.pattern_id
    before = pipeline.learner.get(pattern_id)

    feedback = pipeline.record_feedback(reused.record_id, rating=1)

    assert feedback.pattern_id == pattern_id
    after = pipeline.learner.get(pattern_id)
    assert after.confidence == pytest.approx(before.confidence * 0.5)
    assert pipeline.analytics.pattern_metrics()[pattern_id].negative_feedback == 1


def test_implicit_feedback_without_a_pattern_only_records(pipeline, cards):
    response = asyncio.run(pipeline.process_query("total balance across all cards", cards))

    feedback = pipeline.record_feedback(response.record_id, signal="navigation")

    assert (feedback.positive, feedback.pattern_id) == (True, None)
    assert pipeline.analytics.feedback == (feedback,)


def test_feedback_needs_analytics(options, as_of, cards):
    pipeline = _pipeline(options, as_of, enable_analytics=False)
    response = asyncio.run(pipeline.process_query("total balance across all cards", cards))

    assert response.record_id is None
    with pytest.raises(LookupError):
        pipeline.record_feedback("anything", helpful=True)
