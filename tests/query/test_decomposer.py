from decimal import Decimal

import pytest

from cardquery.query.decomposer import QueryDecomposer
from cardquery.query.errors import ExtractionAmbiguity, InvalidQueryShape
from cardquery.query.types import (
    Aggregation,
    ExtractedEntity,
    FilterClause,
    IntentMatch,
    PatternMatch,
    QueryPattern,
    SortClause,
    StructuredQuery,
)


def _intent(label="filter"):
    return IntentMatch(label=label, confidence=0.9, method="vector", tier="high")


class RecordingLearner:
    def __init__(self):
        self.failures = []

    def record_failure(self, pattern_id):
        self.failures.append(pattern_id)


@pytest.fixture()
def decomposer():
    return QueryDecomposer()


def test_filters_become_clauses(decomposer):
    entities = [
        ExtractedEntity(kind="filter", attribute="current_balance", operator="gt", value=Decimal("5000")),
        ExtractedEntity(kind="filter", attribute="apr", operator="lt", value=Decimal("20")),
    ]

    query = decomposer.decompose("cards with balance over 5000 and APR under 20%", entities, _intent())

    assert query.filters == (
        FilterClause("current_balance", "gt", Decimal("5000")),
        FilterClause("apr", "lt", Decimal("20")),
    )
    assert query.method == "decomposer"


def test_modifier_sets_sort_and_limit(decomposer):
    entities = [ExtractedEntity(kind="modifier", attribute="current_balance", modifier="highest", value=3)]

    query = decomposer.decompose("my 3 highest balance cards", entities, _intent("rank"))

    assert query.sort == SortClause("current_balance", "desc")
    assert query.limit == 3


def test_modifier_without_count_limits_to_one(decomposer):
    entities = [ExtractedEntity(kind="modifier", attribute="apr", modifier="lowest")]

    query = decomposer.decompose("lowest apr", entities, _intent("rank"))

    assert (query.sort, query.limit) == (SortClause("apr", "asc"), 1)


def test_limit_without_sort_is_rejected(decomposer):
    entities = [ExtractedEntity(kind="modifier", modifier="highest", value=2)]

    with pytest.raises(InvalidQueryShape):
        decomposer.decompose("the 2 best ones", entities, _intent("rank"))


def test_category_hint_gives_reward_sort(decomposer):
    entities = [ExtractedEntity(kind="modifier", modifier="highest", category="travel")]

    query = decomposer.decompose("best for travel", entities, _intent("rank"))

    assert query.sort == SortClause("rewards.travel", "desc")


def test_sum_defaults_to_balance(decomposer):
    entities = [ExtractedEntity(kind="aggregation", aggregation="sum")]

    query = decomposer.decompose("how much do I owe in total", entities, _intent("aggregate"))

    assert query.aggregation == Aggregation("sum", "current_balance")


def test_average_without_field_needs_clarification(decomposer):
    entities = [ExtractedEntity(kind="aggregation", aggregation="avg")]

    with pytest.raises(ExtractionAmbiguity):
        decomposer.decompose("what is the average", entities, _intent("aggregate"))


def test_filter_on_aggregated_field_is_dropped(decomposer, caplog):
    entities = [
        ExtractedEntity(kind="aggregation", attribute="current_balance", aggregation="sum"),
        ExtractedEntity(kind="filter", attribute="current_balance", operator="gt", value=Decimal("100")),
        ExtractedEntity(kind="filter", attribute="issuer", operator="eq", value="Chase"),
    ]

    query = decomposer.decompose("total balance over 100 on chase", entities, _intent("aggregate"))

    assert query.filters == (FilterClause("issuer", "eq", "Chase"),)
    assert "also being aggregated" in caplog.text


def test_group_without_aggregation_counts(decomposer):
    entities = [ExtractedEntity(kind="group", attribute="issuer")]

    query = decomposer.decompose("cards per issuer", entities, _intent("distinct"))

    assert query.group_by == "issuer"
    assert query.aggregation == Aggregation("count")


def test_distinct_intent_groups_on_mentioned_field(decomposer):
    entities = [ExtractedEntity(kind="mention", attribute="card_network")]

    query = decomposer.decompose("what networks are my cards on", entities, _intent("distinct"))

    assert query.group_by == "card_network"
    assert query.select == ()


def test_compare_sorts_by_mentioned_field(decomposer):
    entities = [ExtractedEntity(kind="mention", attribute="annual_fee")]

    query = decomposer.decompose("compare annual fees", entities, _intent("compare"))

    assert query.sort == SortClause("annual_fee", "asc")
    assert query.limit is None


def test_mentions_become_select(decomposer):
    entities = [
        ExtractedEntity(kind="mention", attribute="credit_limit"),
        ExtractedEntity(kind="mention", attribute="apr"),
    ]

    query = decomposer.decompose("credit limits and aprs", entities, _intent())

    assert query.select == ("credit_limit", "apr")


def test_listing_request_is_unfiltered(decomposer):
    query = decomposer.decompose("show me my cards", [], _intent())

    assert query == StructuredQuery()


def test_nothing_usable_raises(decomposer):
    with pytest.raises(ExtractionAmbiguity) as excinfo:
        decomposer.decompose("tell me something", [], _intent())

    assert excinfo.value.failure_kind == "extraction_ambiguity"


def _learned(query):
    pattern = QueryPattern(pattern_id="p1", trigger_signature="sig", template=query, confidence=0.9)
    return PatternMatch(pattern=pattern, query=query)


def test_valid_learned_pattern_is_reused():
    learner = RecordingLearner()
    decomposer = QueryDecomposer(learner)
    learned = StructuredQuery(filters=(FilterClause("apr", "gt", Decimal("20")),))

    query = decomposer.decompose("apr over 20", [], _intent(), learned=_learned(learned))

    assert query == learned
    assert (query.method, query.pattern_id) == ("pattern", "p1")
    assert learner.failures == []


def test_invalid_learned_pattern_falls_back_silently():
    learner = RecordingLearner()
    decomposer = QueryDecomposer(learner)
    broken = StructuredQuery(filters=(FilterClause("apr", "gt", Decimal("500")),))
    entities = [ExtractedEntity(kind="filter", attribute="apr", operator="gt", value=Decimal("20"))]

    query = decomposer.decompose("apr over 20", entities, _intent(), learned=_learned(broken))

    assert learner.failures == ["p1"]
    assert query.filters == (FilterClause("apr", "gt", Decimal("20")),)
    assert query.method == "decomposer"
