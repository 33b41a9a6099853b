from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cardquery.query.analytics import QueryAnalytics
from cardquery.query.pattern_learner import (
    PatternLearner,
    bind_template,
    make_template,
    signatures,
    template_from_dict,
    template_to_dict,
)
from cardquery.query.types import (
    Aggregation,
    ExtractedEntity,
    FilterClause,
    IntentMatch,
    QueryPattern,
    Slot,
    SortClause,
    StructuredQuery,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
FILTER = IntentMatch(label="filter", confidence=0.9, method="vector", tier="high")


def balance_over(amount: str) -> ExtractedEntity:
    return ExtractedEntity(kind="filter", attribute="current_balance", operator="gt", value=Decimal(amount))


def apr_under(rate: str) -> ExtractedEntity:
    return ExtractedEntity(kind="filter", attribute="apr", operator="lt", value=Decimal(rate))


def plan_for(*entities: ExtractedEntity) -> StructuredQuery:
    return StructuredQuery(
        filters=tuple(FilterClause(e.attribute, e.operator, e.value) for e in entities)
    )


@pytest.fixture()
def learner(options):
    return PatternLearner(options, clock=lambda: NOW)


def test_signature_ignores_literals():
    assert signatures([balance_over("5000")], "filter") == signatures([balance_over("10")], "filter")
    assert signatures([balance_over("5000")], "filter") != signatures([balance_over("5000")], "rank")


def test_near_signature_ignores_order():
    first = signatures([balance_over("5000"), apr_under("20")], "filter")
    second = signatures([apr_under("20"), balance_over("5000")], "filter")

    assert first[0] != second[0]
    assert first[1] == second[1]


def test_learned_pattern_binds_new_literals(learner):
    learned = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)

    assert learned.confidence == pytest.approx(0.8)
    assert learned.usage_count == 1
    assert isinstance(learned.template.filters[0].value, Slot)

    match = learner.find_matching_pattern([balance_over("3000")], FILTER)

    assert match is not None
    assert match.pattern.pattern_id == learned.pattern_id
    assert match.query.filters == (FilterClause("current_balance", "gt", Decimal("3000")),)
    assert match.query.method == "pattern"
    assert match.query.pattern_id == learned.pattern_id


def test_same_shape_reinforces_instead_of_duplicating(learner):
    first = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)
    second = learner.learn_from_success(plan_for(balance_over("100")), [balance_over("100")], FILTER)

    assert len(learner) == 1
    assert second.pattern_id == first.pattern_id
    assert second.confidence == pytest.approx(0.85)
    assert second.usage_count == 2


def test_confidence_never_exceeds_ceiling(learner):
    pattern = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)
    for _ in range(10):
        pattern = learner.record_success(pattern.pattern_id)

    assert pattern.confidence == pytest.approx(1.0)
    assert pattern.usage_count == 11


def test_failures_decay_then_evict(learner):
    pattern = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)

    decayed = learner.record_failure(pattern.pattern_id)

    assert decayed.confidence == pytest.approx(0.4)
    assert decayed.failure_count == 1
    assert learner.find_matching_pattern([balance_over("5000")], FILTER) is None

    assert learner.record_failure(pattern.pattern_id) is None
    assert learner.get(pattern.pattern_id) is None
    assert len(learner) == 0


def test_near_match_binds_by_shape(learner):
    entities = [balance_over("5000"), apr_under("20")]
    learner.learn_from_success(plan_for(*entities), entities, FILTER)

    match = learner.find_matching_pattern([apr_under("18"), balance_over("7000")], FILTER)

    assert match is not None
    assert match.query.filters == (
        FilterClause("current_balance", "gt", Decimal("7000")),
        FilterClause("apr", "lt", Decimal("18")),
    )


def test_different_shape_does_not_match(learner):
    learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)

    assert learner.find_matching_pattern([apr_under("20")], FILTER) is None
    assert learner.find_matching_pattern([], FILTER) is None


def test_higher_confidence_then_recency_wins(learner):
    entities = [balance_over("5000")]
    exact, near = signatures(entities, "filter")
    template = make_template(plan_for(*entities), entities)

    def stored(pattern_id, confidence, last_used_at):
        return QueryPattern(
            pattern_id=pattern_id,
            trigger_signature=exact,
            near_signature=near,
            template=replace(template, sort=SortClause("apr", "asc")) if pattern_id == "b" else template,
            confidence=confidence,
            last_used_at=last_used_at,
        )

    learner.load([stored("a", 0.9, NOW - timedelta(days=1)), stored("b", 0.9, NOW)])
    assert learner.find_matching_pattern(entities, FILTER).pattern.pattern_id == "b"

    learner.load([stored("a", 0.95, NOW - timedelta(days=1)), stored("b", 0.9, NOW)])
    assert learner.find_matching_pattern(entities, FILTER).pattern.pattern_id == "a"


def test_limit_from_modifier_becomes_slot():
    entity = ExtractedEntity(kind="modifier", attribute="current_balance", modifier="highest", value=3)
    query = StructuredQuery(sort=SortClause("current_balance", "desc"), limit=3)

    template = make_template(query, [entity])

    assert isinstance(template.limit, Slot)
    bound = bind_template(template, [replace(entity, value=5)])
    assert bound.limit == 5


def test_unbound_slot_returns_none():
    template = make_template(plan_for(balance_over("5000")), [balance_over("5000")])

    assert bind_template(template, [apr_under("20")]) is None


def test_template_serialization_keeps_slots_and_decimals():
    entities = [
        ExtractedEntity(kind="filter", attribute="apr", operator="between", value=(Decimal("15"), Decimal("20"))),
        ExtractedEntity(kind="filter", attribute="issuer", operator="eq", value="chase"),
    ]
    query = StructuredQuery(
        filters=(
            FilterClause("apr", "between", (Decimal("15"), Decimal("20"))),
            FilterClause("issuer", "eq", "chase"),
            FilterClause("annual_fee", "eq", Decimal("0")),
        ),
        aggregation=Aggregation("sum", "current_balance"),
    )
    template = make_template(query, entities)

    restored = template_from_dict(template_to_dict(template))

    assert restored == template
    assert restored.filters[2].value == Decimal("0")


def test_recalibrate_pulls_toward_success_rate(learner):
    pattern = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)
    used = replace(plan_for(balance_over("1")), method="pattern", pattern_id=pattern.pattern_id)
    analytics = QueryAnalytics(clock=lambda: NOW)
    for success in (True, True, False, False):
        analytics.record("balance over 1", structured_query=used, success=success)

    assert learner.recalibrate(analytics) == 1
    assert learner.get(pattern.pattern_id).confidence == pytest.approx(0.65)


def test_recalibrate_skips_rarely_used_and_evicts_failing(learner):
    rare = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)
    failing = learner.learn_from_success(plan_for(apr_under("20")), [apr_under("20")], FILTER)
    learner.record_failure(failing.pattern_id)

    analytics = QueryAnalytics(clock=lambda: NOW)
    analytics.record("x", structured_query=replace(plan_for(), pattern_id=rare.pattern_id), success=False)
    for _ in range(3):
        analytics.record("y", structured_query=replace(plan_for(), pattern_id=failing.pattern_id), success=False)

    learner.recalibrate(analytics)

    assert learner.get(rare.pattern_id).confidence == pytest.approx(0.8)
    assert learner.get(failing.pattern_id) is None


def test_clauses_sharing_a_literal_keep_their_own_slots(learner):
    limit_over = ExtractedEntity(kind="filter", attribute="credit_limit", operator="gt", value=Decimal("5000"))
    entities = [balance_over("5000"), limit_over]
    learned = learner.learn_from_success(plan_for(*entities), entities, FILTER)

    first, second = learned.template.filters
    assert first.value != second.value

    match = learner.find_matching_pattern(
        [balance_over("3000"), replace(limit_over, value=Decimal("15000"))], FILTER
    )

    assert match.query.filters == (
        FilterClause("current_balance", "gt", Decimal("3000")),
        FilterClause("credit_limit", "gt", Decimal("15000")),
    )


def test_repeated_shape_and_literal_claims_each_entity_once():
    entities = [balance_over("5000"), balance_over("5000")]

    template = make_template(plan_for(*entities), entities)

    assert [clause.value.occurrence for clause in template.filters] == [0, 1]
    bound = bind_template(template, [balance_over("100"), balance_over("200")])
    assert [clause.value for clause in bound.filters] == [Decimal("100"), Decimal("200")]


def test_positive_feedback_boosts_without_counting_a_use(learner):
    pattern = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)

    boosted = learner.apply_feedback(pattern.pattern_id, True)

    assert boosted.confidence == pytest.approx(0.85)
    assert boosted.usage_count == 1


def test_negative_feedback_decays_and_neutral_feedback_is_ignored(learner):
    pattern = learner.learn_from_success(plan_for(balance_over("5000")), [balance_over("5000")], FILTER)

    assert learner.apply_feedback(pattern.pattern_id, None) == pattern
    decayed = learner.apply_feedback(pattern.pattern_id, False)

    assert decayed.confidence == pytest.approx(0.4)
    assert decayed.failure_count == 1
    assert learner.apply_feedback("missing", True) is None
