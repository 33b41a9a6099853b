from decimal import Decimal

import pytest

from cardquery.query.entity_extractor import EntityExtractor
from cardquery.query.types import ExtractedEntity


@pytest.fixture()
def extractor():
    return EntityExtractor()


def _filters(entities):
    return [(e.attribute, e.operator, e.value) for e in entities if e.kind == "filter"]


def test_compound_filter(extractor):
    entities = extractor.extract("cards with balance over 5000 and APR under 20%")

    assert _filters(entities) == [
        ("current_balance", "gt", Decimal("5000")),
        ("apr", "lt", Decimal("20")),
    ]
    assert all(e.kind == "filter" for e in entities)


def test_greeting_has_no_entities(extractor):
    assert extractor.extract("hello there") == []


@pytest.mark.parametrize("utterance", [None, "", "   "])
def test_empty_input(extractor, utterance):
    assert extractor.extract(utterance) == []


def test_modifier_with_count(extractor):
    entities = extractor.extract("show me my 3 highest balance cards")

    assert entities == [
        ExtractedEntity(kind="modifier", attribute="current_balance", modifier="highest", value=3)
    ]


def test_count_with_filter(extractor):
    entities = extractor.extract("how many cards have an APR over 20%")

    assert [e.kind for e in entities] == ["aggregation", "filter"]
    assert entities[0].aggregation == "count"
    assert entities[0].attribute is None
    assert _filters(entities) == [("apr", "gt", Decimal("20"))]


def test_total_defaults_to_mentioned_field(extractor):
    entities = extractor.extract("total balance across all cards")

    assert entities == [
        ExtractedEntity(kind="aggregation", attribute="current_balance", aggregation="sum")
    ]


def test_issuer_set_and_negated_fee(extractor):
    entities = extractor.extract("chase or citi cards with no annual fee")

    assert _filters(entities) == [
        ("issuer", "in", ("Chase", "Citi")),
        ("annual_fee", "eq", Decimal("0")),
    ]


def test_negated_network(extractor):
    entities = extractor.extract("non-visa cards")

    assert _filters(entities) == [("card_network", "ne", "Visa")]


def test_due_timeframe(extractor):
    entities = extractor.extract("which cards are due this week")

    assert _filters(entities) == [("days_until_due", "lte", 7)]


def test_between_range(extractor):
    entities = extractor.extract("cards with a credit limit between 5000 and 10000")

    assert _filters(entities) == [
        ("credit_limit", "between", (Decimal("5000"), Decimal("10000"))),
    ]


def test_postfix_operator(extractor):
    entities = extractor.extract("apr of 20% or more")

    assert _filters(entities) == [("apr", "gte", Decimal("20"))]


def test_grouped_average(extractor):
    entities = extractor.extract("average APR by issuer")

    assert [(e.kind, e.attribute) for e in entities] == [("aggregation", "apr"), ("group", "issuer")]
    assert entities[0].aggregation == "avg"


def test_category_modifier(extractor):
    entities = extractor.extract("which card has the highest rewards for dining")

    modifiers = [e for e in entities if e.kind == "modifier"]
    assert len(modifiers) == 1
    assert modifiers[0].attribute == "rewards.dining"
    assert modifiers[0].category == "dining"
    assert modifiers[0].modifier == "highest"


def test_card_ending_reference(extractor):
    entities = extractor.extract("what is the balance on my card ending in 1234")

    assert ("last_four", "eq", "1234") in _filters(entities)
    assert any(e.kind == "mention" and e.attribute == "current_balance" for e in entities)


def test_bare_mention(extractor):
    entities = extractor.extract("what are my credit limits")

    assert entities == [ExtractedEntity(kind="mention", attribute="credit_limit")]


def test_extraction_is_deterministic(extractor):
    utterance = "top 2 cards by apr with balance over $1,000"

    assert extractor.extract(utterance) == extractor.extract(utterance)
