from decimal import Decimal

import pytest

from cardquery.query.errors import InvalidQueryShape
from cardquery.query.operators import as_decimal, evaluate
from cardquery.query.types import Aggregation, FilterClause, Slot, SortClause, StructuredQuery
from cardquery.query.validation import validate_structured_query


@pytest.mark.parametrize(
    "query",
    [
        StructuredQuery(limit=3),
        StructuredQuery(sort=SortClause("apr"), limit=0),
        StructuredQuery(filters=(FilterClause("favourite_colour", "eq", "red"),)),
        StructuredQuery(filters=(FilterClause("issuer", "gt", 5),)),
        StructuredQuery(filters=(FilterClause("apr", "between", (Decimal("30"), Decimal("10"))),)),
        StructuredQuery(filters=(FilterClause("issuer", "in", ()),)),
        StructuredQuery(filters=(FilterClause("apr", "gt", Slot("shape")),)),
        StructuredQuery(filters=(FilterClause("apr", "gt", Decimal("250")),)),
        StructuredQuery(aggregation=Aggregation("avg")),
        StructuredQuery(aggregation=Aggregation("sum", "issuer")),
        StructuredQuery(group_by="issuer"),
        StructuredQuery(select=("nope",)),
    ],
)
def test_invalid_shapes_are_rejected(query):
    with pytest.raises(InvalidQueryShape):
        validate_structured_query(query)


@pytest.mark.parametrize(
    "query",
    [
        StructuredQuery(),
        StructuredQuery(sort=SortClause("current_balance"), limit=3),
        StructuredQuery(aggregation=Aggregation("count"), group_by="issuer", sort=SortClause("count")),
        StructuredQuery(filters=(FilterClause("rewards.dining", "gte", Decimal("3")),)),
        StructuredQuery(filters=(FilterClause("card_label", "contains", "sapphire"),)),
    ],
)
def test_valid_shapes_pass(query):
    assert validate_structured_query(query) is query


def test_invalid_shape_has_user_message():
    with pytest.raises(InvalidQueryShape) as excinfo:
        validate_structured_query(StructuredQuery(limit=3))

    assert "sort" in excinfo.value.user_message


@pytest.mark.parametrize(
    "left, operator, right, expected",
    [
        ("Chase", "eq", "chase", True),
        (Decimal("5000"), "eq", 5000, True),
        (Decimal("5000"), "gt", Decimal("5000"), False),
        (Decimal("5000"), "gte", Decimal("5000"), True),
        (Decimal("10"), "between", (Decimal("10"), Decimal("20")), True),
        (Decimal("20"), "between", (Decimal("10"), Decimal("20")), True),
        ("Visa", "in", ("visa", "Mastercard"), True),
        ("Sapphire Preferred", "contains", "sapphire", True),
        ("Visa", "ne", "Mastercard", True),
        (None, "gt", Decimal("1"), False),
        (None, "eq", None, True),
        (None, "ne", "Visa", True),
    ],
)
def test_operator_semantics(left, operator, right, expected):
    assert evaluate(left, operator, right) is expected


def test_unknown_operator_raises():
    with pytest.raises(ValueError):
        evaluate(1, "like", 1)


def test_as_decimal():
    assert as_decimal("1,200.50") == Decimal("1200.50")
    assert as_decimal(True) is None
    assert as_decimal("n/a") is None
