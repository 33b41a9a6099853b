from datetime import date
from decimal import Decimal

import pytest

from cardquery.query.errors import ExecutionError
from cardquery.query.executor import QueryExecutor, resolve_field
from cardquery.query.insights import generate_insights
from cardquery.query.types import Aggregation, FilterClause, SortClause, StructuredQuery


@pytest.fixture()
def executor(options, as_of):
    return QueryExecutor(options, clock=lambda: as_of)


def test_compound_filter_returns_single_card(executor, cards):
    query = StructuredQuery(
        filters=(
            FilterClause("current_balance", "gt", Decimal("5000")),
            FilterClause("apr", "lt", Decimal("20")),
        )
    )

    result = executor.execute(query, cards)

    assert [row["card_id"] for row in result.rows] == ["1"]
    assert result.row_count == 1
    assert result.truncated is False


def test_total_balance(executor, cards):
    query = StructuredQuery(aggregation=Aggregation("sum", "current_balance"))

    result = executor.execute(query, cards)

    assert result.rows == ({"sum_current_balance": Decimal("30000")},)


def test_limit_larger_than_matches_is_not_truncated(executor, cards):
    query = StructuredQuery(sort=SortClause("current_balance", "desc"), limit=3)

    result = executor.execute(query, cards[:2])

    assert [row["current_balance"] for row in result.rows] == [Decimal("6000"), Decimal("4000")]
    assert result.row_count == 2
    assert result.truncated is False


def test_limit_truncates(executor, cards):
    query = StructuredQuery(sort=SortClause("apr", "asc"), limit=2)

    result = executor.execute(query, cards)

    assert [row["card_id"] for row in result.rows] == ["4", "1"]
    assert result.truncated is True


@pytest.mark.parametrize(
    "op, expected",
    [("sum", Decimal("0")), ("count", 0), ("avg", None), ("min", None), ("max", None)],
)
def test_aggregates_over_no_records(executor, cards, op, expected):
    attribute = None if op == "count" else "current_balance"
    query = StructuredQuery(
        filters=(FilterClause("apr", "gt", Decimal("99")),),
        aggregation=Aggregation(op, attribute),
    )

    result = executor.execute(query, cards)

    assert result.rows[0][query.aggregation.column] == expected


def test_execution_is_idempotent(executor, cards):
    query = StructuredQuery(
        filters=(FilterClause("current_balance", "gte", Decimal("5000")),),
        sort=SortClause("apr", "desc"),
    )

    assert executor.execute(query, cards) == executor.execute(query, cards)


def test_group_by_is_case_insensitive(executor, card_factory):
    records = [
        card_factory("a", balance="100", apr="10", issuer="Chase"),
        card_factory("b", balance="200", apr="12", issuer="chase"),
        card_factory("c", balance="300", apr="14", issuer="Citi"),
    ]
    query = StructuredQuery(
        aggregation=Aggregation("sum", "current_balance"),
        group_by="issuer",
        sort=SortClause("sum_current_balance", "desc"),
    )

    result = executor.execute(query, records)

    assert result.rows == (
        {"issuer": "Chase", "sum_current_balance": Decimal("300")},
        {"issuer": "Citi", "sum_current_balance": Decimal("300")},
    )


@pytest.mark.parametrize("direction", ["asc", "desc"])
def test_missing_values_sort_last(executor, card_factory, direction):
    records = [
        card_factory("a", balance="100", apr="10"),
        card_factory("b", balance="100", apr="10", credit_limit=None),
        card_factory("c", balance="100", apr="10", credit_limit=Decimal("500")),
    ]
    query = StructuredQuery(sort=SortClause("credit_limit", direction))

    result = executor.execute(query, records)

    assert result.rows[-1]["card_id"] == "b"


@pytest.mark.parametrize("direction", ["asc", "desc"])
def test_ties_keep_record_order(executor, card_factory, direction):
    records = [
        card_factory("a", balance="300", apr="20"),
        card_factory("b", balance="100", apr="10"),
        card_factory("c", balance="300", apr="15"),
        card_factory("d", balance="100", apr="25"),
        card_factory("e", balance="300", apr="12"),
    ]
    query = StructuredQuery(sort=SortClause("current_balance", direction))

    result = executor.execute(query, records)

    expected = {"asc": ["b", "d", "a", "c", "e"], "desc": ["a", "c", "e", "b", "d"]}
    assert [row["card_id"] for row in result.rows] == expected[direction]


def test_reward_category_ranking(executor, cards):
    query = StructuredQuery(sort=SortClause("rewards.dining", "desc"), limit=1)

    result = executor.execute(query, cards)

    assert result.rows[0]["card_id"] == "3"
    assert result.rows[0]["rewards.dining"] == Decimal("4")


def test_select_projects_requested_columns(executor, cards):
    query = StructuredQuery(select=("utilization",), filters=(FilterClause("issuer", "eq", "citi"),))

    result = executor.execute(query, cards)

    assert result.rows == (
        {"card_id": "2", "card_name": "Double Cash", "utilization": Decimal("0.2"), "issuer": "Citi"},
    )


def test_days_until_due_is_derived(executor, cards, as_of):
    query = StructuredQuery(filters=(FilterClause("days_until_due", "lte", 7),))

    result = executor.execute(query, cards, as_of=as_of)

    assert [row["card_id"] for row in result.rows] == ["3"]


def test_malformed_query_raises_execution_error(executor, cards):
    with pytest.raises(ExecutionError):
        executor.execute(StructuredQuery(limit=2), cards)


def test_unknown_field_raises(cards, as_of):
    with pytest.raises(ExecutionError):
        resolve_field(cards[0], "favourite_colour", as_of)


def test_insights_cover_filtered_records(executor, cards):
    query = StructuredQuery(filters=(FilterClause("issuer", "eq", "American Express"),))

    result = executor.execute(query, cards)

    assert result.insights == (
        "Gold is at 78% utilization. Paying it below 30% helps your credit score.",
        "Gold charges 25.00% APR. Consider paying it down first.",
        "Gold payment is due in 2 days (minimum $140.00).",
    )


def test_overdue_and_quiet_cards(card_factory):
    overdue = card_factory("x", balance="100", apr="10", is_overdue=True, payment_due_day=9)
    paid = card_factory("y", balance="0", apr="10", payment_due_day=11)

    notes = generate_insights([overdue, paid], date(2026, 3, 10))

    assert notes == ("Card x is overdue.",)
