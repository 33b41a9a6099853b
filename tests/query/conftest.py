"""Shared fixtures for the query pipeline tests."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from cardquery.core.config import PipelineOptions
from cardquery.schemas.cards import CardRecord

AS_OF = date(2026, 3, 10)


def make_card(card_id: str, *, balance: str, apr: str, **overrides) -> CardRecord:
    values = {
        "card_id": card_id,
        "card_name": f"Card {card_id}",
        "current_balance": Decimal(balance),
        "apr": Decimal(apr),
        "credit_limit": Decimal("20000"),
    }
    values.update(overrides)
    return CardRecord(**values)


@pytest.fixture()
def as_of() -> date:
    return AS_OF


@pytest.fixture()
def options() -> PipelineOptions:
    return PipelineOptions()


@pytest.fixture()
def cards() -> list[CardRecord]:
    """Five cards: balances 6000/4000/7000/5000/8000, APRs 18/19/25/15/22."""

    return [
        make_card(
            "1",
            balance="6000",
            apr="18",
            card_name="Sapphire Preferred",
            issuer="Chase",
            card_network="Visa",
            last_four="1234",
            payment_due_day=25,
            minimum_payment=Decimal("120"),
            reward_structure={"dining": Decimal("3"), "travel": Decimal("2"), "default": Decimal("1")},
        ),
        make_card(
            "2",
            balance="4000",
            apr="19",
            card_name="Double Cash",
            issuer="Citi",
            card_network="Mastercard",
            payment_due_day=20,
            reward_structure={"default": Decimal("2")},
        ),
        make_card(
            "3",
            balance="7000",
            apr="25",
            card_name="Gold",
            issuer="American Express",
            credit_limit=Decimal("9000"),
            annual_fee=Decimal("250"),
            payment_due_day=12,
            minimum_payment=Decimal("140"),
            reward_structure={"dining": Decimal("4"), "groceries": Decimal("4")},
        ),
        make_card(
            "4",
            balance="5000",
            apr="15",
            card_name="It",
            issuer="Discover",
            payment_due_day=1,
        ),
        make_card(
            "5",
            balance="8000",
            apr="22",
            card_name="Venture",
            issuer="Capital One",
            card_network="Visa",
            nickname="travel card",
            annual_fee=Decimal("95"),
            payment_due_day=28,
            reward_structure={"travel": Decimal("5"), "default": Decimal("2")},
        ),
    ]


@pytest.fixture()
def card_factory():
    return make_card
