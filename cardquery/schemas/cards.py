"""Schemas describing the card records a query runs against."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class CardRecord(BaseModel):
    """One credit card owned by a user.

    Money fields are ``Decimal``; ``apr`` is expressed in percentage points
    (``18.99`` means 18.99%). Derived values (utilization, available credit,
    days until due) are computed on read and never stored.
    """

    model_config = ConfigDict(frozen=True)

    card_id: str
    card_name: str
    issuer: str | None = None
    card_network: str | None = None
    nickname: str | None = None
    card_type: str | None = None
    last_four: str | None = Field(default=None, pattern=r"^\d{4}$")

    current_balance: Decimal = Decimal("0")
    credit_limit: Decimal | None = None
    apr: Decimal | None = None
    minimum_payment: Decimal | None = None
    annual_fee: Decimal = Decimal("0")

    statement_close_day: int | None = Field(default=None, ge=1, le=31)
    payment_due_day: int | None = Field(default=None, ge=1, le=31)
    grace_period_days: int | None = Field(default=None, ge=0)

    reward_structure: dict[str, Decimal] = Field(default_factory=dict)
    is_overdue: bool = False

    @field_validator("reward_structure")
    @classmethod
    def _lowercase_categories(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        return {str(key).strip().lower(): multiplier for key, multiplier in value.items()}

    @field_serializer("current_balance", "credit_limit", "apr", "minimum_payment", "annual_fee")
    def serialize_decimal(cls, value: Decimal | None) -> str | None:
        return None if value is None else format(value, "f")

    @property
    def display_name(self) -> str:
        return self.nickname or self.card_name

    @property
    def card_label(self) -> str:
        parts = [self.issuer, self.card_name, self.nickname]
        return " ".join(part for part in parts if part).lower()

    @property
    def utilization(self) -> Decimal | None:
        if not self.credit_limit:
            return None
        return self.current_balance / self.credit_limit

    @property
    def available_credit(self) -> Decimal | None:
        if self.credit_limit is None:
            return None
        return self.credit_limit - self.current_balance

    def days_until_due(self, as_of: date) -> int | None:
        """Days from ``as_of`` until the next payment due day (0 when due today)."""
        if self.payment_due_day is None:
            return None
        return (_next_day_of_month(as_of, self.payment_due_day) - as_of).days

    def reward_multiplier(self, category: str) -> Decimal | None:
        key = category.strip().lower()
        if key in self.reward_structure:
            return self.reward_structure[key]
        return self.reward_structure.get("default")


def _next_day_of_month(as_of: date, day: int) -> date:
    """Next date on or after ``as_of`` falling on ``day`` (clamped to month end)."""
    candidate = _clamped(as_of.year, as_of.month, day)
    if candidate >= as_of:
        return candidate
    year, month = (as_of.year + 1, 1) if as_of.month == 12 else (as_of.year, as_of.month + 1)
    return _clamped(year, month, day)


def _clamped(year: int, month: int, day: int) -> date:
    first_next = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    last_day = (first_next - timedelta(days=1)).day
    return date(year, month, min(day, last_day))


__all__ = ["CardRecord"]
