"""Fixed rule set producing short notes about the records a query touched."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from cardquery.core.config import PipelineOptions
from cardquery.core.formatting import format_percent, humanize_currency
from cardquery.schemas.cards import CardRecord


@dataclass(frozen=True)
class InsightRule:
    name: str
    message: Callable[[CardRecord, date, PipelineOptions], Optional[str]]


def _high_utilization(card: CardRecord, as_of: date, options: PipelineOptions) -> Optional[str]:
    utilization = card.utilization
    if utilization is None or utilization <= Decimal(str(options.utilization_alert)):
        return None
    return (
        f"{card.display_name} is at {format_percent(utilization, ratio=True)} utilization. "
        "Paying it below 30% helps your credit score."
    )


def _high_apr(card: CardRecord, as_of: date, options: PipelineOptions) -> Optional[str]:
    if card.apr is None or card.apr < Decimal(str(options.apr_alert)):
        return None
    return (
        f"{card.display_name} charges {format_percent(card.apr, decimals=2)} APR. "
        "Consider paying it down first."
    )


def _overdue(card: CardRecord, as_of: date, options: PipelineOptions) -> Optional[str]:
    if not card.is_overdue:
        return None
    return f"{card.display_name} is overdue."


def _due_soon(card: CardRecord, as_of: date, options: PipelineOptions) -> Optional[str]:
    if card.is_overdue or card.current_balance <= 0:
        return None
    days = card.days_until_due(as_of)
    if days is None or days > options.due_soon_days:
        return None
    when = "today" if days == 0 else ("tomorrow" if days == 1 else f"in {days} days")
    message = f"{card.display_name} payment is due {when}"
    if card.minimum_payment:
        message += f" (minimum {humanize_currency(card.minimum_payment)})"
    return message + "."


INSIGHT_RULES: tuple[InsightRule, ...] = (
    InsightRule("high_utilization", _high_utilization),
    InsightRule("high_apr", _high_apr),
    InsightRule("overdue", _overdue),
    InsightRule("due_soon", _due_soon),
)


def generate_insights(
    records: Iterable[CardRecord],
    as_of: date,
    options: Optional[PipelineOptions] = None,
) -> tuple[str, ...]:
    """Apply every rule to every record, in rule order then record order."""
    options = options or PipelineOptions()
    cards = list(records)
    notes: list[str] = []
    for rule in INSIGHT_RULES:
        for card in cards:
            note = rule.message(card, as_of, options)
            if note and note not in notes:
                notes.append(note)
    return tuple(notes)


__all__ = ["INSIGHT_RULES", "InsightRule", "generate_insights"]
