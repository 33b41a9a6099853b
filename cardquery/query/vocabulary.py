"""
Vocabulary tables mapping natural language phrases to canonical fields,
operators, aggregations and modifiers.

Everything here is plain data plus a few lookup helpers; the entity
extractor decides what a match means in context.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Hashable, Iterable, Mapping, Optional, Sequence

REWARD_PREFIX = "rewards."

# Canonical field -> phrases. Longest phrase wins when phrases overlap, so
# "credit limit" beats "limit" and "minimum payment" beats "minimum".
ATTRIBUTE_SYNONYMS: dict[str, tuple[str, ...]] = {
    "grace_period_days": (
        "grace period", "grace periods", "grace", "interest free days",
        "interest-free days", "days grace",
    ),
    "statement_close_day": (
        "statement close", "statement closing", "statement close date",
        "statement closing date", "close date", "closing date", "closing day",
        "statement end", "statement cycle end",
    ),
    "payment_due_day": (
        "payment due date", "payment due day", "due date", "due dates", "due day",
    ),
    "days_until_due": (
        "due", "days until due", "days left to pay", "days until payment",
    ),
    "minimum_payment": (
        "minimum payment", "minimum payments", "min payment", "minimum due",
        "payment amount", "payment amounts",
    ),
    "credit_limit": (
        "credit limit", "credit limits", "limit", "limits", "max credit",
        "maximum credit", "credit line", "credit lines",
    ),
    "available_credit": (
        "available credit", "remaining credit", "free credit", "available",
        "spending power", "credit available",
    ),
    "card_network": (
        "card network", "card networks", "payment network", "network", "networks",
    ),
    "card_name": ("card name", "card names", "card title", "name", "names"),
    "card_type": (
        "card type", "card types", "type", "types", "kind of card", "kinds of cards",
    ),
    "nickname": ("nickname", "nicknames", "card nickname", "alias", "nick"),
    "annual_fee": ("annual fee", "annual fees", "yearly fee", "yearly fees", "fee", "fees"),
    "apr": (
        "apr", "aprs", "annual percentage rate", "interest rate", "interest rates",
        "interest", "rate", "rates",
    ),
    "current_balance": (
        "balance", "balances", "current balance", "current balances", "debt",
        "owed", "owe", "outstanding", "outstanding balance", "amount owed", "amount due",
    ),
    "utilization": (
        "utilization", "credit utilization", "utilization rate", "usage",
        "credit usage", "utilisation",
    ),
    "issuer": (
        "issuer", "issuers", "bank", "banks", "card issuer", "card issuers",
        "financial institution",
    ),
    "reward_multiplier": (
        "reward", "rewards", "reward rate", "points", "cashback", "cash back",
        "miles", "multiplier", "earning rate",
    ),
}

# Unit of each canonical field. ``rewards.<category>`` fields are multipliers.
FIELD_KINDS: dict[str, str] = {
    "card_id": "text",
    "card_name": "text",
    "issuer": "text",
    "card_network": "text",
    "nickname": "text",
    "card_type": "text",
    "card_label": "text",
    "last_four": "text",
    "current_balance": "money",
    "credit_limit": "money",
    "available_credit": "money",
    "minimum_payment": "money",
    "annual_fee": "money",
    "apr": "percent_points",
    "utilization": "ratio",
    "statement_close_day": "day_of_month",
    "payment_due_day": "day_of_month",
    "grace_period_days": "days",
    "days_until_due": "days",
    "is_overdue": "flag",
}

NUMERIC_KINDS = frozenset({"money", "percent_points", "ratio", "day_of_month", "days", "multiplier"})


@dataclass(frozen=True)
class OperatorPhrase:
    operator: str
    phrase: str
    postfix: bool = False


OPERATOR_PHRASES: tuple[OperatorPhrase, ...] = (
    *(OperatorPhrase("gt", p) for p in (
        "more than", "greater than", "over", "above", "exceeding", "exceeds",
        "higher than", "bigger than", "larger than", "in excess of", ">",
    )),
    *(OperatorPhrase("gte", p) for p in ("at least", "no less than", "minimum of", ">=")),
    *(OperatorPhrase("gte", p, postfix=True) for p in (
        "or more", "or higher", "or above", "or greater", "and above", "and up", "or over",
    )),
    *(OperatorPhrase("lt", p) for p in (
        "less than", "under", "below", "lower than", "fewer than", "smaller than", "<",
    )),
    *(OperatorPhrase("lte", p) for p in (
        "at most", "no more than", "up to", "maximum of", "within", "in the next", "<=",
    )),
    *(OperatorPhrase("lte", p, postfix=True) for p in (
        "or less", "or lower", "or below", "or fewer", "and below", "and under",
    )),
    *(OperatorPhrase("eq", p) for p in ("equal to", "equals", "exactly", "of exactly", "=")),
    *(OperatorPhrase("ne", p) for p in ("not equal to", "different from")),
    OperatorPhrase("between", "between"),
    *(OperatorPhrase("contains", p) for p in ("containing", "contains", "that contain", "named like")),
)

AGGREGATION_PHRASES: dict[str, tuple[str, ...]] = {
    "sum": (
        "total", "sum", "sum of", "total of", "add up", "combined", "altogether",
        "how much",
    ),
    "avg": ("average", "avg", "mean", "typical"),
    "count": ("how many", "number of", "count", "count of"),
    "min": ("minimum", "min"),
    "max": ("maximum", "max"),
}

MODIFIER_PHRASES: dict[str, tuple[str, ...]] = {
    "highest": (
        "highest", "largest", "most", "longest", "top", "best", "biggest",
        "greatest", "maxed out",
    ),
    "lowest": (
        "lowest", "least", "shortest", "smallest", "bottom", "fewest", "cheapest",
    ),
}

GROUPING_PHRASES: dict[str, tuple[str, ...]] = {
    "group": (
        "per", "for each", "for every", "grouped by", "group by",
        "breakdown by", "broken down by", "split by", "by each",
    ),
    # Only a grouping when the utterance also aggregates or asks for distinct values.
    "weak": ("by", "each", "across"),
}

# Claims "by" so that "sorted by apr" is not read as a grouping.
SORT_PHRASES: dict[str, tuple[str, ...]] = {
    "desc": ("rank by", "ranked by", "rank my cards by"),
    "asc": ("sort by", "sorted by", "order by", "ordered by"),
}

DISTINCT_PHRASES: dict[str, tuple[str, ...]] = {
    "distinct": (
        "different", "various", "distinct", "unique", "what kinds of",
        "which kinds of", "breakdown of", "distribution of",
    ),
}

LISTING_PHRASES: dict[str, tuple[str, ...]] = {
    "list": (
        "show", "list", "display", "see", "all my cards", "my cards",
        "all cards", "what cards", "which cards", "every card",
    ),
}

BALANCE_STATUS_PHRASES: dict[str, tuple[str, ...]] = {
    "with_balance": (
        "with a balance", "with balance", "with balances", "with a balance on it",
        "carrying a balance", "that have a balance", "that has a balance",
        "having a balance", "with an outstanding balance", "with outstanding balance",
        "with debt",
    ),
    "zero_balance": (
        "zero balance", "no balance", "paid off", "paid in full", "no debt",
        "all paid", "$0 balance", "0 balance", "0 dollar balance", "0 dollars balance",
    ),
}

DUE_TIMEFRAME_PHRASES: dict[int, tuple[str, ...]] = {
    0: ("due today", "due right now", "due tonight"),
    1: ("due tomorrow",),
    3: ("due soon", "coming due"),
    7: ("due this week", "due within a week", "due in a week"),
    14: ("due next week",),
    31: ("due this month", "due within a month"),
}

NEGATION_PHRASES: dict[str, tuple[str, ...]] = {
    "not": (
        "non", "not", "except", "excluding", "other than", "besides",
        "aside from", "but not", "no",
    ),
}

ISSUER_VALUES: dict[str, tuple[str, ...]] = {
    "Chase": ("chase",),
    "Citi": ("citi", "citibank"),
    "American Express": ("american express", "amex"),
    "Capital One": ("capital one", "capitalone"),
    "Discover": ("discover",),
    "Bank of America": ("bank of america", "bofa", "boa"),
    "Wells Fargo": ("wells fargo",),
    "US Bank": ("us bank", "u.s. bank", "usbank"),
    "Barclays": ("barclays",),
    "Synchrony": ("synchrony",),
}

# American Express and Discover issue on their own networks, so they are
# resolved as issuers only.
NETWORK_VALUES: dict[str, tuple[str, ...]] = {
    "Visa": ("visa",),
    "Mastercard": ("mastercard", "mastercards", "master card", "master cards"),
}

REWARD_CATEGORIES: dict[str, tuple[str, ...]] = {
    "dining": (
        "dining", "dining out", "restaurant", "restaurants", "eating out", "eat out",
        "food", "dinner", "lunch", "breakfast", "takeout", "take out",
        "food delivery", "fast food",
    ),
    "groceries": (
        "grocery", "groceries", "grocery store", "grocery stores", "supermarket",
        "supermarkets", "food shopping", "grocery shopping",
    ),
    "gas": (
        "gas", "gas station", "gas stations", "fuel", "gasoline", "petrol",
        "ev charging", "charging station",
    ),
    "travel": (
        "travel", "traveling", "travelling", "trip", "trips", "vacation", "flight",
        "flights", "airline", "airlines", "airfare", "hotel", "hotels", "lodging",
        "cruise", "cruises",
    ),
    "entertainment": (
        "entertainment", "movies", "movie", "movie theater", "cinema", "concert",
        "concerts", "live events", "sporting events", "event tickets",
    ),
    "streaming": (
        "streaming", "streaming service", "streaming services", "subscriptions",
        "netflix", "spotify", "hulu", "disney plus",
    ),
    "drugstores": (
        "drugstore", "drugstores", "drug store", "drug stores", "pharmacy",
        "pharmacies", "cvs", "walgreens",
    ),
    "home_improvement": (
        "home improvement", "home improvements", "hardware store", "home depot",
        "lowes", "home repair", "diy",
    ),
    "department_stores": (
        "department store", "department stores", "retail store", "retail stores",
        "mall", "shopping mall", "macys", "nordstrom",
    ),
    "transit": (
        "transit", "public transit", "public transportation", "transportation",
        "taxi", "taxis", "uber", "lyft", "rideshare", "commute", "subway",
    ),
    "utilities": (
        "utilities", "utility", "utility bill", "utility bills", "electric bill",
        "internet bill", "phone bill", "cable bill", "water bill",
    ),
    "warehouse": (
        "warehouse", "warehouse club", "warehouse clubs", "costco", "sams club",
        "sam's club", "wholesale club",
    ),
    "office_supplies": (
        "office supplies", "office supply", "office supply store", "office depot",
        "staples", "stationery",
    ),
    "insurance": (
        "insurance", "auto insurance", "car insurance", "health insurance",
        "home insurance", "renters insurance", "life insurance",
    ),
}


@dataclass(frozen=True)
class VocabSpan:
    """One vocabulary phrase found in text."""

    start: int
    end: int
    text: str
    value: Any
    table: str

    def overlaps(self, start: int, end: int) -> bool:
        return not (end <= self.start or start >= self.end)


def _normalize(phrase: str) -> str:
    return re.sub(r"\s+", " ", phrase.strip().lower())


def operator_table() -> dict[tuple[str, bool], tuple[str, ...]]:
    """``OPERATOR_PHRASES`` grouped as ``(operator, postfix) -> phrases``."""
    grouped: dict[tuple[str, bool], list[str]] = {}
    for entry in OPERATOR_PHRASES:
        grouped.setdefault((entry.operator, entry.postfix), []).append(entry.phrase)
    return {key: tuple(phrases) for key, phrases in grouped.items()}


def _reverse(table: Mapping[Hashable, Sequence[str]]) -> dict[str, Hashable]:
    reverse: dict[str, Hashable] = {}
    for value, phrases in table.items():
        for phrase in phrases:
            reverse.setdefault(_normalize(phrase), value)
    return reverse


_ATTRIBUTES = _reverse(ATTRIBUTE_SYNONYMS)
_OPERATORS = {_normalize(entry.phrase): entry.operator for entry in OPERATOR_PHRASES}
_AGGREGATIONS = _reverse(AGGREGATION_PHRASES)
_MODIFIERS = _reverse(MODIFIER_PHRASES)


def map_attribute(phrase: str) -> Optional[str]:
    """Canonical field for ``phrase`` (case and whitespace insensitive)."""
    if not phrase:
        return None
    normalized = _normalize(phrase)
    if normalized in FIELD_KINDS:
        return normalized
    return _ATTRIBUTES.get(normalized)  # type: ignore[return-value]


def map_operator(phrase: str) -> Optional[str]:
    if not phrase:
        return None
    return _OPERATORS.get(_normalize(phrase))


def map_aggregation(phrase: str) -> Optional[str]:
    if not phrase:
        return None
    return _AGGREGATIONS.get(_normalize(phrase))  # type: ignore[return-value]


def map_modifier(phrase: str) -> Optional[str]:
    if not phrase:
        return None
    return _MODIFIERS.get(_normalize(phrase))  # type: ignore[return-value]


def field_kind(attribute: Optional[str]) -> Optional[str]:
    """Unit of ``attribute``; ``None`` for unknown fields."""
    if attribute is None:
        return None
    if attribute.startswith(REWARD_PREFIX) and len(attribute) > len(REWARD_PREFIX):
        return "multiplier"
    return FIELD_KINDS.get(attribute)


def is_known_field(attribute: Optional[str]) -> bool:
    return field_kind(attribute) is not None


def is_numeric_field(attribute: Optional[str]) -> bool:
    return field_kind(attribute) in NUMERIC_KINDS


def reward_field(category: Optional[str]) -> str:
    return f"{REWARD_PREFIX}{category or 'default'}"


def convert_literal(attribute: Optional[str], value: Decimal, literal_kind: str) -> Any:
    """Express a numeric literal in the unit of ``attribute``.

    APR is stored in percentage points, so ``20%`` stays ``20``; utilization
    is a ratio, so ``70%`` (or a bare ``70``) becomes ``0.70``.
    """
    kind = field_kind(attribute)
    if kind == "ratio":
        if literal_kind == "percent" or value > 1:
            return value / 100
        return value
    if kind in ("day_of_month", "days"):
        return int(value)
    if kind == "text":
        return format(value.normalize(), "f")
    return value


def _phrase_pattern(phrase: str) -> str:
    escaped = re.escape(_normalize(phrase)).replace(r"\ ", r"\s+")
    return r"(?<![\w])" + escaped + r"(?![\w])"


@lru_cache(maxsize=64)
def _compiled(phrases: tuple[tuple[str, Hashable], ...]) -> tuple[tuple[re.Pattern, Hashable], ...]:
    return tuple((re.compile(_phrase_pattern(phrase), re.IGNORECASE), value) for phrase, value in phrases)


def _table_items(table: Mapping[Hashable, Sequence[str]]) -> tuple[tuple[str, Hashable], ...]:
    return tuple((phrase, value) for value, phrases in table.items() for phrase in phrases)


def find_spans(
    text: str,
    table: Mapping[Hashable, Sequence[str]],
    *,
    label: str = "",
    exclude: Iterable[tuple[int, int]] = (),
) -> list[VocabSpan]:
    """Non-overlapping matches of ``table`` phrases, longest first, ordered by position."""
    return find_all_spans(text, [(label, table)], exclude=exclude)


def find_all_spans(
    text: str,
    tables: Sequence[tuple[str, Mapping[Hashable, Sequence[str]]]],
    *,
    exclude: Iterable[tuple[int, int]] = (),
) -> list[VocabSpan]:
    """Match several tables at once.

    Longer matches win over shorter overlapping ones regardless of table;
    equal lengths fall back to the order of ``tables``.
    """
    if not text:
        return []

    candidates: list[tuple[int, int, int, VocabSpan]] = []
    for priority, (label, table) in enumerate(tables):
        items = _table_items(table)
        for pattern, value in _compiled(items):
            for match in pattern.finditer(text):
                span = VocabSpan(
                    start=match.start(),
                    end=match.end(),
                    text=match.group(0),
                    value=value,
                    table=label,
                )
                candidates.append((-(span.end - span.start), priority, span.start, span))

    taken: list[tuple[int, int]] = list(exclude)
    accepted: list[VocabSpan] = []
    for _, _, _, span in sorted(candidates, key=lambda item: item[:3]):
        if any(not (span.end <= s or span.start >= e) for s, e in taken):
            continue
        taken.append((span.start, span.end))
        accepted.append(span)
    return sorted(accepted, key=lambda span: span.start)


__all__ = [
    "AGGREGATION_PHRASES",
    "ATTRIBUTE_SYNONYMS",
    "BALANCE_STATUS_PHRASES",
    "DISTINCT_PHRASES",
    "DUE_TIMEFRAME_PHRASES",
    "FIELD_KINDS",
    "GROUPING_PHRASES",
    "ISSUER_VALUES",
    "LISTING_PHRASES",
    "MODIFIER_PHRASES",
    "NEGATION_PHRASES",
    "NETWORK_VALUES",
    "OPERATOR_PHRASES",
    "REWARD_CATEGORIES",
    "REWARD_PREFIX",
    "SORT_PHRASES",
    "VocabSpan",
    "convert_literal",
    "field_kind",
    "find_all_spans",
    "find_spans",
    "is_known_field",
    "is_numeric_field",
    "map_aggregation",
    "map_attribute",
    "map_modifier",
    "map_operator",
    "operator_table",
    "reward_field",
]
