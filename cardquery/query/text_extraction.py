"""
Text extraction helpers.

Pure functions that pull monetary amounts, percentages and card references
out of free text. The entity extractor builds on ``iter_numeric_literals``,
which reports every literal with its character span so it can be associated
with nearby attribute and operator phrases.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterator, Literal, Optional

LiteralKind = Literal["currency", "k", "percent", "bare"]

# Either a comma grouped number (5,000) or a plain digit run (5000). The
# trailing lookahead keeps "1,2345" from matching as "1,234".
_NUMBER = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?![\d])"

_DOLLAR_RE = re.compile(r"\$\s*(" + _NUMBER + r")(\s*k\b)?", re.IGNORECASE)
_PERCENT_RE = re.compile(r"(?<![\w.])(" + _NUMBER + r")\s*(?:%|percent\b)", re.IGNORECASE)
_K_RE = re.compile(r"(?<![\w.$])(\d+(?:\.\d+)?)\s*k\b", re.IGNORECASE)
_WORD_CURRENCY_RE = re.compile(
    r"(?<![\w.$])(" + _NUMBER + r")\s*(?:dollars?|usd|bucks?)\b", re.IGNORECASE
)
_BARE_RE = re.compile(
    r"(?<![\w.$])(" + _NUMBER + r")(?!\s*(?:%|percent\b))(?![\w])(?!\.\d)", re.IGNORECASE
)
_FRACTION_RE = re.compile(r"(?<![\w.])(0\.\d+)(?![\d])")

_CARD_ENDING_RE = re.compile(r"\bcard\s+ending\s+(?:in\s+)?(\d{4})\b", re.IGNORECASE)
_CARD_NAME_RE = re.compile(r"\b(?:my|the)\s+([a-z]+(?:\s+[a-z]+)?)\s+card\b", re.IGNORECASE)

_WHITESPACE_RE = re.compile(r"\s+")
_SPECIAL_RE = re.compile(r"[^\w\s$.,%-]")


@dataclass(frozen=True)
class NumericLiteral:
    """A number found in text together with where it was found."""

    value: Decimal
    kind: LiteralKind
    start: int
    end: int
    text: str

    @property
    def is_money(self) -> bool:
        return self.kind in ("currency", "k")


def _to_decimal(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def _digit_count(raw: str) -> int:
    integer_part = raw.split(".", 1)[0]
    return sum(1 for ch in integer_part if ch.isdigit())


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, collapse whitespace and drop unusual punctuation."""
    if not text or not isinstance(text, str):
        return ""
    lowered = _WHITESPACE_RE.sub(" ", text.lower())
    return _SPECIAL_RE.sub("", lowered).strip()


def iter_numeric_literals(text: Optional[str], *, min_digits: int = 1) -> Iterator[NumericLiteral]:
    """Yield every numeric literal in ``text`` in order of appearance.

    Spans never overlap: dollar amounts are claimed first, then percentages,
    k-suffixed amounts, word currencies and finally bare numbers.
    """
    if not text or not isinstance(text, str):
        return

    claimed: list[tuple[int, int]] = []
    found: list[NumericLiteral] = []

    def _free(start: int, end: int) -> bool:
        return all(end <= s or start >= e for s, e in claimed)

    def _claim(match: re.Match, value: Optional[Decimal], kind: LiteralKind) -> None:
        if value is None or not _free(match.start(), match.end()):
            return
        claimed.append((match.start(), match.end()))
        found.append(
            NumericLiteral(
                value=value,
                kind=kind,
                start=match.start(),
                end=match.end(),
                text=match.group(0),
            )
        )

    for match in _DOLLAR_RE.finditer(text):
        value = _to_decimal(match.group(1))
        if value is not None and match.group(2):
            value *= 1000
        _claim(match, value, "currency")

    for match in _PERCENT_RE.finditer(text):
        _claim(match, _to_decimal(match.group(1)), "percent")

    for match in _K_RE.finditer(text):
        value = _to_decimal(match.group(1))
        _claim(match, None if value is None else value * 1000, "k")

    for match in _WORD_CURRENCY_RE.finditer(text):
        _claim(match, _to_decimal(match.group(1)), "currency")

    for match in _BARE_RE.finditer(text):
        if _digit_count(match.group(1)) < min_digits:
            continue
        _claim(match, _to_decimal(match.group(1)), "bare")

    yield from sorted(found, key=lambda literal: literal.start)


def extract_amount(
    text: Optional[str], allow_k: bool = True, min_digits: int = 1
) -> Optional[Decimal]:
    """Extract the most money-like amount from ``text``.

    Patterns are tried in priority order: ``$5,000.00`` style, ``2.5k``,
    ``5000 dollars`` and finally a bare number with at least ``min_digits``
    digits. The whole digit run is always captured, so ``$5000`` is 5000.
    """
    if not text or not isinstance(text, str):
        return None

    for match in _DOLLAR_RE.finditer(text):
        value = _to_decimal(match.group(1))
        if value is not None and match.group(2):
            value *= 1000
        if value is not None and value > 0:
            return value

    if allow_k:
        for match in _K_RE.finditer(text):
            value = _to_decimal(match.group(1))
            if value is not None and value > 0:
                return value * 1000

    for match in _WORD_CURRENCY_RE.finditer(text):
        value = _to_decimal(match.group(1))
        if value is not None and value > 0:
            return value

    for match in _BARE_RE.finditer(text):
        if _digit_count(match.group(1)) < min_digits:
            continue
        value = _to_decimal(match.group(1))
        if value is not None and value > 0:
            return value

    return None


def extract_all_amounts(text: Optional[str]) -> list[Decimal]:
    """Return every explicit money amount ($, k or word currency) in order of appearance."""
    return [
        literal.value
        for literal in iter_numeric_literals(text)
        if literal.is_money and literal.value > 0
    ]


def extract_percentage(text: Optional[str]) -> Optional[Decimal]:
    """Return a percentage as a fraction: ``25%`` and ``25 percent`` give ``0.25``."""
    if not text or not isinstance(text, str):
        return None

    for match in _PERCENT_RE.finditer(text):
        value = _to_decimal(match.group(1))
        if value is not None and 0 <= value <= 100:
            return value / 100

    match = _FRACTION_RE.search(text)
    if match:
        value = _to_decimal(match.group(1))
        if value is not None and 0 <= value <= 1:
            return value
    return None


def extract_card_reference(text: Optional[str]) -> Optional[str]:
    """Return a card identifier such as ``"chase sapphire"`` or ``"1234"``."""
    if not text or not isinstance(text, str):
        return None

    match = _CARD_ENDING_RE.search(text)
    if match:
        return match.group(1)

    match = _CARD_NAME_RE.search(text)
    if match:
        return _WHITESPACE_RE.sub(" ", match.group(1).lower()).strip()
    return None


def card_reference_span(text: str) -> Optional[tuple[int, int]]:
    """Character span of the card reference found by ``extract_card_reference``."""
    match = _CARD_ENDING_RE.search(text) or _CARD_NAME_RE.search(text)
    if match is None:
        return None
    return match.start(), match.end()


__all__ = [
    "NumericLiteral",
    "card_reference_span",
    "extract_all_amounts",
    "extract_amount",
    "extract_card_reference",
    "extract_percentage",
    "iter_numeric_literals",
    "normalize_text",
]
