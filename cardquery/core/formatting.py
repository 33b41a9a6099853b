"""Helper functions for formatting numbers, currencies and rates."""

from __future__ import annotations
from decimal import Decimal

_UNITS = [
    (Decimal("1e12"), "trillion", "T"),
    (Decimal("1e9"), "billion", "B"),
    (Decimal("1e6"), "million", "M"),
    (Decimal("1e3"), "thousand", "k"),
]

def humanize_number(
    value: int | float | Decimal,
    short: bool = False,
    decimals: int = 1
) -> str:
    """Format a number with human-readable units.

    Args:
        value: The number to format
        short: If True, use short suffixes (k, M, B, T) instead of full words
        decimals: Number of decimal places to show
    """
    d = Decimal(str(value))
    sign = "-" if d < 0 else ""
    d = abs(d)

    def _format_plain_number() -> str:
        if d == d.to_integral():
            return f"{sign}{int(d):,}"
        return f"{sign}{d:,.{decimals}f}"

    if d < Decimal("1e4"):
        return _format_plain_number()

    for threshold, long_name, short_name in _UNITS:
        if d >= threshold:
            if short:
                return f"{sign}{(d / threshold):.{decimals}f}{short_name}"
            return f"{sign}{(d / threshold):.{decimals}f} {long_name}"

    return _format_plain_number()

def humanize_currency(
    value: int | float | Decimal,
    symbol: str = "$",
    short: bool = False,
    decimals: int = 2
) -> str:
    """Format a currency value, e.g. ``$4,250.50`` or ``$12.5k`` when short."""
    if short:
        return f"{symbol}{humanize_number(value, short=True, decimals=1)}"
    d = Decimal(str(value))
    sign = "-" if d < 0 else ""
    return f"{sign}{symbol}{abs(d):,.{decimals}f}"

def format_percent(value: int | float | Decimal, *, ratio: bool = False, decimals: int = 0) -> str:
    """Render a rate; ``ratio=True`` means 0.72 reads as 72%."""
    d = Decimal(str(value))
    if ratio:
        d = d * 100
    return f"{d:.{decimals}f}%"
