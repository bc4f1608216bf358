from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value) -> Decimal:  # noqa: ANN001
    """Exact decimal for a stored REAL/str amount; blanks and junk count as zero."""
    if value in (None, ""):
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return ZERO
    try:
        # str() keeps the shortest repr of a float (0.1 -> "0.1", not its binary expansion).
        parsed = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return ZERO
    if not parsed.is_finite():
        return ZERO
    return parsed


def round_money(value) -> Decimal:  # noqa: ANN001
    """Round half away from zero to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable) -> Decimal:
    """Sum the raw amounts first, round once at the end."""
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round_money(total)


def line_total(quantity, price) -> float:  # noqa: ANN001
    return float(round_money(to_decimal(quantity) * to_decimal(price)))
