"""Money helpers for the store.

Internal storage unit: Decimal with two places (e.g. Decimal("34.99")).
Payment processor unit: minor units / cents (int, e.g. 3499).

Every arithmetic step in pricing goes through ``round_money`` so repeated
calculations never drift.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Union

# ─── constants ───────────────────────────────────────────────────────────────

CENTS_PER_UNIT: int = 100
TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


# ─── conversion helpers ───────────────────────────────────────────────────────


def to_decimal(value: Number | None) -> Decimal:
    """Coerce a stored or user-supplied amount to Decimal (None → 0)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise in
    return Decimal(str(value))


def round_money(value: Number | None) -> Decimal:
    """Round half-up to two places."""
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def floor_money(value: Number | None) -> Decimal:
    """Round down to two places (used where over-discounting must be avoided)."""
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_FLOOR)


def to_minor_units(value: Number) -> int:
    """Convert an amount to cents (round half-up). 34.99 → 3499."""
    return int((round_money(value) * CENTS_PER_UNIT).to_integral_value(ROUND_HALF_UP))
