"""Minor/major currency unit conversion.

Internal arithmetic is done on integer minor units (millimes, 1000 per dinar).
Every amount written to the database goes through :func:`to_major_units`
exactly once, right before the write. Rounding is ROUND_HALF_UP, which on
:class:`~decimal.Decimal` rounds halves away from zero.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

MINOR_PER_MAJOR = 1000
MAJOR_QUANTUM = Decimal("0.001")


def to_major_units(minor_amount: int) -> Decimal:
    """Convert integer minor units to a 3-decimal major amount (7000 -> Decimal('7.000'))."""
    if isinstance(minor_amount, bool) or not isinstance(minor_amount, int):
        raise TypeError(f"minor amount must be an int, got {type(minor_amount).__name__}")
    return quantize_major(Decimal(minor_amount) / MINOR_PER_MAJOR)


def to_minor_units(major_amount) -> int:
    """Convert a major amount (Decimal, str, int or float) to integer minor units."""
    value = major_amount if isinstance(major_amount, Decimal) else Decimal(str(major_amount))
    return int((value * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quantize_major(value: Decimal) -> Decimal:
    return value.quantize(MAJOR_QUANTUM, rounding=ROUND_HALF_UP)


class MajorTotals(NamedTuple):
    subtotal: Decimal
    shipping: Decimal
    fee: Decimal
    discount: Decimal
    total: Decimal


def convert_totals(subtotal: int, shipping: int, fee: int, discount: int) -> MajorTotals:
    """Convert each component, then rebuild the total from the converted parts.

    The total is floored at zero so a discount larger than the order never
    produces a negative charge.
    """
    sub = to_major_units(subtotal)
    ship = to_major_units(shipping)
    fee_major = to_major_units(fee)
    disc = to_major_units(discount)
    total = max(Decimal("0.000"), quantize_major(sub + ship + fee_major - disc))
    return MajorTotals(sub, ship, fee_major, disc, total)
