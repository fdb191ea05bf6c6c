# Overview: Decimal helpers for amounts stored as NUMERIC(12, 2).

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """
    Coerce a user or DB value to a 2-place Decimal (half-up).

    Floats go through str() so 0.1 stays 0.10 instead of its binary expansion.
    Raises ValueError for anything that is not a finite number.
    """
    if value is None:
        raise ValueError("amount is required")
    if isinstance(value, bool):
        raise ValueError("amount must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError):
        raise ValueError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_zero(amount: Decimal) -> Decimal:
    return amount if amount > ZERO else ZERO
