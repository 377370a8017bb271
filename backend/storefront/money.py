# Overview: Minor-unit money helpers; every amount in the system is an integer of pence.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def to_pence(value) -> int:
    """
    Convert a major-unit amount (15.99, "15.99", Decimal) to integer pence.

    Rounds half-up to the nearest minor unit. Raises ValueError for values
    that are not numeric.
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be numeric")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValueError("Amount must be numeric")
    if not amount.is_finite():
        raise ValueError("Amount must be numeric")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(pence: int | None) -> float | None:
    """Render pence as a two-decimal major-unit number for JSON responses."""
    if pence is None:
        return None
    return float((Decimal(pence) / 100).quantize(Decimal("0.01")))


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_major(pence: int) -> str:
    """Two-decimal string of a pence amount, e.g. 1599 -> '15.99'."""
    return f"{Decimal(pence) / 100:.2f}"
