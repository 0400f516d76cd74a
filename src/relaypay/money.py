"""Token amount conversion helpers using exact decimal arithmetic."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from .errors import InvalidInputError


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse a human amount (``5``, ``"4.91"``, ``4.91``) without float drift."""
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid amount: {value!r}")
    try:
        dec = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidInputError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise InvalidInputError(f"Invalid amount: {value!r}")
    return dec


def to_base_units(value: Decimal | float | int | str, decimals: int) -> int:
    """Convert a human amount to integer token base units. Sub-unit precision is rejected."""
    dec = to_decimal(value)
    if dec <= 0:
        raise InvalidInputError(f"Amount must be positive: {value}")
    scaled = dec.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidInputError(f"Amount {value} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(value: int, decimals: int) -> Decimal:
    """Convert integer base units to a Decimal token amount."""
    return Decimal(int(value)).scaleb(-decimals)


def format_usd(value: Decimal | float | int) -> str:
    """Format an amount as a dollar string."""
    return f"${Decimal(str(value)):.2f}"
