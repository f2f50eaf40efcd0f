"""
Amount handling — fixed-point only, never float.

XRP amounts are carried as integer drops (1 XRP = 1_000_000 drops),
the ledger's native minor unit. Human-facing input is parsed through
Decimal so "0.1" stays exactly 100_000 drops.

Second-ledger token amounts are integers in the token's smallest unit
(18 decimals by default, the ERC-20 convention).
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

DROPS_PER_XRP = 1_000_000

# XRP has six decimal places of precision.
XRP_DECIMALS = 6

# Total XRP supply cap in drops; anything above is malformed.
MAX_DROPS = 100_000_000_000 * DROPS_PER_XRP


def xrp_to_drops(value: Decimal | str | int) -> int:
    """Convert an XRP quantity to integer drops.

    Args:
        value: XRP amount as Decimal, decimal string, or int.

    Returns:
        Amount in drops.

    Raises:
        ValueError: If the value is not a finite positive number, has
            more than 6 decimal places, or exceeds the XRP supply.
    """
    if isinstance(value, float):
        raise ValueError("XRP amounts must not be floats")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"invalid XRP amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"invalid XRP amount: {value!r}")
    if amount <= 0:
        raise ValueError(f"XRP amount must be positive, got: {value!r}")

    drops = amount * DROPS_PER_XRP
    if drops != drops.to_integral_value():
        raise ValueError(
            f"XRP amount has more than {XRP_DECIMALS} decimal places: {value!r}"
        )
    if drops > MAX_DROPS:
        raise ValueError(f"XRP amount exceeds supply: {value!r}")
    return int(drops)


def drops_to_xrp(drops: int) -> Decimal:
    """Convert integer drops to an XRP Decimal (exact)."""
    return (Decimal(drops) / DROPS_PER_XRP).normalize()


def format_xrp(drops: int) -> str:
    """Render drops as a plain XRP decimal string ("5", "0.25")."""
    return format(drops_to_xrp(drops), "f")


def parse_native_amount(raw: Any) -> int | None:
    """Parse a ledger Amount field into drops.

    Native XRP amounts arrive as a decimal string of drops. Issued
    currency amounts arrive as a dict ({"currency", "issuer", "value"})
    and are not native.

    Returns:
        Drops as int, or None if the amount is non-native or malformed.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if not isinstance(raw, str) or not raw.isdigit():
        return None
    drops = int(raw)
    if drops > MAX_DROPS:
        return None
    return drops


def drops_to_token_units(drops: int, decimals: int = 18) -> int:
    """Scale drops to a second-ledger token amount with ``decimals`` places.

    One XRP maps to one whole token: drops carry 6 decimals, so the
    result is ``drops * 10 ** (decimals - 6)``.

    Raises:
        ValueError: If decimals < 6 (the conversion would lose drops).
    """
    if decimals < XRP_DECIMALS:
        raise ValueError(
            f"token decimals must be >= {XRP_DECIMALS}, got: {decimals}"
        )
    if drops < 0:
        raise ValueError(f"drops must be non-negative, got: {drops}")
    return drops * 10 ** (decimals - XRP_DECIMALS)
