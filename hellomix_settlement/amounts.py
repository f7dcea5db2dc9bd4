"""
Fixed-point helpers for BTC and asset amounts.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

# Constants for BTC to satoshis conversion
SATS_PER_BTC = Decimal("100000000")
EIGHT_PLACES = Decimal("0.00000001")


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """
    Coerce a numeric value to Decimal without binary float drift.

    Floats are converted via their shortest repr, so 0.1 becomes
    Decimal("0.1") rather than 0.1000000000000000055511151231257827.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a valid amount")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {value!r}") from e


def btc_to_sats(value: Union[int, float, str, Decimal]) -> int:
    """
    Convert BTC value to satoshis with exact precision.

    Examples:
        >>> btc_to_sats(0.1)
        10000000
        >>> btc_to_sats("0.12345678")
        12345678
    """
    sats = to_decimal(value) * SATS_PER_BTC

    # Ensure exact integer (no fractional satoshis)
    if sats != sats.to_integral_value():
        raise ValueError(f"BTC value {value} results in fractional satoshis: {sats}")

    return int(sats)


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to BTC, exact to 8 places."""
    return (Decimal(sats) / SATS_PER_BTC).quantize(EIGHT_PLACES)


def quantize_amount(value: Decimal) -> Decimal:
    """Truncate to 8 decimal places. Never rounds up a payout."""
    return value.quantize(EIGHT_PLACES, rounding=ROUND_DOWN)


def has_at_most_eight_places(value: Decimal) -> bool:
    exponent = value.normalize().as_tuple().exponent
    return not isinstance(exponent, int) or exponent >= -8
