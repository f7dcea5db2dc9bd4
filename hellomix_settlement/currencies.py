"""
Supported output assets and their fee schedule.
"""

from dataclasses import dataclass
from decimal import Decimal

from .amounts import quantize_amount

DEFAULT_FEE_RATE = Decimal("0.005")
BTC = "BTC"


@dataclass(frozen=True)
class SupportedCurrency:
    """One row of the supported-asset table."""

    symbol: str
    name: str
    coingecko_id: str
    min_amount: Decimal
    max_amount: Decimal
    fee_rate: Decimal = DEFAULT_FEE_RATE


SUPPORTED_CURRENCIES: dict[str, SupportedCurrency] = {
    c.symbol: c
    for c in (
        SupportedCurrency("BTC", "Bitcoin", "bitcoin", Decimal("0.001"), Decimal("10"), Decimal("0.002")),
        SupportedCurrency("ETH", "Ethereum", "ethereum", Decimal("0.01"), Decimal("100")),
        SupportedCurrency("USDT", "Tether", "tether", Decimal("10"), Decimal("50000")),
        SupportedCurrency("USDC", "USD Coin", "usd-coin", Decimal("10"), Decimal("50000")),
        SupportedCurrency("ADA", "Cardano", "cardano", Decimal("100"), Decimal("500000")),
        SupportedCurrency("SOL", "Solana", "solana", Decimal("1"), Decimal("10000")),
        SupportedCurrency("MATIC", "Polygon", "matic-network", Decimal("100"), Decimal("1000000")),
    )
}

SUPPORTED_SYMBOLS: tuple[str, ...] = tuple(SUPPORTED_CURRENCIES)


def is_supported(symbol: str) -> bool:
    return symbol in SUPPORTED_CURRENCIES


def get_currency(symbol: str) -> SupportedCurrency:
    """Look up a supported asset. Raises KeyError for unknown symbols."""
    return SUPPORTED_CURRENCIES[symbol]


def fee_rate_for(symbol: str) -> Decimal:
    """Fee rate charged when paying out in `symbol` (0.2% BTC, 0.5% otherwise)."""
    currency = SUPPORTED_CURRENCIES.get(symbol)
    return currency.fee_rate if currency else DEFAULT_FEE_RATE


def calculate_fee(btc_amount: Decimal, symbol: str) -> Decimal:
    """Fee in BTC for an exchange of `btc_amount` into `symbol`."""
    return quantize_amount(btc_amount * fee_rate_for(symbol))
