"""
HelloMix Settlement Core

Issues one-time Bitcoin deposit addresses, watches them for payment and
settles each exchange into another supported asset, split across up to
seven destination addresses.

Usage:
    # Create an exchange request
    hellomix-settlement create 0.01 ETH --to 0xabc...:100

    # Run the settlement scheduler
    hellomix-settlement run

    # Poll due requests once (for testing)
    hellomix-settlement run --once
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .db import ExchangeDatabase
from .errors import (
    ExchangeError,
    NotFoundError,
    PriceUnavailableError,
    UpstreamError,
    ValidationError,
)
from .explorer import ChainObserver
from .ledger import ExchangeLedger
from .prices import CoinGeckoClient, MemoryPriceCache, PriceOracle
from .service import ExchangeService
from .settlement import SettlementOrchestrator
from .vault import AddressKeyVault

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "ExchangeDatabase",
    "ExchangeError",
    "NotFoundError",
    "PriceUnavailableError",
    "UpstreamError",
    "ValidationError",
    "ChainObserver",
    "ExchangeLedger",
    "CoinGeckoClient",
    "MemoryPriceCache",
    "PriceOracle",
    "ExchangeService",
    "SettlementOrchestrator",
    "AddressKeyVault",
]
