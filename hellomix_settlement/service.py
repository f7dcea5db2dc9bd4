"""
Wires the settlement core together from Settings.
"""

from typing import Optional

import structlog

from .config import Settings
from .db import ExchangeDatabase
from .errors import ConfigurationError
from .explorer import ChainObserver
from .ledger import ExchangeLedger
from .prices import CoinGeckoClient, MemoryPriceCache, PriceOracle
from .settlement import SettlementOrchestrator
from .vault import AddressKeyVault

logger = structlog.get_logger()


class ExchangeService:
    """
    The settlement core:
    1. Issues deposit addresses and accepts exchange requests
    2. Watches deposits and settles requests in the background
    3. Serves prices and payment status
    """

    def __init__(
        self,
        settings: Settings,
        database: Optional[ExchangeDatabase] = None,
        observer: Optional[ChainObserver] = None,
        oracle: Optional[PriceOracle] = None,
        vault: Optional[AddressKeyVault] = None,
    ):
        self.settings = settings
        network = settings.network

        # Use database URL directly (supports SQLite and PostgreSQL)
        self.db = database or ExchangeDatabase(settings.database_url)

        self.observer = observer or ChainObserver(
            settings.resolved_explorer_url,
            timeout=settings.http_timeout_seconds,
        )

        self.oracle = oracle or PriceOracle(
            client=CoinGeckoClient(
                settings.coingecko_api_url,
                api_key=settings.coingecko_api_key,
                timeout=settings.http_timeout_seconds,
            ),
            cache=MemoryPriceCache(settings.price_cache_ttl_seconds),
            snapshots=self.db,
        )

        if vault is None:
            if not settings.wallet_master_key:
                raise ConfigurationError("WALLET_MASTER_KEY must be set")
            vault = AddressKeyVault(
                self.db,
                settings.wallet_master_key,
                network=network,
                address_type=settings.deposit_address_type,
            )
        self.vault = vault

        self.orchestrator = SettlementOrchestrator(
            self.db,
            self.observer,
            self.oracle,
            poll_interval_seconds=settings.poll_interval_seconds,
            watch_window_seconds=settings.watch_window_seconds,
            scheduler_tick_seconds=settings.scheduler_tick_seconds,
        )

        self.ledger = ExchangeLedger(
            self.db,
            self.vault,
            self.oracle,
            scheduler=self.orchestrator,
            network=network,
            percentage_tolerance=settings.percentage_tolerance,
            max_output_addresses=settings.max_output_addresses,
        )

        logger.info(
            "service_initialized",
            network=network,
            address_type=settings.deposit_address_type,
            explorer_api=settings.resolved_explorer_url,
            poll_interval=settings.poll_interval_seconds,
            watch_window=settings.watch_window_seconds,
        )

    async def aclose(self) -> None:
        """Close HTTP clients and the database engine."""
        self.orchestrator.stop()
        await self.observer.close()
        await self.oracle.close()
        self.db.close()
