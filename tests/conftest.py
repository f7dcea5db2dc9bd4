"""
Shared fixtures: a SQLite store in tmp_path plus in-process fakes for the
price API and the block explorer.
"""

import asyncio
from decimal import Decimal
from typing import Iterable, Optional

import pytest

from hellomix_settlement.db import ExchangeDatabase
from hellomix_settlement.errors import UpstreamError
from hellomix_settlement.ledger import ExchangeLedger
from hellomix_settlement.models import (
    CreateExchangeInput,
    OutputAddressInput,
    PaymentCheck,
    PaymentClassification,
)
from hellomix_settlement.prices import MemoryPriceCache, PriceOracle
from hellomix_settlement.settlement import SettlementOrchestrator
from hellomix_settlement.vault import AddressKeyVault

MASTER_KEY = "test-master-secret"
ETH_ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"
ETH_ADDRESS_2 = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"

DEFAULT_PRICES = {
    "BTC": Decimal("45000"),
    "ETH": Decimal("3200"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
    "ADA": Decimal("0.5"),
    "SOL": Decimal("100"),
    "MATIC": Decimal("0.8"),
}


class FakePriceClient:
    """Stands in for CoinGeckoClient."""

    def __init__(self, prices: Optional[dict[str, Decimal]] = None):
        self.prices = dict(DEFAULT_PRICES if prices is None else prices)
        self.fail = False
        self.calls = 0

    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        self.calls += 1
        if self.fail:
            raise UpstreamError("coingecko", "service unavailable", 503)
        return {s: self.prices[s] for s in symbols if s in self.prices}

    async def close(self) -> None:
        pass


class FakeObserver:
    """Stands in for ChainObserver. Balances are set by the test."""

    def __init__(self):
        self.confirmed_sats = 0
        self.unconfirmed_sats = 0
        self.txid = "ab" * 32
        self.errors: list[Exception] = []
        self.delay = 0.0
        self.calls = 0

    async def classify_payment(self, address: str, expected_sats: int) -> PaymentCheck:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)

        if self.confirmed_sats >= expected_sats:
            classification = PaymentClassification.CONFIRMED
        elif self.confirmed_sats + self.unconfirmed_sats >= expected_sats:
            classification = PaymentClassification.UNCONFIRMED
        else:
            classification = PaymentClassification.PENDING

        check = PaymentCheck(
            address=address,
            expected_sats=expected_sats,
            confirmed_sats=self.confirmed_sats,
            unconfirmed_sats=self.unconfirmed_sats,
            total_received_sats=self.confirmed_sats + self.unconfirmed_sats,
            classification=classification,
        )
        if classification is not PaymentClassification.PENDING:
            check.txid = self.txid
            check.confirmations = 1 if classification is PaymentClassification.CONFIRMED else 0
        return check

    async def close(self) -> None:
        pass


def eth_request(btc_amount: str = "0.01", outputs: Optional[list[tuple[str, str]]] = None) -> CreateExchangeInput:
    outputs = outputs or [(ETH_ADDRESS, "100")]
    return CreateExchangeInput(
        btc_amount=Decimal(btc_amount),
        output_currency="ETH",
        output_addresses=[OutputAddressInput(address=a, percentage=Decimal(p)) for a, p in outputs],
    )


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    database = ExchangeDatabase(f"sqlite:///{tmp_path / 'hellomix.db'}")
    yield database
    database.close()


@pytest.fixture
def vault(db) -> AddressKeyVault:
    return AddressKeyVault(db, MASTER_KEY)


@pytest.fixture
def price_client() -> FakePriceClient:
    return FakePriceClient()


@pytest.fixture
def oracle(db, price_client) -> PriceOracle:
    return PriceOracle(price_client, MemoryPriceCache(), db)


@pytest.fixture
def observer() -> FakeObserver:
    return FakeObserver()


@pytest.fixture
def orchestrator(db, observer, oracle) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        db,
        observer,
        oracle,
        poll_interval_seconds=0.01,
        watch_window_seconds=5.0,
        scheduler_tick_seconds=0.01,
    )


@pytest.fixture
def ledger(db, vault, oracle, orchestrator) -> ExchangeLedger:
    return ExchangeLedger(db, vault, oracle, scheduler=orchestrator)
