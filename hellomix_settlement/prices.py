"""
USD prices for the supported asset set.

Resolution order: in-memory cache (short TTL), then the CoinGecko API, then
the last persisted snapshot per symbol.
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Protocol

import httpx
import structlog

from .currencies import SUPPORTED_CURRENCIES, SUPPORTED_SYMBOLS
from .errors import PersistenceError, PriceUnavailableError, UpstreamError
from .models import PriceSnapshot

logger = structlog.get_logger()


class PriceCache(Protocol):
    """Short-lived price cache shared by all callers."""

    def get_many(self, symbols: Iterable[str]) -> dict[str, Decimal]: ...

    def set_many(self, prices: dict[str, Decimal]) -> None: ...


class PriceSnapshotStore(Protocol):
    """Persistent last-known price per symbol."""

    def upsert_prices(self, prices: dict[str, Decimal]) -> None: ...

    def get_price_snapshots(self, symbols: Optional[Iterable[str]] = None) -> dict[str, PriceSnapshot]: ...


class MemoryPriceCache:
    """Process-local TTL cache. Last writer wins."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Decimal, float]] = {}

    def get_many(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        now = self._clock()
        found = {}
        for symbol in symbols:
            entry = self._entries.get(symbol)
            if entry is None:
                continue
            price, stored_at = entry
            if now - stored_at < self.ttl_seconds:
                found[symbol] = price
        return found

    def set_many(self, prices: dict[str, Decimal]) -> None:
        now = self._clock()
        for symbol, price in prices.items():
            self._entries[symbol] = (price, now)

    def clear(self) -> None:
        self._entries.clear()


class CoinGeckoClient:
    """Async client for the CoinGecko simple price endpoint."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"accept": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        """
        Fetch USD prices for the given symbols.

        Response shape: {"bitcoin": {"usd": 45000.0}, ...}
        """
        id_to_symbols: dict[str, list[str]] = {}
        for symbol in symbols:
            currency = SUPPORTED_CURRENCIES.get(symbol)
            if currency is not None:
                id_to_symbols.setdefault(currency.coingecko_id, []).append(symbol)

        try:
            response = await self.client.get(
                "/simple/price",
                params={"ids": ",".join(id_to_symbols), "vs_currencies": "usd"},
            )
            response.raise_for_status()
            payload = response.json(parse_float=Decimal)
        except httpx.HTTPStatusError as e:
            raise UpstreamError("coingecko", str(e), e.response.status_code) from e
        except httpx.HTTPError as e:
            raise UpstreamError("coingecko", str(e)) from e
        except ValueError as e:
            raise UpstreamError("coingecko", f"malformed response: {e}") from e

        if not isinstance(payload, dict):
            raise UpstreamError("coingecko", "malformed response: expected an object")

        prices: dict[str, Decimal] = {}
        for coin_id, coin_symbols in id_to_symbols.items():
            entry = payload.get(coin_id)
            if not isinstance(entry, dict) or "usd" not in entry:
                continue
            try:
                price = Decimal(str(entry["usd"]))
            except InvalidOperation:
                continue
            if not price.is_finite() or price <= 0:
                continue
            for symbol in coin_symbols:
                prices[symbol] = price

        return prices

    async def close(self) -> None:
        await self.client.aclose()


class PriceOracle:
    """
    Serves USD prices with cache, upstream and snapshot fallback.
    """

    def __init__(
        self,
        client: CoinGeckoClient,
        cache: PriceCache,
        snapshots: PriceSnapshotStore,
        supported: Iterable[str] = SUPPORTED_SYMBOLS,
    ):
        self.client = client
        self.cache = cache
        self.snapshots = snapshots
        self.supported = tuple(supported)

    async def get_prices(self, symbols: Optional[Iterable[str]] = None) -> dict[str, Decimal]:
        """
        Resolve USD prices.

        With explicit symbols, every one of them must resolve or
        PriceUnavailableError is raised. Without, the full supported set is
        attempted and whatever resolves is returned.
        """
        required = tuple(symbols) if symbols is not None else self.supported
        strict = symbols is not None

        cached = self.cache.get_many(required)
        if len(cached) == len(set(required)):
            logger.debug("prices_from_cache", symbols=list(required))
            return cached

        try:
            fetched = await self.client.fetch_prices(set(self.supported) | set(required))
        except UpstreamError as e:
            logger.warning("price_fetch_failed", error=str(e))
            fetched = {}
        else:
            if fetched:
                self.cache.set_many(fetched)
                try:
                    await asyncio.to_thread(self.snapshots.upsert_prices, fetched)
                except PersistenceError as e:
                    logger.warning("price_snapshot_store_failed", error=str(e))
                logger.info("prices_fetched", count=len(fetched))

        prices = {s: fetched[s] for s in required if s in fetched}
        missing = [s for s in required if s not in prices]
        if missing:
            prices.update(await self._from_snapshots(missing))

        missing = [s for s in required if s not in prices]
        if (strict and missing) or not prices:
            raise PriceUnavailableError(missing or list(required))
        return prices

    async def _from_snapshots(self, symbols: list[str]) -> dict[str, Decimal]:
        try:
            snapshots = await asyncio.to_thread(self.snapshots.get_price_snapshots, symbols)
        except PersistenceError as e:
            logger.error("price_snapshot_read_failed", error=str(e))
            return {}
        if snapshots:
            logger.info(
                "prices_from_snapshot",
                symbols=sorted(snapshots),
                oldest=min(s.last_updated for s in snapshots.values()).isoformat(),
            )
        return {symbol: snap.price_usd for symbol, snap in snapshots.items()}

    async def get_price(self, symbol: str) -> Decimal:
        prices = await self.get_prices([symbol])
        return prices[symbol]

    async def convert_value(self, from_symbol: str, to_symbol: str, amount: Decimal) -> Decimal:
        """
        Convert `amount` of `from_symbol` into `to_symbol` via USD.

        Same-symbol conversion returns `amount` unchanged.
        """
        if from_symbol == to_symbol:
            return amount

        prices = await self.get_prices([from_symbol, to_symbol])
        return amount * prices[from_symbol] / prices[to_symbol]

    async def close(self) -> None:
        await self.client.close()
