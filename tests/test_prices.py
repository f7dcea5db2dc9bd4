"""
Tests for the price oracle and the CoinGecko client.
"""

from decimal import Decimal

import httpx
import pytest

from hellomix_settlement.errors import PriceUnavailableError, UpstreamError
from hellomix_settlement.prices import CoinGeckoClient, MemoryPriceCache, PriceOracle

from conftest import FakePriceClient


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestMemoryPriceCache:
    """TTL cache behaviour."""

    def test_expiry(self) -> None:
        clock = _Clock()
        cache = MemoryPriceCache(ttl_seconds=300, clock=clock)
        cache.set_many({"BTC": Decimal("45000")})

        clock.now += 299
        assert cache.get_many(["BTC"]) == {"BTC": Decimal("45000")}

        clock.now += 1
        assert cache.get_many(["BTC"]) == {}

    def test_last_writer_wins(self) -> None:
        cache = MemoryPriceCache()
        cache.set_many({"BTC": Decimal("1")})
        cache.set_many({"BTC": Decimal("2")})
        assert cache.get_many(["BTC"]) == {"BTC": Decimal("2")}


class TestCoinGeckoClient:
    """HTTP client against a mocked transport."""

    @pytest.mark.asyncio
    async def test_parses_prices_as_decimal(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = '{"bitcoin": {"usd": 45000.12}, "ethereum": {"usd": 3200.5}}'
            return httpx.Response(200, content=body, headers={"content-type": "application/json"})

        client = CoinGeckoClient(api_key="demo", transport=httpx.MockTransport(handler))
        prices = await client.fetch_prices(["BTC", "ETH", "SOL"])
        await client.close()

        assert prices == {"BTC": Decimal("45000.12"), "ETH": Decimal("3200.5")}
        assert seen[0].url.path.endswith("/simple/price")
        assert seen[0].url.params["vs_currencies"] == "usd"
        assert set(seen[0].url.params["ids"].split(",")) == {"bitcoin", "ethereum", "solana"}
        assert seen[0].headers["x-cg-demo-api-key"] == "demo"

    @pytest.mark.asyncio
    async def test_skips_invalid_entries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"bitcoin": {"usd": 0}, "ethereum": {"eur": 1}})

        client = CoinGeckoClient(transport=httpx.MockTransport(handler))
        assert await client.fetch_prices(["BTC", "ETH"]) == {}

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "rate limited"})

        client = CoinGeckoClient(transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_prices(["BTC"])
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_malformed_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        client = CoinGeckoClient(transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError):
            await client.fetch_prices(["BTC"])


class TestPriceOracle:
    """Cache, upstream and snapshot tiers."""

    @pytest.mark.asyncio
    async def test_fetches_then_serves_from_cache(self, db, price_client: FakePriceClient) -> None:
        oracle = PriceOracle(price_client, MemoryPriceCache(), db)

        first = await oracle.get_prices(["BTC", "ETH"])
        second = await oracle.get_prices(["BTC", "ETH"])

        assert first == second == {"BTC": Decimal("45000"), "ETH": Decimal("3200")}
        assert price_client.calls == 1

    @pytest.mark.asyncio
    async def test_successful_fetch_updates_snapshots(self, db, price_client: FakePriceClient) -> None:
        oracle = PriceOracle(price_client, MemoryPriceCache(), db)
        await oracle.get_prices()

        snapshots = db.get_price_snapshots()
        assert set(snapshots) == set(price_client.prices)
        assert snapshots["ETH"].price_usd == Decimal("3200")

    @pytest.mark.asyncio
    async def test_falls_back_to_snapshots(self, db, price_client: FakePriceClient) -> None:
        db.upsert_prices({"BTC": Decimal("44000"), "ETH": Decimal("3100")})
        price_client.fail = True
        oracle = PriceOracle(price_client, MemoryPriceCache(), db)

        prices = await oracle.get_prices(["BTC", "ETH"])

        assert prices == {"BTC": Decimal("44000"), "ETH": Decimal("3100")}

    @pytest.mark.asyncio
    async def test_unavailable_when_no_tier_resolves(self, db, price_client: FakePriceClient) -> None:
        price_client.fail = True
        oracle = PriceOracle(price_client, MemoryPriceCache(), db)

        with pytest.raises(PriceUnavailableError) as exc_info:
            await oracle.get_prices(["SOL"])
        assert exc_info.value.symbols == ["SOL"]

    @pytest.mark.asyncio
    async def test_partial_result_without_explicit_symbols(self, db) -> None:
        client = FakePriceClient({"BTC": Decimal("45000")})
        oracle = PriceOracle(client, MemoryPriceCache(), db)

        assert await oracle.get_prices() == {"BTC": Decimal("45000")}
        with pytest.raises(PriceUnavailableError):
            await oracle.get_prices(["BTC", "ETH"])

    @pytest.mark.asyncio
    async def test_convert_value(self, oracle: PriceOracle) -> None:
        value = await oracle.convert_value("BTC", "ETH", Decimal("1"))
        assert value == Decimal("45000") / Decimal("3200")

    @pytest.mark.asyncio
    async def test_convert_same_symbol_is_identity(self, db) -> None:
        client = FakePriceClient()
        client.fail = True
        oracle = PriceOracle(client, MemoryPriceCache(), db)

        assert await oracle.convert_value("BTC", "BTC", Decimal("0.01")) == Decimal("0.01")
        assert client.calls == 0

    @pytest.mark.asyncio
    async def test_get_price(self, oracle: PriceOracle) -> None:
        assert await oracle.get_price("SOL") == Decimal("100")
