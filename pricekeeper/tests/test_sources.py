"""Unit tests for market data sources (with a mocked HTTP transport)."""

from decimal import Decimal

import httpx
import pytest

from pricekeeper.src.sources import (
    BinanceSource,
    CoinGeckoSource,
    MarketDataSource,
    OkxSource,
    get_available_sources,
    get_source,
)


@pytest.fixture(autouse=True)
def reset_shared_client():
    yield
    MarketDataSource.set_shared_client(None)


def use_handler(handler) -> list[httpx.Request]:
    """Route the shared client through ``handler`` and record requests."""
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    MarketDataSource.set_shared_client(
        httpx.AsyncClient(transport=httpx.MockTransport(record))
    )
    return seen


class TestRegistry:
    """Test the source registry."""

    def test_available_sources(self) -> None:
        assert get_available_sources() == ["binance", "coingecko", "okx"]

    def test_get_source(self) -> None:
        source = get_source("okx", timeout=3.0)
        assert isinstance(source, OkxSource)
        assert source.timeout == 3.0

    def test_unknown_source(self) -> None:
        with pytest.raises(ValueError, match="Unknown source 'kraken'"):
            get_source("kraken")


class TestOkxSource:
    """Test the OKX adapter."""

    @pytest.mark.asyncio
    async def test_fetch_quote(self) -> None:
        seen = use_handler(
            lambda request: httpx.Response(
                200,
                json={
                    "code": "0",
                    "msg": "",
                    "data": [{"last": "142.37", "vol24h": "81234.5", "ts": "1700000000123"}],
                },
            )
        )

        quote = await OkxSource().fetch_quote("sol", "usdc")

        assert quote.source == "okx"
        assert quote.price == Decimal("142.37")
        assert quote.volume == Decimal("81234.5")
        assert quote.timestamp == 1700000000.123
        assert seen[0].url.params["instId"] == "SOL-USDC"

    @pytest.mark.asyncio
    async def test_api_error(self) -> None:
        use_handler(lambda request: httpx.Response(200, json={"code": "51001", "msg": "bad", "data": []}))
        assert await OkxSource().fetch_quote("SOL", "USDC") is None

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        use_handler(lambda request: httpx.Response(503, text="unavailable"))
        assert await OkxSource().fetch_quote("SOL", "USDC") is None


class TestBinanceSource:
    """Test the Binance adapter."""

    @pytest.mark.asyncio
    async def test_fetch_quote(self) -> None:
        seen = use_handler(
            lambda request: httpx.Response(
                200,
                json={"lastPrice": "142.40000000", "volume": "1000.5", "closeTime": 1700000001000},
            )
        )

        quote = await BinanceSource().fetch_quote("SOL", "USDC")

        assert quote.price == Decimal("142.4")
        assert quote.timestamp == 1700000001.0
        assert seen[0].url.params["symbol"] == "SOLUSDC"

    @pytest.mark.asyncio
    async def test_unlisted_symbol(self) -> None:
        use_handler(lambda request: httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."}))
        assert await BinanceSource().fetch_quote("FOO", "BAR") is None

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        use_handler(fail)
        assert await BinanceSource().fetch_quote("SOL", "USDC") is None


class TestCoinGeckoSource:
    """Test the CoinGecko adapter."""

    @pytest.mark.asyncio
    async def test_fetch_quote(self) -> None:
        seen = use_handler(
            lambda request: httpx.Response(
                200,
                json={
                    "solana": {
                        "usdc": 142.31,
                        "usdc_24h_vol": 5000000.25,
                        "last_updated_at": 1700000002,
                    }
                },
            )
        )

        quote = await CoinGeckoSource().fetch_quote("SOL", "USDC")

        assert quote.price == Decimal("142.31")
        assert quote.volume == Decimal("5000000.25")
        assert quote.timestamp == 1700000002.0
        assert seen[0].url.host == "api.coingecko.com"
        assert seen[0].url.params["ids"] == "solana"

    @pytest.mark.asyncio
    async def test_unknown_coin(self) -> None:
        seen = use_handler(lambda request: httpx.Response(200, json={}))
        assert await CoinGeckoSource().fetch_quote("XYZ", "USD") is None
        assert seen == []

    @pytest.mark.asyncio
    async def test_demo_key(self) -> None:
        seen = use_handler(
            lambda request: httpx.Response(200, json={"solana": {"usdc": 1.0}})
        )

        source = CoinGeckoSource(api_key="demo:CG-abc")
        await source.fetch_quote("SOL", "USDC")

        assert source.base_url == CoinGeckoSource.BASE_URL_FREE
        assert seen[0].headers["x-cg-demo-api-key"] == "CG-abc"

    def test_pro_key(self) -> None:
        source = CoinGeckoSource(api_key="pro-key")
        assert source.base_url == CoinGeckoSource.BASE_URL_PRO
        assert source.api_header == ("x-cg-pro-api-key", "pro-key")

    @pytest.mark.asyncio
    async def test_supports_pair(self) -> None:
        source = CoinGeckoSource()
        assert await source.supports_pair("SOL", "USDC")
        assert not await source.supports_pair("XYZ", "USDC")
