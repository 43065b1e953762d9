"""
Tests for the price sources.
"""

import pytest
from unittest.mock import AsyncMock, patch

from conftest import no_sleep
from position_tracker.sources.base import FallbackPriceSource, StaticPriceSource
from position_tracker.sources.coingecko_price_source import CoinGeckoPriceSource
from position_tracker.utils.api_resilience import RateLimitedError, ResilienceWrapper


@pytest.fixture
def coingecko(clock):
    """CoinGecko source with instant retries and a fake clock"""
    return CoinGeckoPriceSource(
        cache_ttl=60,
        resilience=ResilienceWrapper(max_retries=1, base_delay=0, jitter=0, sleep=no_sleep),
        clock=clock
    )


@pytest.mark.asyncio
async def test_static_source_is_case_insensitive():
    source = StaticPriceSource({"weth": 4000})

    assert await source.get_price("WETH") == 4000
    assert await source.get_price("UNKNOWN") == 0.0


@pytest.mark.asyncio
async def test_fallback_source_prefers_live_prices():
    source = FallbackPriceSource(StaticPriceSource({"ETH": 3000}), {"ETH": 4500, "AERO": 1.13})

    assert await source.get_price("ETH") == 3000
    assert await source.get_price("AERO") == 1.13
    assert await source.get_price("NEWTOKEN") == 1.0


@pytest.mark.asyncio
async def test_fallback_source_survives_live_failures():
    live = StaticPriceSource()
    live.get_price = AsyncMock(side_effect=RuntimeError("down"))
    live.get_prices = AsyncMock(side_effect=RuntimeError("down"))
    source = FallbackPriceSource(live, {"ETH": 4500})

    assert await source.get_price("ETH") == 4500
    assert await source.get_prices(["ETH", "USDC"]) == {"ETH": 4500, "USDC": 1.0}


@pytest.mark.asyncio
async def test_fallback_source_without_live_source():
    source = FallbackPriceSource(None, {"usdc": 1.0}, default_price=0.0)

    assert await source.get_prices(["USDC", "XYZ"]) == {"USDC": 1.0, "XYZ": 0.0}


@pytest.mark.asyncio
async def test_coingecko_maps_symbols_and_caches(coingecko, clock):
    request = AsyncMock(return_value={"ethereum": {"usd": 4500.0}, "usd-coin": {"usd": 1.0}})

    with patch.object(coingecko, "_request", request):
        prices = await coingecko.get_prices(["ETH", "USDC", "NOTACOIN"])
        assert prices == {"ETH": 4500.0, "USDC": 1.0}
        request.assert_awaited_once_with(["ethereum", "usd-coin"])

        assert await coingecko.get_price("ETH") == 4500.0
        assert request.await_count == 1

        clock.advance(61)
        await coingecko.get_price("ETH")
        assert request.await_count == 2

        coingecko.clear_cache()
        await coingecko.get_price("ETH")
        assert request.await_count == 3


@pytest.mark.asyncio
async def test_coingecko_rate_limit_returns_empty(coingecko):
    request = AsyncMock(side_effect=RateLimitedError("CoinGecko rate limit"))

    with patch.object(coingecko, "_request", request):
        assert await coingecko.get_prices(["ETH"]) == {}

    assert request.await_count == 2


@pytest.mark.asyncio
async def test_coingecko_behind_fallback(coingecko):
    source = FallbackPriceSource(coingecko, {"ETH": 4500, "AERO": 1.13})

    with patch.object(coingecko, "_request", AsyncMock(return_value={"ethereum": {"usd": 3900}})):
        assert await source.get_prices(["ETH", "AERO"]) == {"ETH": 3900, "AERO": 1.13}


@pytest.mark.asyncio
async def test_coingecko_close_without_session(coingecko):
    await coingecko.close()

    assert coingecko.session is None
