"""
Tests for the PositionAggregator fan-out, isolation and reporting.
"""

import asyncio

import pytest

from conftest import StaticSource, FailingSource, make_position, no_sleep
from position_tracker.aggregation.aggregator import PositionAggregator, SourceStatus
from position_tracker.sources.base import PositionSource
from position_tracker.utils.api_resilience import (
    CircuitBreakerRegistry,
    ExpectedSourceError,
    RateLimitedError,
    ResilienceWrapper,
)


class SlowSource(PositionSource):
    """Source that never answers in time"""

    def __init__(self, name: str, delay: float = 10.0):
        self.source_name = name
        self.delay = delay

    async def fetch_positions(self, wallet_address):
        await asyncio.sleep(self.delay)
        return [make_position(f"{self.source_name}-late")]


@pytest.fixture
def breakers(clock, state_manager):
    return CircuitBreakerRegistry(max_failures=5, reset_window=300, clock=clock, state_manager=state_manager)


@pytest.fixture
def aggregator(breakers, state_manager, clock):
    """Aggregator with instant retries"""
    return PositionAggregator(
        resilience=ResilienceWrapper(max_retries=2, base_delay=0, jitter=0, sleep=no_sleep),
        circuit_breakers=breakers,
        state_manager=state_manager,
        source_timeout=1.0,
        deadline=5.0,
        clock=clock
    )


@pytest.mark.asyncio
async def test_failing_source_does_not_affect_siblings(aggregator):
    healthy = StaticSource("aave", [make_position("aave-usdc", 250)])
    broken = FailingSource("moonwell", ExpectedSourceError("execution reverted"))

    result = await aggregator.aggregate_with_report("0xabc", [healthy, broken])

    assert [p.id for p in result.positions] == ["aave-usdc"]
    assert result.total_value == 250
    assert result.get_report("aave").status == SourceStatus.OK
    assert result.get_report("moonwell").status == SourceStatus.FALLBACK
    assert result.degraded_sources == ["moonwell"]


@pytest.mark.asyncio
async def test_unexpected_error_reports_failed(aggregator, breakers, state_manager):
    broken = FailingSource("beefy", KeyError("vaults"))

    positions = await aggregator.aggregate("0xabc", [broken, StaticSource("lido", [make_position("lido-steth")])])

    assert [p.id for p in positions] == ["lido-steth"]
    assert broken.calls == 3
    assert breakers.get_status("beefy")["failures"] == 1
    assert state_manager.get_events(component="aggregator", level="ERROR")


@pytest.mark.asyncio
async def test_rate_limited_source_falls_back_without_tripping_breaker(aggregator, breakers):
    throttled = FailingSource("coingecko-positions", RateLimitedError("429 too many requests"))

    result = await aggregator.aggregate_with_report("0xabc", [throttled])

    report = result.get_report("coingecko-positions")
    assert report.status == SourceStatus.FALLBACK
    assert report.attempts == 3
    assert breakers.get_status("coingecko-positions")["failures"] == 0


@pytest.mark.asyncio
async def test_open_circuit_skips_source(aggregator, breakers):
    source = StaticSource("aerodrome", [make_position("aerodrome-lp")])
    for _ in range(5):
        breakers.record_failure("aerodrome")

    result = await aggregator.aggregate_with_report("0xabc", [source])

    assert result.positions == []
    assert source.calls == 0
    assert result.get_report("aerodrome").status == SourceStatus.CIRCUIT_OPEN


@pytest.mark.asyncio
async def test_repeated_failures_open_the_circuit(aggregator):
    broken = FailingSource("morpho", ExpectedSourceError("could not decode result data"))

    for _ in range(5):
        await aggregator.aggregate("0xabc", [broken])
    result = await aggregator.aggregate_with_report("0xabc", [broken])

    assert broken.calls == 5
    assert result.get_report("morpho").status == SourceStatus.CIRCUIT_OPEN


@pytest.mark.asyncio
async def test_per_source_timeout_reports_timed_out(aggregator):
    aggregator.source_timeout = 0.01

    result = await aggregator.aggregate_with_report("0xabc", [SlowSource("thena")])

    assert result.positions == []
    assert result.get_report("thena").status == SourceStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_deadline_cancels_hung_source(aggregator, breakers):
    aggregator.source_timeout = 10.0
    aggregator.deadline = 0.05
    fast = StaticSource("aave", [make_position("aave-usdc")])

    result = await aggregator.aggregate_with_report("0xabc", [SlowSource("gammaswap"), fast])

    assert [p.id for p in result.positions] == ["aave-usdc"]
    assert result.get_report("gammaswap").status == SourceStatus.TIMED_OUT
    assert breakers.get_status("gammaswap")["failures"] == 1


@pytest.mark.asyncio
async def test_output_follows_source_order_and_dedupes_within_source(aggregator):
    first = StaticSource("uniswap-v3", [
        make_position("uniswap-v3-1", 10),
        make_position("uniswap-v3-2", 20),
        make_position("uniswap-v3-1", 15),
    ])
    second = StaticSource("aave", [make_position("aave-usdc", 30)])

    positions = await aggregator.aggregate("0xabc", [first, second])

    assert [p.id for p in positions] == ["uniswap-v3-1", "uniswap-v3-2", "aave-usdc"]
    assert positions[0].value == 15


@pytest.mark.asyncio
async def test_same_id_from_different_sources_is_kept(aggregator):
    a = StaticSource("a", [make_position("shared")])
    b = StaticSource("b", [make_position("shared")])

    positions = await aggregator.aggregate("0xabc", [a, b])

    assert len(positions) == 2


@pytest.mark.asyncio
async def test_no_sources_returns_empty(aggregator):
    result = await aggregator.aggregate_with_report("0xabc", [])

    assert result.positions == []
    assert result.reports == []


@pytest.mark.asyncio
async def test_metrics_are_published(aggregator, state_manager):
    aggregator.add_source(StaticSource("aave", [make_position("aave-usdc")]))
    aggregator.add_source(FailingSource("lido", ExpectedSourceError("no data")))

    await aggregator.aggregate("0xabc")

    metrics = state_manager.get_component_metrics("aggregator")
    assert metrics["last_position_count"] == 1
    assert metrics["degraded_sources"] == ["lido"]


def test_duplicate_source_names_are_rejected(aggregator):
    aggregator.add_source(StaticSource("aave"))

    with pytest.raises(ValueError):
        aggregator.add_source(StaticSource("aave"))
    assert aggregator.get_source_names() == ["aave"]


@pytest.mark.asyncio
async def test_total_value_and_protocol_filter(aggregator):
    aggregator.add_source(StaticSource("mixed", [
        make_position("mixed-1", 100, protocol="aave"),
        make_position("mixed-2", 50, protocol="lido"),
    ]))

    assert await aggregator.get_total_value("0xabc") == 150
    assert [p.id for p in await aggregator.get_positions_by_protocol("0xabc", "lido")] == ["mixed-2"]
