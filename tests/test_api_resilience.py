"""
Tests for error classification and the ResilienceWrapper.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from position_tracker.utils.api_resilience import (
    ErrorKind,
    ExpectedSourceError,
    RateLimitedError,
    ResilienceWrapper,
    classify_error,
    with_resilience,
    with_timeout,
)


class StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"HTTP {status}")
        self.status = status


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def wrapper(sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    return ResilienceWrapper(max_retries=2, base_delay=0.5, max_delay=30, jitter=0, sleep=record_sleep)


def test_classify_rate_limit_by_message_and_status():
    assert classify_error(Exception("429 Too Many Requests")) == ErrorKind.RATE_LIMITED
    assert classify_error(StatusError(429)) == ErrorKind.RATE_LIMITED
    assert classify_error(RateLimitedError("slow down")) == ErrorKind.RATE_LIMITED


def test_classify_expected_errors():
    assert classify_error(Exception("execution reverted: no position")) == ErrorKind.EXPECTED
    assert classify_error(Exception("could not decode result data")) == ErrorKind.EXPECTED
    assert classify_error(asyncio.TimeoutError()) == ErrorKind.EXPECTED
    assert classify_error(ExpectedSourceError("no data")) == ErrorKind.EXPECTED


def test_classify_unexpected_and_custom_predicate():
    error = KeyError("tokens")
    assert classify_error(error) == ErrorKind.UNEXPECTED
    assert classify_error(error, is_expected=lambda e: isinstance(e, KeyError)) == ErrorKind.EXPECTED


@pytest.mark.asyncio
async def test_success_returns_value_on_first_attempt(wrapper, sleeps):
    operation = AsyncMock(return_value=[1, 2])

    result = await wrapper.run(operation, fallback=[])

    assert result.value == [1, 2]
    assert result.attempts == 1
    assert not result.used_fallback
    assert sleeps == []


@pytest.mark.asyncio
async def test_expected_error_falls_back_without_retry(wrapper, sleeps):
    operation = AsyncMock(side_effect=Exception("execution reverted"))

    result = await wrapper.run(operation, fallback="fallback")

    assert result.value == "fallback"
    assert result.kind == ErrorKind.EXPECTED
    assert operation.await_count == 1
    assert sleeps == []
    with pytest.raises(Exception, match="execution reverted"):
        result.raise_for_error()


@pytest.mark.asyncio
async def test_rate_limit_backs_off_exponentially_then_falls_back(wrapper, sleeps):
    operation = AsyncMock(side_effect=RateLimitedError("rate limit"))

    result = await wrapper.run(operation, fallback=0)

    assert result.value == 0
    assert result.kind == ErrorKind.RATE_LIMITED
    assert operation.await_count == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_rate_limit_recovers(wrapper, sleeps):
    operation = AsyncMock(side_effect=[RateLimitedError("rate limit"), "ok"])

    result = await wrapper.run(operation, fallback=None)

    assert result.value == "ok"
    assert result.attempts == 2
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_unexpected_error_retries_with_fixed_delay_then_raises(wrapper, sleeps):
    operation = AsyncMock(side_effect=ValueError("boom"))

    with pytest.raises(ValueError, match="boom"):
        await wrapper.run(operation, fallback=None)

    assert operation.await_count == 3
    assert sleeps == [0.5, 0.5]


def test_backoff_delay_is_capped():
    wrapper = ResilienceWrapper(base_delay=1, max_delay=5, jitter=0)
    assert wrapper.backoff_delay(0, 1) == 1
    assert wrapper.backoff_delay(2, 1) == 4
    assert wrapper.backoff_delay(10, 1) == 5


def test_backoff_jitter_stays_in_bounds():
    wrapper = ResilienceWrapper(base_delay=1, max_delay=100, jitter=0.5)
    for _ in range(50):
        delay = wrapper.backoff_delay(1, 1)
        assert 2 <= delay <= 2.5


@pytest.mark.asyncio
async def test_with_resilience_decorator_returns_fallback():
    class Client:
        def __init__(self):
            self.resilience = ResilienceWrapper(max_retries=0, sleep=AsyncMock())

        @with_resilience(fallback={})
        async def fetch(self):
            raise ExpectedSourceError("not found")

    assert await Client().fetch() == {}


@pytest.mark.asyncio
async def test_with_timeout_returns_fallback():
    async def hang():
        await asyncio.sleep(10)

    assert await with_timeout(hang(), 0.01, fallback_value="late") == "late"
