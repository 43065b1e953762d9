"""
API Resilience Utility Module
Provides utilities for making calls to unreliable position and price
sources resilient:
- Error classification (rate-limited / expected / unexpected)
- Retry with exponential backoff and jitter
- Per-source circuit breakers
- Timeouts with fallback values
"""

import asyncio
import logging
import time
import random
from enum import Enum
from functools import wraps
from typing import Callable, Dict, Any, Optional, TypeVar, Awaitable, Generic

import aiohttp

logger = logging.getLogger(__name__)

# Type for function return value
T = TypeVar('T')


class ErrorKind(Enum):
    """How a failure should be treated"""
    RATE_LIMITED = "rate_limited"  # transient, back off and retry
    EXPECTED = "expected"          # no answer available, fall back immediately
    UNEXPECTED = "unexpected"      # retry with fixed delay, then propagate


class SourceError(Exception):
    """Base exception for failures raised by position and price sources"""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class RateLimitedError(SourceError):
    """Raised by a source when the upstream API throttles it"""


class ExpectedSourceError(SourceError):
    """Raised by a source when the operation legitimately has no answer (revert, decode failure)"""


# Message fragments that identify throttling
RATE_LIMIT_SIGNATURES = [
    'over rate limit',
    'rate limit',
    'rate limited',
    'too many requests',
    'request rate exceeded'
]

# Message fragments for failures where retrying cannot change the outcome
EXPECTED_SIGNATURES = [
    'call_exception',
    'missing revert data',
    'could not decode result data',
    'invalid opcode',
    'execution reverted',
    'network error',
    'timeout',
    'timed out',
    'insufficient funds'
]

EXPECTED_EXCEPTION_TYPES = (
    ExpectedSourceError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError
)


def _error_texts(error: BaseException) -> list:
    """Collect the lowercase strings that describe an error"""
    texts = [str(error).lower(), type(error).__name__.lower()]
    for attr in ('code', 'reason', 'message'):
        value = getattr(error, attr, None)
        if isinstance(value, str):
            texts.append(value.lower())
    return texts


def is_rate_limit_error(error: Optional[BaseException]) -> bool:
    """
    Check whether an error signals throttling

    Args:
        error (BaseException): The error

    Returns:
        bool: True for rate limit errors
    """
    if error is None:
        return False

    if isinstance(error, RateLimitedError):
        return True

    for attr in ('status', 'code', 'status_code'):
        if getattr(error, attr, None) == 429:
            return True

    texts = _error_texts(error)
    return any(signature in text for text in texts for signature in RATE_LIMIT_SIGNATURES)


def is_expected_error(error: Optional[BaseException]) -> bool:
    """
    Check whether an error means the operation has no answer to give

    Args:
        error (BaseException): The error

    Returns:
        bool: True for expected errors
    """
    if error is None:
        return False

    if isinstance(error, EXPECTED_EXCEPTION_TYPES):
        return True

    texts = _error_texts(error)
    return any(signature in text for text in texts for signature in EXPECTED_SIGNATURES)


def classify_error(error: BaseException,
                   is_expected: Optional[Callable[[BaseException], bool]] = None) -> ErrorKind:
    """
    Classify an error

    Args:
        error (BaseException): The error
        is_expected (Callable, optional): Predicate replacing the default expected-error check

    Returns:
        ErrorKind: Classification
    """
    if is_rate_limit_error(error):
        return ErrorKind.RATE_LIMITED

    predicate = is_expected or is_expected_error
    if predicate(error):
        return ErrorKind.EXPECTED

    return ErrorKind.UNEXPECTED


class ResilienceResult(Generic[T]):
    """Outcome of a call made through the ResilienceWrapper"""

    def __init__(self,
                 value: Any,
                 attempts: int,
                 error: Optional[BaseException] = None,
                 kind: Optional[ErrorKind] = None):
        self.value = value
        self.attempts = attempts
        self.error = error
        self.kind = kind

    @property
    def used_fallback(self) -> bool:
        return self.error is not None

    def raise_for_error(self):
        """Re-raise the error that forced the fallback, if any"""
        if self.error is not None:
            raise self.error

    def __repr__(self) -> str:
        status = self.kind.value if self.kind else "ok"
        return f"ResilienceResult(status={status}, attempts={self.attempts})"


class ResilienceWrapper:
    """
    Control-flow combinator around a fallible async operation.

    Rate-limited failures are retried with exponential backoff and jitter and
    fall back once retries run out. Expected failures fall back immediately.
    Unexpected failures are retried with a fixed delay and then propagated.
    """

    def __init__(self,
                 max_retries: int = 2,
                 base_delay: float = 0.5,
                 max_delay: float = 30.0,
                 jitter: float = 1.0,
                 is_expected: Optional[Callable[[BaseException], bool]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Initialize the wrapper

        Args:
            max_retries (int): Retries after the first attempt
            base_delay (float): Base delay between retries (seconds)
            max_delay (float): Upper bound for a single backoff delay (seconds)
            jitter (float): Upper bound of the random jitter added to backoff (seconds)
            is_expected (Callable, optional): Predicate replacing the default expected-error check
            sleep (Callable): Awaitable sleep function
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.is_expected = is_expected
        self._sleep = sleep

    @classmethod
    def from_config(cls, config_manager, **kwargs) -> 'ResilienceWrapper':
        return cls(
            max_retries=config_manager.get('resilience.max_retries', 2),
            base_delay=config_manager.get('resilience.base_delay', 0.5),
            max_delay=config_manager.get('resilience.max_delay', 30.0),
            jitter=config_manager.get('resilience.jitter', 1.0),
            **kwargs
        )

    def backoff_delay(self, attempt: int, base_delay: float) -> float:
        """Delay before retrying a rate-limited attempt"""
        delay = base_delay * (2 ** attempt) + random.uniform(0, self.jitter)
        return min(self.max_delay, delay)

    async def run(self,
                  operation: Callable[[], Awaitable[T]],
                  fallback: Any = None,
                  context: str = "operation",
                  max_retries: Optional[int] = None,
                  base_delay: Optional[float] = None,
                  is_expected: Optional[Callable[[BaseException], bool]] = None) -> ResilienceResult:
        """
        Run an operation with retry and fallback handling

        Args:
            operation (Callable): Zero-argument coroutine factory, called once per attempt
            fallback (Any): Value returned for rate-limited or expected failures
            context (str): Label used in log messages
            max_retries (int, optional): Override for this call
            base_delay (float, optional): Override for this call
            is_expected (Callable, optional): Override for this call

        Returns:
            ResilienceResult: Value (or fallback) with attempt count and the error that forced a fallback

        Raises:
            Exception: The last unexpected error once retries are exhausted
        """
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.base_delay if base_delay is None else base_delay
        predicate = is_expected or self.is_expected

        attempt = 0
        while True:
            try:
                value = await operation()
                return ResilienceResult(value, attempts=attempt + 1)
            except Exception as e:
                kind = classify_error(e, predicate)

                if kind == ErrorKind.RATE_LIMITED:
                    if attempt < retries:
                        backoff = self.backoff_delay(attempt, delay)
                        logger.debug(f"{context}: rate limited, retrying in {backoff:.2f}s")
                        await self._sleep(backoff)
                        attempt += 1
                        continue
                    logger.debug(f"{context}: rate limit persisted after {attempt + 1} attempts, using fallback")
                    return ResilienceResult(fallback, attempt + 1, e, kind)

                if kind == ErrorKind.EXPECTED:
                    logger.debug(f"{context}: expected error ({type(e).__name__}: {e}), using fallback")
                    return ResilienceResult(fallback, attempt + 1, e, kind)

                if attempt < retries:
                    logger.warning(f"{context}: attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s")
                    await self._sleep(delay)
                    attempt += 1
                    continue

                logger.error(f"{context}: failed after {attempt + 1} attempts: {e}")
                raise


def with_resilience(wrapper_attr: str = 'resilience', fallback: Any = None):
    """
    Decorator routing an async method through the instance's ResilienceWrapper.
    The decorated method returns the plain value (or the fallback).

    Args:
        wrapper_attr (str): Attribute holding the ResilienceWrapper on the instance
        fallback (Any): Value returned for rate-limited or expected failures
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            resilience: ResilienceWrapper = getattr(self, wrapper_attr)
            result = await resilience.run(
                lambda: func(self, *args, **kwargs),
                fallback=fallback,
                context=f"{type(self).__name__}.{func.__name__}"
            )
            return result.value
        return wrapper
    return decorator


class CircuitBreaker:
    """Failure bookkeeping for one source"""

    def __init__(self, name: str):
        self.name = name
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'failures': self.failure_count,
            'last_failure': self.last_failure_time
        }


class CircuitBreakerRegistry:
    """
    Per-source circuit breakers.

    A source's circuit opens once it has ``max_failures`` consecutive
    non-rate-limit failures and closes again as soon as ``reset_window``
    seconds have passed since the last failure. The next call after the
    window is executed normally.

    Methods that touch breaker state never await between reading and
    writing it, so concurrent tasks on one event loop see consistent counts.
    """

    def __init__(self,
                 max_failures: int = 5,
                 reset_window: float = 300,
                 clock: Callable[[], float] = time.time,
                 is_expected: Optional[Callable[[BaseException], bool]] = None,
                 state_manager=None):
        """
        Initialize the registry

        Args:
            max_failures (int): Consecutive failures that open a circuit
            reset_window (float): Seconds after the last failure before an open circuit closes
            clock (Callable): Time source returning seconds
            is_expected (Callable, optional): Predicate replacing the default expected-error check
            state_manager (StateManager, optional): Event channel for open/close transitions
        """
        self.max_failures = max_failures
        self.reset_window = reset_window
        self.clock = clock
        self.is_expected = is_expected
        self.state_manager = state_manager
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_config(cls, config_manager, **kwargs) -> 'CircuitBreakerRegistry':
        return cls(
            max_failures=config_manager.get('circuit_breaker.max_failures', 5),
            reset_window=config_manager.get('circuit_breaker.reset_window', 300),
            **kwargs
        )

    def _emit(self, level: str, message: str, details: Dict[str, Any]):
        if self.state_manager:
            self.state_manager.emit('circuit_breaker', level, message, details)

    def get_breaker(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a source"""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name)
        return self._breakers[name]

    def is_open(self, name: str) -> bool:
        """
        Check whether calls to a source are currently short-circuited.
        Closes the circuit as a side effect once the reset window has passed.

        Args:
            name (str): Source name

        Returns:
            bool: True if the circuit is open
        """
        breaker = self.get_breaker(name)
        if breaker.failure_count < self.max_failures:
            return False

        last_failure = breaker.last_failure_time or 0
        if self.clock() - last_failure > self.reset_window:
            logger.info(f"Circuit breaker {name} closing after {self.reset_window}s cooldown")
            breaker.failure_count = 0
            self._emit('INFO', f"Circuit for {name} closed after cooldown", {'source': name})
            return False

        return True

    def record_success(self, name: str):
        breaker = self.get_breaker(name)
        breaker.failure_count = 0

    def record_failure(self, name: str):
        breaker = self.get_breaker(name)
        breaker.failure_count += 1
        breaker.last_failure_time = self.clock()

        if breaker.failure_count == self.max_failures:
            logger.warning(f"Circuit breaker {name} opening after {breaker.failure_count} failures")
            self._emit('WARNING', f"Circuit for {name} opened", {
                'source': name,
                'failures': breaker.failure_count
            })

    async def execute(self,
                      name: str,
                      operation: Callable[[], Awaitable[T]],
                      fallback: Any) -> Any:
        """
        Run an operation behind the source's circuit

        Args:
            name (str): Source name
            operation (Callable): Zero-argument coroutine factory
            fallback (Any): Value returned while the circuit is open or on expected/rate-limited errors

        Returns:
            Any: Operation result or fallback

        Raises:
            Exception: Unexpected errors from the operation
        """
        if self.is_open(name):
            logger.debug(f"Circuit breaker OPEN for {name}, returning fallback")
            return fallback

        try:
            result = await operation()
        except Exception as e:
            kind = classify_error(e, self.is_expected)

            # Throttling is temporary and does not count towards opening the circuit
            if kind != ErrorKind.RATE_LIMITED:
                self.record_failure(name)

            if kind in (ErrorKind.EXPECTED, ErrorKind.RATE_LIMITED):
                logger.debug(f"{name}: using fallback after {kind.value} error: {e}")
                return fallback

            raise

        self.record_success(name)
        return result

    def reset(self, name: str):
        """Manually close a source's circuit"""
        breaker = self.get_breaker(name)
        breaker.failure_count = 0
        breaker.last_failure_time = None
        logger.info(f"Circuit breaker reset for {name}")

    def reset_all(self):
        for name in list(self._breakers):
            self.reset(name)

    def get_status(self, name: str) -> Dict[str, Any]:
        """
        Get circuit status for a source

        Args:
            name (str): Source name

        Returns:
            Dict[str, Any]: {'is_open', 'failures', 'last_failure'}
        """
        is_open = self.is_open(name)
        breaker = self.get_breaker(name)
        return {
            'is_open': is_open,
            'failures': breaker.failure_count,
            'last_failure': breaker.last_failure_time
        }

    def get_all_statuses(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.get_status(name) for name in list(self._breakers)}


async def with_timeout(coro, timeout: float, fallback_value: Any = None):
    """
    Execute a coroutine with a timeout

    Args:
        coro: Coroutine to execute
        timeout (float): Timeout in seconds
        fallback_value (Any, optional): Value to return if timeout occurs

    Returns:
        Result of coroutine or fallback value if timeout
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Operation timed out after {timeout}s, using fallback")
        return fallback_value
