"""
Position Aggregator
Fans out to every registered position source concurrently and merges the
results into one portfolio. Each source call runs behind its circuit
breaker and the resilience wrapper; a failing, hung or short-circuited
source contributes an empty list and never affects its siblings.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, Any, List, Optional, Callable, Tuple

from position_tracker.core.models import Position
from position_tracker.sources.base import PositionSource
from position_tracker.utils.api_resilience import (
    ResilienceWrapper,
    ResilienceResult,
    CircuitBreakerRegistry,
    ErrorKind
)

logger = logging.getLogger(__name__)


class SourceStatus(Enum):
    """Outcome of one source within an aggregation run"""
    OK = "ok"
    FALLBACK = "fallback"          # expected or rate-limited failure, empty contribution
    FAILED = "failed"              # unexpected failure after retries
    TIMED_OUT = "timed_out"        # per-source timeout or overall deadline
    CIRCUIT_OPEN = "circuit_open"  # skipped without calling the source


class SourceReport:
    """Diagnostics for one source call"""

    def __init__(self,
                 source_name: str,
                 status: SourceStatus,
                 position_count: int = 0,
                 error: Optional[str] = None,
                 duration: float = 0.0,
                 attempts: int = 0):
        self.source_name = source_name
        self.status = status
        self.position_count = position_count
        self.error = error
        self.duration = duration
        self.attempts = attempts

    @property
    def degraded(self) -> bool:
        return self.status != SourceStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_name': self.source_name,
            'status': self.status.value,
            'position_count': self.position_count,
            'error': self.error,
            'duration': self.duration,
            'attempts': self.attempts
        }

    def __repr__(self) -> str:
        return f"SourceReport({self.source_name!r}, {self.status.value}, positions={self.position_count})"


class AggregationResult:
    """Merged positions of one aggregation run plus per-source reports"""

    def __init__(self,
                 wallet_address: str,
                 positions: List[Position],
                 reports: List[SourceReport],
                 started_at: float,
                 duration: float):
        self.wallet_address = wallet_address
        self.positions = positions
        self.reports = reports
        self.started_at = started_at
        self.duration = duration

    @property
    def total_value(self) -> float:
        return sum(p.value for p in self.positions)

    @property
    def degraded_sources(self) -> List[str]:
        return [r.source_name for r in self.reports if r.degraded]

    def get_report(self, source_name: str) -> Optional[SourceReport]:
        for report in self.reports:
            if report.source_name == source_name:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'wallet_address': self.wallet_address,
            'positions': [p.to_dict() for p in self.positions],
            'total_value': self.total_value,
            'sources': [r.to_dict() for r in self.reports],
            'started_at': self.started_at,
            'duration': self.duration
        }


class PositionAggregator:
    """
    PositionAggregator fans out to position sources and fans the results in.

    Output order is source-declaration order, then the order each source
    returned its positions in. Positions are never deduplicated across
    sources; a source returning the same id twice keeps the last copy in
    the slot of the first.
    """

    def __init__(self,
                 sources: Optional[List[PositionSource]] = None,
                 resilience: Optional[ResilienceWrapper] = None,
                 circuit_breakers: Optional[CircuitBreakerRegistry] = None,
                 state_manager=None,
                 source_timeout: float = 10.0,
                 deadline: Optional[float] = 30.0,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the aggregator

        Args:
            sources (List[PositionSource], optional): Registered sources
            resilience (ResilienceWrapper, optional): Retry policy applied to each source call
            circuit_breakers (CircuitBreakerRegistry, optional): Per-source circuit breakers
            state_manager (StateManager, optional): Diagnostic event channel
            source_timeout (float): Timeout for a single source attempt (seconds)
            deadline (float, optional): Overall limit for one aggregation run (seconds)
            clock (Callable): Time source used for durations
        """
        self.sources: List[PositionSource] = list(sources or [])
        self.resilience = resilience or ResilienceWrapper()
        self.circuit_breakers = circuit_breakers or CircuitBreakerRegistry(state_manager=state_manager)
        self.state_manager = state_manager
        self.source_timeout = source_timeout
        self.deadline = deadline
        self.clock = clock

    @classmethod
    def from_config(cls,
                    config_manager,
                    sources: Optional[List[PositionSource]] = None,
                    state_manager=None) -> 'PositionAggregator':
        return cls(
            sources=sources,
            resilience=ResilienceWrapper.from_config(config_manager),
            circuit_breakers=CircuitBreakerRegistry.from_config(config_manager, state_manager=state_manager),
            state_manager=state_manager,
            source_timeout=config_manager.get('aggregator.source_timeout', 10.0),
            deadline=config_manager.get('aggregator.deadline', 30.0)
        )

    def add_source(self, source: PositionSource):
        """
        Register a position source

        Args:
            source (PositionSource): Source to register

        Raises:
            ValueError: If a source with the same name is already registered
        """
        if any(s.source_name == source.source_name for s in self.sources):
            raise ValueError(f"Position source '{source.source_name}' is already registered")
        self.sources.append(source)
        logger.debug(f"Registered position source {source.source_name}")

    def get_source_names(self) -> List[str]:
        return [s.source_name for s in self.sources]

    def _emit(self, level: str, message: str, details: Dict[str, Any]):
        if self.state_manager:
            self.state_manager.emit('aggregator', level, message, details)

    async def aggregate(self,
                        wallet_address: str,
                        sources: Optional[List[PositionSource]] = None) -> List[Position]:
        """
        Get all positions of a wallet across sources

        Args:
            wallet_address (str): Wallet address
            sources (List[PositionSource], optional): Sources to query instead of the registered ones

        Returns:
            List[Position]: Merged positions
        """
        result = await self.aggregate_with_report(wallet_address, sources)
        return result.positions

    async def aggregate_with_report(self,
                                    wallet_address: str,
                                    sources: Optional[List[PositionSource]] = None) -> AggregationResult:
        """
        Get all positions of a wallet across sources, with per-source diagnostics

        Args:
            wallet_address (str): Wallet address
            sources (List[PositionSource], optional): Sources to query instead of the registered ones

        Returns:
            AggregationResult: Positions and one report per source, in source order
        """
        sources = self.sources if sources is None else list(sources)
        started_at = self.clock()

        tasks = [asyncio.ensure_future(self._fetch_from_source(source, wallet_address)) for source in sources]

        pending = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.deadline)

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        positions: List[Position] = []
        reports: List[SourceReport] = []

        for source, task in zip(sources, tasks):
            if task in pending or task.cancelled():
                report = SourceReport(
                    source.source_name,
                    SourceStatus.TIMED_OUT,
                    error=f"Aggregation deadline of {self.deadline}s exceeded",
                    duration=self.clock() - started_at
                )
                self.circuit_breakers.record_failure(source.source_name)
                self._emit('WARNING', f"Source {source.source_name} missed the aggregation deadline",
                           report.to_dict())
                reports.append(report)
                continue

            source_positions, report = task.result()
            positions.extend(source_positions)
            reports.append(report)

        duration = self.clock() - started_at
        degraded = [r.source_name for r in reports if r.degraded]

        if self.state_manager:
            self.state_manager.update_component_metric('aggregator', 'last_position_count', len(positions))
            self.state_manager.update_component_metric('aggregator', 'last_duration', duration)
            self.state_manager.update_component_metric('aggregator', 'degraded_sources', degraded)

        logger.info(f"Aggregated {len(positions)} positions for {wallet_address} from "
                    f"{len(sources) - len(degraded)}/{len(sources)} sources in {duration:.2f}s")

        return AggregationResult(wallet_address, positions, reports, started_at, duration)

    async def _fetch_from_source(self,
                                 source: PositionSource,
                                 wallet_address: str) -> Tuple[List[Position], SourceReport]:
        """
        Fetch one source behind its circuit breaker and retry policy.
        Never raises except on cancellation.
        """
        name = source.source_name
        started_at = self.clock()

        if self.circuit_breakers.is_open(name):
            report = SourceReport(name, SourceStatus.CIRCUIT_OPEN, error="Circuit breaker open")
            self._emit('WARNING', f"Skipped source {name}: circuit open", report.to_dict())
            return [], report

        outcome: Dict[str, ResilienceResult] = {}

        async def guarded():
            result = await self.resilience.run(
                lambda: asyncio.wait_for(source.fetch_positions(wallet_address), self.source_timeout),
                fallback=[],
                context=f"source {name}"
            )
            outcome['result'] = result
            # Let the breaker count expected failures too
            result.raise_for_error()
            return result.value

        try:
            fetched = await self.circuit_breakers.execute(name, guarded, fallback=[])
        except Exception as e:
            report = SourceReport(name, SourceStatus.FAILED,
                                  error=f"{type(e).__name__}: {e}",
                                  duration=self.clock() - started_at,
                                  attempts=self.resilience.max_retries + 1)
            logger.error(f"Position source {name} failed: {e}")
            self._emit('ERROR', f"Source {name} failed", report.to_dict())
            return [], report

        result = outcome.get('result')
        attempts = result.attempts if result else 0

        if result is not None and result.used_fallback:
            timed_out = isinstance(result.error, asyncio.TimeoutError)
            status = SourceStatus.TIMED_OUT if timed_out else SourceStatus.FALLBACK
            report = SourceReport(name, status,
                                  error=f"{type(result.error).__name__}: {result.error}",
                                  duration=self.clock() - started_at,
                                  attempts=attempts)
            level = 'INFO' if result.kind == ErrorKind.RATE_LIMITED else 'WARNING'
            self._emit(level, f"Source {name} degraded ({status.value})", report.to_dict())
            return [], report

        unique: Dict[str, Position] = {}
        for position in fetched or []:
            if position.id in unique:
                logger.debug(f"Source {name} returned position {position.id} more than once")
            unique[position.id] = position

        positions = list(unique.values())
        report = SourceReport(name, SourceStatus.OK,
                              position_count=len(positions),
                              duration=self.clock() - started_at,
                              attempts=attempts)
        return positions, report

    async def get_positions_by_protocol(self, wallet_address: str, protocol: str) -> List[Position]:
        positions = await self.aggregate(wallet_address)
        return [p for p in positions if p.protocol == protocol]

    async def get_total_value(self, wallet_address: str) -> float:
        """
        Get the USD value of all positions of a wallet

        Args:
            wallet_address (str): Wallet address

        Returns:
            float: Total value (debt positions are included at face value)
        """
        positions = await self.aggregate(wallet_address)
        return sum(p.value for p in positions)
