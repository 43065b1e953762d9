"""
Shared fixtures for the position tracker tests.
"""

from typing import List, Optional

import pytest

from position_tracker.core.models import Position, PositionKind, PositionMetadata, TokenAmount
from position_tracker.core.state_manager import StateManager
from position_tracker.core.storage import MemoryStorage
from position_tracker.sources.base import PositionSource

# 2026-03-15 12:00:00 UTC
NOON = 1773576000.0
DAY = 24 * 60 * 60


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: float = NOON):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StaticSource(PositionSource):
    """Position source returning a fixed list"""

    def __init__(self, name: str, positions: Optional[List[Position]] = None):
        self.source_name = name
        self.positions = list(positions or [])
        self.calls = 0

    async def fetch_positions(self, wallet_address: str) -> List[Position]:
        self.calls += 1
        return list(self.positions)


class FailingSource(PositionSource):
    """Position source raising the same error on every call"""

    def __init__(self, name: str, error: Exception):
        self.source_name = name
        self.error = error
        self.calls = 0

    async def fetch_positions(self, wallet_address: str) -> List[Position]:
        self.calls += 1
        raise self.error


def make_position(position_id: str,
                  value: float = 100.0,
                  protocol: str = "aave",
                  kind: PositionKind = PositionKind.LENDING,
                  symbol: str = "USDC",
                  apy: float = 5.0,
                  claimable: float = 0.0,
                  is_debt: bool = False,
                  unit_price: float = 1.0) -> Position:
    """Build a single-token position worth `value` USD"""
    amount = value / unit_price if unit_price else 0
    token = TokenAmount.from_amount(symbol, f"{amount:.6f}", unit_price, decimals=6)
    return Position(
        position_id=position_id,
        protocol=protocol,
        kind=kind,
        tokens=[token],
        apy=apy,
        value=value,
        claimable=claimable,
        metadata=PositionMetadata(is_debt=is_debt)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def state_manager():
    return StateManager()


async def no_sleep(delay: float):
    """Sleep replacement that records nothing and returns immediately"""
    return None
