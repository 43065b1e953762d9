"""
Tests for PerformanceTracker metrics derived from entries and snapshots.
"""

import pytest

from conftest import NOON, DAY, make_position
from position_tracker.accounting.performance_tracker import (
    PerformanceTracker,
    format_pnl,
    format_pnl_percent,
)
from position_tracker.accounting.snapshot_store import SnapshotStore
from position_tracker.core.models import PositionEntry


@pytest.fixture
def store(storage, clock):
    return SnapshotStore(storage, clock=clock)


@pytest.fixture
def tracker(store):
    return PerformanceTracker(store)


def test_unrealized_pnl_since_entry(tracker):
    tracker.calculate_performance_metrics([make_position("aave-usdc", 1000)], now=NOON)

    metrics = tracker.calculate_performance_metrics([make_position("aave-usdc", 1200)], now=NOON + DAY)

    assert metrics.unrealized_pnl == pytest.approx(200)
    assert metrics.unrealized_pnl_percent == pytest.approx(20)
    assert metrics.positions[0].peak_value == 1200
    assert metrics.positions[0].trough_value == 1000


def test_time_based_changes_use_snapshots(tracker):
    tracker.calculate_performance_metrics([make_position("aave-usdc", 1000)], now=NOON)

    metrics = tracker.calculate_performance_metrics([make_position("aave-usdc", 1200)], now=NOON + DAY)

    assert metrics.daily_change == pytest.approx(200)
    assert metrics.daily_change_percent == pytest.approx(20)
    assert metrics.changes["daily"]["baseline"] == pytest.approx(1000)
    assert metrics.weekly_change == pytest.approx(200)


def test_first_run_has_no_change(tracker, store):
    metrics = tracker.calculate_performance_metrics([make_position("aave-usdc", 500)], now=NOON)

    assert metrics.daily_change == 0
    assert metrics.monthly_change_percent == 0
    assert store.get_entry("aave-usdc") is not None
    assert len(store.snapshots) == 1


def test_persist_false_leaves_store_untouched(tracker, store):
    tracker.calculate_performance_metrics([make_position("aave-usdc", 500)], now=NOON, persist=False)

    assert store.entries == {}
    assert store.snapshots == []


def test_empty_portfolio(tracker):
    metrics = tracker.calculate_performance_metrics([], now=NOON)

    assert metrics.total_value == 0
    assert metrics.unrealized_pnl_percent == 0
    assert metrics.best_performer is None
    assert metrics.protocol_performance == {}


def test_best_and_worst_keep_first_on_ties(tracker):
    tracker.calculate_performance_metrics([
        make_position("a", 100), make_position("b", 100), make_position("c", 100)
    ], now=NOON)

    metrics = tracker.calculate_performance_metrics([
        make_position("a", 110), make_position("b", 110), make_position("c", 90)
    ], now=NOON + DAY)

    assert metrics.best_performer.position_id == "a"
    assert metrics.worst_performer.position_id == "c"


def test_protocol_contribution(tracker):
    tracker.calculate_performance_metrics([
        make_position("aave-1", 100, protocol="aave"),
        make_position("lido-1", 100, protocol="lido"),
    ], now=NOON)

    metrics = tracker.calculate_performance_metrics([
        make_position("aave-1", 130, protocol="aave"),
        make_position("lido-1", 110, protocol="lido"),
    ], now=NOON + DAY)

    aave = metrics.protocol_performance["aave"]
    assert aave.unrealized_pnl == pytest.approx(30)
    assert aave.unrealized_pnl_percent == pytest.approx(30)
    assert aave.contribution_to_portfolio == pytest.approx(75)
    assert metrics.protocol_performance["lido"].contribution_to_portfolio == pytest.approx(25)


def test_token_performance_uses_entry_balance_and_price(tracker):
    position = make_position("lido-steth", 4500, symbol="STETH", unit_price=4500)
    entry = PositionEntry("lido-steth", NOON - DAY, 4000, [
        {"symbol": "STETH", "balance": "1000000", "decimals": 6, "entry_price": 4000}
    ], "lido", "lending")

    performance = tracker.calculate_position_performance(position, entry, [])

    token = performance.tokens[0]
    assert token.entry_value == pytest.approx(4000)
    assert token.pnl == pytest.approx(500)
    assert performance.unrealized_pnl_percent == pytest.approx(12.5)


def test_metrics_serialize(tracker):
    data = tracker.calculate_performance_metrics([make_position("a", 100)], now=NOON).to_dict()

    assert data["total_value"] == 100
    assert data["best_performer"]["position_id"] == "a"
    assert "aave" in data["protocol_performance"]


@pytest.mark.parametrize("value, expected", [
    (12, "+$12.00"),
    (0, "+$0.00"),
    (-3.5, "-$3.50"),
])
def test_format_pnl(value, expected):
    assert format_pnl(value) == expected


def test_format_pnl_percent():
    assert format_pnl_percent(20) == "+20.00%"
    assert format_pnl_percent(-3.5) == "-3.50%"
