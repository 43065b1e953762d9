"""
Tests for the PortfolioManager wiring and refresh flow.
"""

import asyncio

import pytest

from conftest import NOON, DAY, StaticSource, FailingSource, make_position
from position_tracker.core.config_manager import ConfigManager
from position_tracker.core.storage import MemoryStorage, PersistenceError
from position_tracker.portfolio_manager import PortfolioManager
from position_tracker.sources.base import PositionSource
from position_tracker.accounting.cost_basis_ledger import wallet_storage_key as ledger_key
from position_tracker.accounting.snapshot_store import wallet_storage_key as snapshot_key
from position_tracker.utils.api_resilience import ExpectedSourceError

WALLET = "0x0000000000000000000000000000000000000abc"
OTHER_WALLET = "0x0000000000000000000000000000000000000DEF"


class SelectiveBrokenStorage(MemoryStorage):
    """Memory storage refusing writes to chosen keys"""

    def __init__(self):
        super().__init__()
        self.fail_keys = set()

    def set(self, key, blob):
        if key in self.fail_keys:
            raise PersistenceError(f"cannot write {key}")
        super().set(key, blob)


class WalletSource(PositionSource):
    """Position source answering per wallet"""

    source_name = "aave"

    def __init__(self, positions_by_wallet):
        self.positions_by_wallet = positions_by_wallet

    async def fetch_positions(self, wallet_address):
        return list(self.positions_by_wallet.get(wallet_address, []))


@pytest.fixture
def config(monkeypatch, tmp_path):
    """Configuration isolated from user files and environment"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    config = ConfigManager(load_environment=False)
    config.set("prices.fallback", {"WETH": 5000, "USDC": 1.0})
    config.set("resilience.max_retries", 0)
    return config


def build(config, sources, storage=None, clock=None, state_manager=None):
    manager = PortfolioManager.from_config(config, sources=sources, state_manager=state_manager,
                                           storage=storage or MemoryStorage(), offline=True)
    if clock is not None:
        manager.clock = clock
    return manager


@pytest.mark.asyncio
async def test_refresh_records_entries_snapshots_and_ledger(config, clock):
    storage = MemoryStorage()
    weth = make_position("aave-weth", 9000, symbol="WETH", unit_price=4500)
    manager = build(config, [StaticSource("aave", [weth])], storage=storage, clock=clock)

    result = await manager.refresh(WALLET)

    assert [p.id for p in result.positions] == ["aave-weth"]
    assert "aave-weth" in storage.get(snapshot_key(WALLET))["positionEntries"]
    assert storage.get(ledger_key(WALLET))["bootstrapped_positions"] == ["aave-weth"]
    assert manager.aggregator.get_source_names() == ["aave", "manual"]


@pytest.mark.asyncio
async def test_pnl_uses_fallback_prices_offline(config, clock):
    weth = make_position("aave-weth", 9000, symbol="WETH", unit_price=4500)
    manager = build(config, [StaticSource("aave", [weth])], clock=clock)

    await manager.refresh(WALLET)
    pnl = await manager.get_pnl(WALLET)

    assert pnl.total_invested == pytest.approx(9000)
    assert pnl.current_value == pytest.approx(10000)
    assert pnl.total_pnl == pytest.approx(1000)


@pytest.mark.asyncio
async def test_failing_source_degrades_summary(config, clock, state_manager):
    manager = build(config, [
        StaticSource("aave", [make_position("aave-usdc", 100)]),
        FailingSource("moonwell", ExpectedSourceError("execution reverted")),
    ], clock=clock, state_manager=state_manager)

    summary = await manager.get_portfolio_summary(WALLET)

    assert summary["total_value"] == 100
    statuses = {s["source_name"]: s["status"] for s in summary["sources"]}
    assert statuses == {"aave": "ok", "moonwell": "fallback", "manual": "ok"}
    assert summary["circuit_breakers"]["moonwell"]["failures"] == 1
    assert summary["analytics"]["position_count"] == 1
    assert summary["performance"]["total_value"] == 100
    assert summary["optimizer"]["risk_assessment"]["diversification_needed"] is True


@pytest.mark.asyncio
async def test_daily_change_across_refreshes(config, clock):
    source = StaticSource("aave", [make_position("aave-usdc", 1000)])
    manager = build(config, [source], clock=clock)
    await manager.refresh(WALLET)

    clock.advance(DAY)
    source.positions = [make_position("aave-usdc", 1100)]
    performance = await manager.get_performance(WALLET, refresh=True)

    assert performance.daily_change == pytest.approx(100)
    assert performance.unrealized_pnl_percent == pytest.approx(10)


@pytest.mark.asyncio
async def test_manual_positions_are_aggregated(config, clock):
    manager = build(config, [], clock=clock)
    manager.manual_store.add_position({
        "wallet_address": WALLET.upper(),
        "protocol": "mamo",
        "kind": "staking",
        "tokens": [{"symbol": "USDC", "amount": "250", "decimals": 6}],
    })

    positions = await manager.get_positions(WALLET)

    assert len(positions) == 1
    assert positions[0].protocol == "manual"
    assert positions[0].value == pytest.approx(250)


@pytest.mark.asyncio
async def test_ledger_save_failure_rolls_back(config, clock, state_manager):
    storage = SelectiveBrokenStorage()
    manager = build(config, [StaticSource("aave", [make_position("aave-usdc", 100)])],
                    storage=storage, clock=clock, state_manager=state_manager)
    storage.fail_keys.add(ledger_key(WALLET))

    with pytest.raises(PersistenceError):
        await manager.refresh(WALLET)

    assert manager.get_accounts(WALLET).ledger.snapshot() == {}
    assert WALLET not in manager.last_results
    assert state_manager.get_events(component="portfolio_manager", level="ERROR")


@pytest.mark.asyncio
async def test_snapshot_failure_leaves_ledger_untouched(config, clock):
    storage = SelectiveBrokenStorage()
    manager = build(config, [StaticSource("aave", [make_position("aave-usdc", 100)])],
                    storage=storage, clock=clock)
    storage.fail_keys.add(snapshot_key(WALLET))

    with pytest.raises(PersistenceError):
        await manager.refresh(WALLET)

    assert manager.get_accounts(WALLET).ledger.snapshot() == {}
    assert manager.get_accounts(WALLET).snapshot_store.entries == {}


@pytest.mark.asyncio
async def test_state_is_reloaded_by_a_new_manager(config, clock):
    storage = MemoryStorage()
    source = StaticSource("aave", [make_position("aave-usdc", 100)])
    await build(config, [source], storage=storage, clock=clock).refresh(WALLET)

    restarted = build(config, [source], storage=storage, clock=clock)

    assert restarted.get_accounts(WALLET).ledger.get_state("USDC").balance == pytest.approx(100)
    assert restarted.get_accounts(WALLET).snapshot_store.get_entry("aave-usdc").entry_timestamp == NOON


@pytest.mark.asyncio
async def test_start_and_stop_refresh_loop(config, clock):
    source = StaticSource("aave", [make_position("aave-usdc", 100)])
    manager = build(config, [source], clock=clock)
    manager.refresh_interval = 3600

    await manager.start(WALLET)
    await manager.start(WALLET)
    await asyncio.sleep(0.05)
    await manager.stop()

    assert source.calls == 1
    assert manager.tasks == {}
    assert WALLET in manager.last_results


@pytest.mark.asyncio
async def test_portfolio_metrics_reuse_last_refresh(config, clock):
    source = StaticSource("aave", [make_position("aave-usdc", 300), make_position("aave-weth", 100)])
    manager = build(config, [source], clock=clock)

    metrics = await manager.get_portfolio_metrics(WALLET)
    assert metrics.total_value == pytest.approx(400)
    assert metrics.position_count == 2

    source.positions = []
    cached = await manager.get_portfolio_metrics(WALLET)
    assert cached.position_count == 2

    refreshed = await manager.get_portfolio_metrics(WALLET, refresh=True)
    assert refreshed.position_count == 0


@pytest.mark.asyncio
async def test_wallets_keep_separate_accounting(config, clock, storage):
    source = WalletSource({
        WALLET: [make_position("aave-a-1", 1000)],
        OTHER_WALLET: [make_position("aave-b-1", 50)],
    })
    manager = build(config, [source], storage=storage, clock=clock)

    await manager.refresh(WALLET)
    await manager.refresh(OTHER_WALLET)
    clock.advance(DAY)
    performance = await manager.get_performance(OTHER_WALLET, refresh=True)

    assert performance.total_value == pytest.approx(50)
    assert performance.daily_change == pytest.approx(0)
    other = manager.get_accounts(OTHER_WALLET)
    assert [s.position_id for s in other.snapshot_store.snapshots] == ["aave-b-1", "aave-b-1"]
    assert manager.get_accounts(OTHER_WALLET.lower()) is other

    assert (await manager.get_pnl(WALLET)).total_invested == pytest.approx(1000)
    assert (await manager.get_pnl(OTHER_WALLET)).total_invested == pytest.approx(50)
    assert list(storage.get(snapshot_key(WALLET))["positionEntries"]) == ["aave-a-1"]


@pytest.mark.asyncio
async def test_yield_opportunities_for_wallet(config, clock):
    source = StaticSource("aave", [make_position("aave-usdc", 1000, apy=5, claimable=50)])
    manager = build(config, [source], clock=clock)

    analysis = await manager.get_yield_opportunities(WALLET)

    assert [o.type for o in analysis.opportunities] == ["migrate", "compound"]
    assert [o.id for o in analysis.quick_wins] == ["compound-aave-usdc"]
