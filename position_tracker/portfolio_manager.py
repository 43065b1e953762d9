"""
PortfolioManager Component
Wires the aggregator and the analytics to per-wallet accounting (a
cost-basis ledger and a snapshot store for each tracked wallet), and runs
the periodic refresh loops.
"""

import asyncio
import logging
import time
from typing import Dict, Any, List, Optional, Callable

from position_tracker.core.config_manager import ConfigManager
from position_tracker.core.models import Position
from position_tracker.core.state_manager import StateManager
from position_tracker.core.storage import StorageBackend, PersistenceError, create_storage
from position_tracker.sources.base import PositionSource, PriceSource, FallbackPriceSource
from position_tracker.sources.coingecko_price_source import CoinGeckoPriceSource
from position_tracker.sources.manual_positions import ManualPositionStore, ManualPositionSource
from position_tracker.aggregation.aggregator import PositionAggregator, AggregationResult
from position_tracker.accounting.cost_basis_ledger import CostBasisLedger, PnLReport
from position_tracker.accounting.cost_basis_ledger import wallet_storage_key as ledger_storage_key
from position_tracker.accounting.snapshot_store import SnapshotStore
from position_tracker.accounting.snapshot_store import wallet_storage_key as snapshot_storage_key
from position_tracker.accounting.performance_tracker import PerformanceTracker, PerformanceMetrics
from position_tracker.analytics.portfolio_analytics import PortfolioAnalytics, PortfolioMetrics
from position_tracker.analytics.yield_optimizer import YieldOptimizer, OptimizerAnalysis
from position_tracker.utils.api_resilience import ResilienceWrapper, with_timeout

logger = logging.getLogger(__name__)


class WalletAccounts:
    """Cost-basis ledger and performance history of one wallet"""

    def __init__(self, ledger: CostBasisLedger, snapshot_store: SnapshotStore):
        self.ledger = ledger
        self.snapshot_store = snapshot_store
        self.performance_tracker = PerformanceTracker(snapshot_store)


class PortfolioManager:
    """
    PortfolioManager handles:
    - Refreshing a wallet's positions through the aggregator
    - Bootstrapping each wallet's ledger and recording its entries and snapshots
    - Serving performance, P&L, analytics, yield opportunities and summaries
    - A background refresh loop
    """

    def __init__(self,
                 config_manager: ConfigManager,
                 state_manager: StateManager,
                 storage: StorageBackend,
                 price_source: PriceSource,
                 aggregator: PositionAggregator,
                 analytics: PortfolioAnalytics,
                 optimizer: Optional[YieldOptimizer] = None,
                 manual_store: Optional[ManualPositionStore] = None,
                 live_price_source: Optional[PriceSource] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the PortfolioManager

        Args:
            config_manager (ConfigManager): Configuration manager instance
            state_manager (StateManager): Diagnostic event channel
            storage (StorageBackend): Persistence port
            price_source (PriceSource): Price source used for ledger valuation
            aggregator (PositionAggregator): Position aggregator
            analytics (PortfolioAnalytics): Portfolio analytics
            optimizer (YieldOptimizer, optional): Yield optimizer, built on the analytics when omitted
            manual_store (ManualPositionStore, optional): Manual position store
            live_price_source (PriceSource, optional): Live source behind price_source, closed on stop()
            clock (Callable): Time source returning seconds
        """
        self.config_manager = config_manager
        self.state_manager = state_manager
        self.storage = storage
        self.price_source = price_source
        self.aggregator = aggregator
        self.analytics = analytics
        self.optimizer = optimizer or YieldOptimizer(analytics)
        self.manual_store = manual_store
        self.live_price_source = live_price_source
        self.clock = clock

        self.refresh_interval = config_manager.get('refresh.interval', 60)
        self.price_timeout = config_manager.get('prices.timeout', 10)

        self.accounts: Dict[str, WalletAccounts] = {}
        self.last_results: Dict[str, AggregationResult] = {}
        self.last_metrics: Dict[str, PerformanceMetrics] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls,
                    config_manager: ConfigManager,
                    sources: Optional[List[PositionSource]] = None,
                    state_manager: Optional[StateManager] = None,
                    storage: Optional[StorageBackend] = None,
                    live_price_source: Optional[PriceSource] = None,
                    offline: bool = False) -> 'PortfolioManager':
        """
        Build a PortfolioManager and all of its components from configuration

        Args:
            config_manager (ConfigManager): Configuration manager instance
            sources (List[PositionSource], optional): Protocol adapters, the manual source is always added
            state_manager (StateManager, optional): Diagnostic event channel
            storage (StorageBackend, optional): Persistence port, built from config when omitted
            live_price_source (PriceSource, optional): Live prices, CoinGecko when omitted
            offline (bool): Use the fallback price table only

        Returns:
            PortfolioManager: Configured instance

        Raises:
            PersistenceError: If stored state cannot be read
        """
        state_manager = state_manager or StateManager()
        storage = storage or create_storage(config_manager)

        if offline:
            live_price_source = None
        elif live_price_source is None:
            live_price_source = CoinGeckoPriceSource.from_config(
                config_manager, resilience=ResilienceWrapper.from_config(config_manager)
            )

        price_source = FallbackPriceSource(live_price_source, config_manager.get('prices.fallback', {}))

        manual_store = ManualPositionStore(storage)
        all_sources = list(sources or [])
        all_sources.append(ManualPositionSource(manual_store, price_source))

        aggregator = PositionAggregator.from_config(config_manager, all_sources, state_manager=state_manager)
        analytics = PortfolioAnalytics.from_config(config_manager)

        return cls(
            config_manager=config_manager,
            state_manager=state_manager,
            storage=storage,
            price_source=price_source,
            aggregator=aggregator,
            analytics=analytics,
            optimizer=YieldOptimizer.from_config(config_manager, analytics),
            manual_store=manual_store,
            live_price_source=live_price_source
        )

    async def refresh(self, wallet_address: str) -> AggregationResult:
        """
        Aggregate a wallet's positions and record them: entry anchors,
        today's snapshot and the ledger bootstrap.

        Args:
            wallet_address (str): Wallet address

        Returns:
            AggregationResult: Aggregated positions with source reports

        Raises:
            PersistenceError: If accounting state cannot be read or written
        """
        now = self.clock()
        result = await self.aggregator.aggregate_with_report(wallet_address)

        try:
            accounts = self.get_accounts(wallet_address)
            metrics = accounts.performance_tracker.calculate_performance_metrics(result.positions, now=now)
            self._bootstrap_ledger(accounts.ledger, result.positions)
        except PersistenceError as e:
            self.state_manager.emit('portfolio_manager', 'ERROR', f"Failed to persist accounting state: {e}",
                                    {'wallet_address': wallet_address})
            raise

        self.last_results[wallet_address] = result
        self.last_metrics[wallet_address] = metrics

        self.state_manager.update_component_metric('portfolio_manager', 'total_value', result.total_value)
        self.state_manager.update_component_metric('portfolio_manager', 'last_refresh', now)

        logger.info(f"Refreshed {wallet_address}: {len(result.positions)} positions, "
                    f"${result.total_value:.2f}")
        return result

    def get_accounts(self, wallet_address: str) -> WalletAccounts:
        """
        Get a wallet's ledger and snapshot store, loading them on first use

        Args:
            wallet_address (str): Wallet address, matched case-insensitively

        Returns:
            WalletAccounts: The wallet's accounting state

        Raises:
            PersistenceError: If stored state cannot be read
        """
        key = wallet_address.lower()
        accounts = self.accounts.get(key)
        if accounts is not None:
            return accounts

        ledger = CostBasisLedger.from_config(self.config_manager, storage=self.storage,
                                             storage_key=ledger_storage_key(key))
        ledger.load()
        store = SnapshotStore.from_config(self.config_manager, self.storage,
                                          clock=lambda: self.clock(),
                                          storage_key=snapshot_storage_key(key))

        accounts = WalletAccounts(ledger, store)
        self.accounts[key] = accounts
        return accounts

    def _bootstrap_ledger(self, ledger: CostBasisLedger, positions: List[Position]):
        """Apply first-seen positions to the ledger and save it, rolling back on failure"""
        previous = ledger.to_dict()
        changed = False
        for position in positions:
            changed = ledger.apply_position(position) or changed

        if not changed:
            return

        try:
            ledger.save()
        except PersistenceError:
            ledger.restore(previous)
            raise

    async def get_positions(self, wallet_address: str, refresh: bool = False) -> List[Position]:
        if refresh or wallet_address not in self.last_results:
            await self.refresh(wallet_address)
        return self.last_results[wallet_address].positions

    async def get_performance(self, wallet_address: str, refresh: bool = False) -> PerformanceMetrics:
        if refresh or wallet_address not in self.last_metrics:
            await self.refresh(wallet_address)
        return self.last_metrics[wallet_address]

    async def get_portfolio_metrics(self, wallet_address: str, refresh: bool = False) -> PortfolioMetrics:
        positions = await self.get_positions(wallet_address, refresh)
        return self.analytics.analyze_portfolio(positions)

    async def get_yield_opportunities(self, wallet_address: str, refresh: bool = False) -> OptimizerAnalysis:
        positions = await self.get_positions(wallet_address, refresh)
        return self.optimizer.analyze_portfolio(positions)

    async def get_pnl(self, wallet_address: str) -> PnLReport:
        """
        Value a wallet's ledger at current prices

        Args:
            wallet_address (str): Wallet address

        Returns:
            PnLReport: Ledger P&L
        """
        ledger = self.get_accounts(wallet_address).ledger
        symbols = sorted({state.symbol for state in ledger.assets.values()})
        prices = await with_timeout(self.price_source.get_prices(symbols), self.price_timeout, {})

        if isinstance(self.price_source, FallbackPriceSource):
            for symbol in symbols:
                if not prices.get(symbol):
                    prices[symbol] = self.price_source.get_fallback_price(symbol)

        return ledger.calculate_pnl(prices)

    async def get_portfolio_summary(self, wallet_address: str, refresh: bool = False) -> Dict[str, Any]:
        """
        Get everything known about a wallet in one dictionary

        Args:
            wallet_address (str): Wallet address
            refresh (bool): Aggregate again even if a result is cached

        Returns:
            Dict[str, Any]: Positions, source reports, performance, analytics, yield opportunities and P&L
        """
        if refresh or wallet_address not in self.last_results:
            await self.refresh(wallet_address)

        result = self.last_results[wallet_address]
        metrics = self.last_metrics[wallet_address]
        analytics = self.analytics.analyze_portfolio(result.positions)
        optimizer = self.optimizer.analyze_portfolio(result.positions)
        pnl = await self.get_pnl(wallet_address)

        return {
            'wallet_address': wallet_address,
            'total_value': result.total_value,
            'positions': [p.to_dict() for p in result.positions],
            'sources': [r.to_dict() for r in result.reports],
            'performance': metrics.to_dict(),
            'analytics': analytics.to_dict(),
            'optimizer': optimizer.to_dict(),
            'pnl': pnl.to_dict(),
            'circuit_breakers': self.aggregator.circuit_breakers.get_all_statuses(),
            'timestamp': result.started_at
        }

    async def start(self, wallet_address: str):
        """Start refreshing a wallet in the background"""
        if wallet_address in self.tasks and not self.tasks[wallet_address].done():
            logger.warning(f"Refresh loop for {wallet_address} is already running")
            return

        logger.info(f"Starting refresh loop for {wallet_address} every {self.refresh_interval}s")
        self.tasks[wallet_address] = asyncio.create_task(self._refresh_loop(wallet_address))

    async def stop(self):
        """Stop every refresh loop and release network resources"""
        logger.info("Stopping portfolio manager")

        for wallet_address, task in self.tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.tasks = {}

        await self.close()

    async def close(self):
        if self.live_price_source is not None and hasattr(self.live_price_source, 'close'):
            await self.live_price_source.close()

    async def _refresh_loop(self, wallet_address: str):
        """Background task to refresh a wallet regularly"""
        while True:
            try:
                await self.refresh(wallet_address)
                await asyncio.sleep(self.refresh_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in refresh loop for {wallet_address}: {e}")
                await asyncio.sleep(min(10, self.refresh_interval))
