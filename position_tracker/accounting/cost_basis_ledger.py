"""
Cost-Basis Ledger
Running weighted-average cost basis per asset, built from an ordered
transaction history or, for assets without any history, from the first
time a position holding the asset is seen.
"""

import logging
import math
from typing import Dict, Any, List, Optional, Iterable

from position_tracker.core.models import LedgerState, Position, Transaction
from position_tracker.core.storage import StorageBackend, PersistenceError

logger = logging.getLogger(__name__)
accounting_logger = logging.getLogger('accounting')

STORAGE_KEY = 'cost-basis-ledger'

# Outflows within this fraction of the tracked balance close the asset fully
BALANCE_REL_TOLERANCE = 1e-9


def wallet_storage_key(wallet_address: str) -> str:
    return f"{STORAGE_KEY}:{wallet_address.lower()}"


class PnLBreakdown:
    """P&L of one asset"""

    def __init__(self,
                 symbol: str,
                 address: str,
                 balance: float,
                 avg_buy_price: float,
                 current_price: float,
                 invested: float,
                 current_value: float,
                 realized_pnl: float):
        self.symbol = symbol
        self.address = address
        self.balance = balance
        self.avg_buy_price = avg_buy_price
        self.current_price = current_price
        self.invested = invested
        self.current_value = current_value
        self.realized_pnl = realized_pnl

    @property
    def pnl(self) -> float:
        """Open plus realized P&L"""
        return self.current_value - self.invested + self.realized_pnl

    @property
    def pnl_percent(self) -> float:
        if self.invested > 0:
            return self.pnl / self.invested * 100
        return 0.0

    @property
    def open_pnl(self) -> float:
        return self.current_value - self.invested

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'address': self.address,
            'balance': self.balance,
            'avg_buy_price': self.avg_buy_price,
            'current_price': self.current_price,
            'invested': self.invested,
            'current_value': self.current_value,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'realized_pnl': self.realized_pnl,
            'open_pnl': self.open_pnl
        }


class PnLReport:
    """Portfolio-level P&L derived from the ledger"""

    def __init__(self, breakdown: List[PnLBreakdown]):
        self.breakdown = breakdown
        self.total_invested = sum(b.invested for b in breakdown)
        self.current_value = sum(b.current_value for b in breakdown)
        self.realized_pnl = sum(b.realized_pnl for b in breakdown)
        self.unrealized_pnl = self.current_value - self.total_invested
        self.total_pnl = self.unrealized_pnl + self.realized_pnl
        self.total_pnl_percent = (self.total_pnl / self.total_invested * 100) if self.total_invested > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_pnl': self.total_pnl,
            'total_pnl_percent': self.total_pnl_percent,
            'realized_pnl': self.realized_pnl,
            'unrealized_pnl': self.unrealized_pnl,
            'total_invested': self.total_invested,
            'current_value': self.current_value,
            'breakdown': [b.to_dict() for b in self.breakdown]
        }


class CostBasisLedger:
    """
    CostBasisLedger maintains per asset:
    - balance (whole tokens)
    - total invested (USD cost of the balance still held)
    - realized P&L (USD, locked in by outflows)

    Assets are keyed by lowercase token address, or by uppercase symbol
    when no address is known.
    """

    def __init__(self,
                 storage: Optional[StorageBackend] = None,
                 dust_threshold: float = 0.01,
                 storage_key: str = STORAGE_KEY):
        """
        Initialize the ledger

        Args:
            storage (StorageBackend, optional): Persistence port for save()/load()
            dust_threshold (float): P&L below which closed assets are left out of reports
            storage_key (str): Key of the ledger blob in the persistence port
        """
        self.storage = storage
        self.dust_threshold = dust_threshold
        self.storage_key = storage_key
        self.assets: Dict[str, LedgerState] = {}
        self.addresses: Dict[str, str] = {}

        # Assets with explicit transaction history
        self.transaction_assets = set()
        # Assets currently valued from first-seen positions
        self.bootstrapped_assets = set()
        self.bootstrapped_positions = set()
        self.applied_transactions = set()

    @classmethod
    def from_config(cls,
                    config_manager,
                    storage: Optional[StorageBackend] = None,
                    storage_key: str = STORAGE_KEY) -> 'CostBasisLedger':
        return cls(storage=storage,
                   dust_threshold=config_manager.get('performance.dust_threshold', 0.01),
                   storage_key=storage_key)

    @staticmethod
    def asset_key(address: Optional[str], symbol: Optional[str]) -> str:
        if address:
            return address.lower()
        return (symbol or '').upper()

    def _get_state(self, key: str, symbol: Optional[str], address: Optional[str]) -> LedgerState:
        state = self.assets.get(key)
        if state is None:
            state = LedgerState(symbol=symbol or key)
            self.assets[key] = state
            self.addresses[key] = address or ''
        elif symbol and (not state.symbol or state.symbol == key):
            state.symbol = symbol
        return state

    def _inflow(self, state: LedgerState, amount: float, value: float):
        state.balance += amount
        state.total_invested += value

    def _outflow(self, state: LedgerState, amount: float, value: float):
        matches_balance = math.isclose(amount, state.balance, rel_tol=BALANCE_REL_TOLERANCE)

        if amount > state.balance and not matches_balance:
            logger.warning(f"Outflow of {amount} {state.symbol} exceeds tracked balance {state.balance}, "
                           f"untracked units carry no cost basis")

        if matches_balance or amount >= state.balance:
            # Full close: all remaining cost leaves with it
            cost_removed = state.total_invested
            state.balance = 0.0
            state.total_invested = 0.0
        else:
            cost_removed = amount * state.average_cost
            state.balance -= amount
            state.total_invested -= cost_removed
            if state.total_invested < 0:
                state.total_invested = 0.0

        state.realized_pnl += value - cost_removed

    def _claim_for_transactions(self, key: str):
        """Transaction history replaces any position-based bootstrap for the asset"""
        if key in self.bootstrapped_assets:
            logger.info(f"Discarding position-based cost basis for {key}, transaction history takes over")
            self.assets.pop(key, None)
            self.bootstrapped_assets.discard(key)
        self.transaction_assets.add(key)

    def apply_transaction(self, tx: Transaction):
        """
        Apply one transaction. The inflow leg is applied before the outflow
        leg; a swap applies both at the transaction's USD value.

        Args:
            tx (Transaction): Transaction to apply
        """
        if tx.hash and tx.hash in self.applied_transactions:
            logger.debug(f"Transaction {tx.hash} already applied, skipping")
            return

        if (tx.token_in or tx.symbol_in) and tx.amount_in and tx.amount_in > 0:
            key = self.asset_key(tx.token_in, tx.symbol_in)
            self._claim_for_transactions(key)
            state = self._get_state(key, tx.symbol_in, tx.token_in)
            self._inflow(state, tx.amount_in, tx.value_usd)

        if (tx.token_out or tx.symbol_out) and tx.amount_out and tx.amount_out > 0:
            key = self.asset_key(tx.token_out, tx.symbol_out)
            self._claim_for_transactions(key)
            state = self._get_state(key, tx.symbol_out, tx.token_out)
            self._outflow(state, tx.amount_out, tx.value_usd)

        if tx.hash:
            self.applied_transactions.add(tx.hash)

        accounting_logger.info(f"Applied {tx.tx_type} {tx.hash} ({tx.value_usd:.2f} USD)")

    def apply_transactions(self, transactions: Iterable[Transaction]):
        """Apply transactions in timestamp order"""
        for tx in sorted(transactions, key=lambda t: t.timestamp):
            self.apply_transaction(tx)

    def apply_position(self, position: Position) -> bool:
        """
        Bootstrap cost basis from a position the first time its id is seen.
        Only assets without transaction history are touched, and debt
        positions are ignored.

        Args:
            position (Position): Observed position

        Returns:
            bool: True if the position contributed to the ledger
        """
        if position.id in self.bootstrapped_positions or position.is_debt:
            return False

        self.bootstrapped_positions.add(position.id)
        applied = False

        for token in position.tokens:
            amount = float(token.amount)
            if amount <= 0:
                continue

            key = self.asset_key(token.address, token.symbol)
            if key in self.transaction_assets:
                continue

            state = self._get_state(key, token.symbol, token.address)
            self._inflow(state, amount, token.value)
            self.bootstrapped_assets.add(key)
            applied = True

        if applied:
            accounting_logger.info(f"Bootstrapped cost basis from position {position.id} "
                                   f"({position.value:.2f} USD)")
        return applied

    def get_state(self, key: str) -> Optional[LedgerState]:
        state = self.assets.get(key)
        return state.copy() if state else None

    def snapshot(self) -> Dict[str, LedgerState]:
        """
        Get a copy of every asset's ledger state

        Returns:
            Dict[str, LedgerState]: Asset key to state
        """
        return {key: state.copy() for key, state in self.assets.items()}

    def calculate_pnl(self, prices: Dict[str, float]) -> PnLReport:
        """
        Calculate P&L at current prices

        Args:
            prices (Dict[str, float]): Current prices keyed by symbol (or asset key)

        Returns:
            PnLReport: Totals plus per-asset breakdown
        """
        upper_prices = {symbol.upper(): price for symbol, price in prices.items()}
        breakdown = []

        for key, state in self.assets.items():
            price = prices.get(key)
            if price is None:
                price = upper_prices.get(state.symbol.upper(), 0.0)
            price = price if price and price > 0 else 0.0

            row = PnLBreakdown(
                symbol=state.symbol,
                address=self.addresses.get(key, ''),
                balance=state.balance,
                avg_buy_price=state.average_cost,
                current_price=price,
                invested=state.total_invested,
                current_value=state.balance * price,
                realized_pnl=state.realized_pnl
            )

            # Dust
            if abs(row.pnl) <= self.dust_threshold and row.balance <= 0:
                continue
            breakdown.append(row)

        return PnLReport(breakdown)

    def reset(self):
        self.assets = {}
        self.addresses = {}
        self.transaction_assets = set()
        self.bootstrapped_assets = set()
        self.bootstrapped_positions = set()
        self.applied_transactions = set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'assets': {key: state.to_dict() for key, state in self.assets.items()},
            'addresses': dict(self.addresses),
            'transaction_assets': sorted(self.transaction_assets),
            'bootstrapped_assets': sorted(self.bootstrapped_assets),
            'bootstrapped_positions': sorted(self.bootstrapped_positions),
            'applied_transactions': sorted(self.applied_transactions)
        }

    def save(self):
        """
        Persist the ledger

        Raises:
            PersistenceError: If no storage is configured or the write fails
        """
        if self.storage is None:
            raise PersistenceError("Cost-basis ledger has no storage configured")
        self.storage.set(self.storage_key, self.to_dict())
        accounting_logger.info(f"Saved cost-basis ledger ({len(self.assets)} assets)")

    def load(self) -> bool:
        """
        Load the ledger from storage, replacing in-memory state

        Returns:
            bool: False if nothing was stored

        Raises:
            PersistenceError: If the stored blob is unreadable
        """
        if self.storage is None:
            raise PersistenceError("Cost-basis ledger has no storage configured")

        blob = self.storage.get(self.storage_key)
        if blob is None:
            return False

        self.restore(blob)
        logger.info(f"Loaded cost-basis ledger ({len(self.assets)} assets)")
        return True

    def restore(self, blob: Dict[str, Any]):
        """
        Replace in-memory state with the output of to_dict()

        Raises:
            PersistenceError: If the blob is malformed
        """
        try:
            assets = {key: LedgerState.from_dict(data) for key, data in blob['assets'].items()}
            addresses = dict(blob.get('addresses', {}))
            transaction_assets = set(blob.get('transaction_assets', []))
            bootstrapped_assets = set(blob.get('bootstrapped_assets', []))
            bootstrapped_positions = set(blob.get('bootstrapped_positions', []))
            applied_transactions = set(blob.get('applied_transactions', []))
        except (KeyError, TypeError, AttributeError) as e:
            raise PersistenceError(f"Corrupt cost-basis ledger data: {str(e)}") from e

        self.assets = assets
        self.addresses = addresses
        self.transaction_assets = transaction_assets
        self.bootstrapped_assets = bootstrapped_assets
        self.bootstrapped_positions = bootstrapped_positions
        self.applied_transactions = applied_transactions
