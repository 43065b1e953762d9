"""
Performance Tracker
Derives unrealized P&L, day/week/month changes, best and worst performers
and per-protocol attribution from current positions, their entry anchors
and the daily snapshots in the SnapshotStore.

Metrics are computed against a prepared (unpersisted) store update; the
update is written only once the metrics have been computed.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional

from position_tracker.core.models import Position, PositionEntry, PositionSnapshot
from position_tracker.accounting.snapshot_store import SnapshotStore, SECONDS_PER_DAY

logger = logging.getLogger(__name__)

# Window name -> length in days
TIME_WINDOWS = {
    'daily': 1,
    'weekly': 7,
    'monthly': 30
}


def _percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole > 0 else 0.0


class TokenPerformance:
    """Current vs entry valuation of one token inside a position"""

    def __init__(self,
                 symbol: str,
                 current_amount: str,
                 current_price: float,
                 current_value: float,
                 entry_price: float,
                 entry_value: float):
        self.symbol = symbol
        self.current_amount = current_amount
        self.current_price = current_price
        self.current_value = current_value
        self.entry_price = entry_price
        self.entry_value = entry_value
        self.pnl = current_value - entry_value
        self.pnl_percent = _percent(self.pnl, entry_value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'current_amount': self.current_amount,
            'current_price': self.current_price,
            'current_value': self.current_value,
            'entry_price': self.entry_price,
            'entry_value': self.entry_value,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent
        }


class PositionPerformance:
    """Performance of one position since its entry"""

    def __init__(self,
                 position_id: str,
                 protocol: str,
                 kind: str,
                 current_value: float,
                 entry_value: float,
                 tokens: List[TokenPerformance],
                 peak_value: Optional[float] = None,
                 trough_value: Optional[float] = None,
                 best_performance_date: Optional[float] = None,
                 worst_performance_date: Optional[float] = None):
        self.position_id = position_id
        self.protocol = protocol
        self.kind = kind
        self.current_value = current_value
        self.entry_value = entry_value
        self.unrealized_pnl = current_value - entry_value
        self.unrealized_pnl_percent = _percent(self.unrealized_pnl, entry_value)
        self.tokens = tokens
        self.peak_value = peak_value
        self.trough_value = trough_value
        self.best_performance_date = best_performance_date
        self.worst_performance_date = worst_performance_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'protocol': self.protocol,
            'kind': self.kind,
            'current_value': self.current_value,
            'entry_value': self.entry_value,
            'unrealized_pnl': self.unrealized_pnl,
            'unrealized_pnl_percent': self.unrealized_pnl_percent,
            'tokens': [t.to_dict() for t in self.tokens],
            'peak_value': self.peak_value,
            'trough_value': self.trough_value,
            'best_performance_date': self.best_performance_date,
            'worst_performance_date': self.worst_performance_date
        }


class ProtocolPerformance:
    """Aggregated performance of every position at one protocol"""

    def __init__(self, protocol: str):
        self.protocol = protocol
        self.total_current_value = 0.0
        self.total_entry_value = 0.0
        self.unrealized_pnl = 0.0
        self.unrealized_pnl_percent = 0.0
        self.position_count = 0
        self.contribution_to_portfolio = 0.0

    def add(self, performance: PositionPerformance):
        self.total_current_value += performance.current_value
        self.total_entry_value += performance.entry_value
        self.unrealized_pnl += performance.unrealized_pnl
        self.position_count += 1

    def finalize(self, total_portfolio_pnl: float):
        self.unrealized_pnl_percent = _percent(self.unrealized_pnl, self.total_entry_value)
        if total_portfolio_pnl != 0:
            self.contribution_to_portfolio = self.unrealized_pnl / total_portfolio_pnl * 100
        else:
            self.contribution_to_portfolio = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'protocol': self.protocol,
            'total_current_value': self.total_current_value,
            'total_entry_value': self.total_entry_value,
            'unrealized_pnl': self.unrealized_pnl,
            'unrealized_pnl_percent': self.unrealized_pnl_percent,
            'position_count': self.position_count,
            'contribution_to_portfolio': self.contribution_to_portfolio
        }


class PerformanceMetrics:
    """Portfolio performance; derived on demand and never persisted"""

    def __init__(self,
                 positions: List[PositionPerformance],
                 changes: Dict[str, Dict[str, float]],
                 protocol_performance: Dict[str, ProtocolPerformance],
                 best_performer: Optional[PositionPerformance],
                 worst_performer: Optional[PositionPerformance],
                 timestamp: float):
        self.positions = positions
        self.total_value = sum(p.current_value for p in positions)
        self.total_entry_value = sum(p.entry_value for p in positions)
        self.unrealized_pnl = self.total_value - self.total_entry_value
        self.unrealized_pnl_percent = _percent(self.unrealized_pnl, self.total_entry_value)
        self.changes = changes
        self.protocol_performance = protocol_performance
        self.best_performer = best_performer
        self.worst_performer = worst_performer
        self.timestamp = timestamp

    @property
    def daily_change(self) -> float:
        return self.changes['daily']['change']

    @property
    def daily_change_percent(self) -> float:
        return self.changes['daily']['percent']

    @property
    def weekly_change(self) -> float:
        return self.changes['weekly']['change']

    @property
    def weekly_change_percent(self) -> float:
        return self.changes['weekly']['percent']

    @property
    def monthly_change(self) -> float:
        return self.changes['monthly']['change']

    @property
    def monthly_change_percent(self) -> float:
        return self.changes['monthly']['percent']

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_value': self.total_value,
            'total_entry_value': self.total_entry_value,
            'unrealized_pnl': self.unrealized_pnl,
            'unrealized_pnl_percent': self.unrealized_pnl_percent,
            'daily_change': self.daily_change,
            'daily_change_percent': self.daily_change_percent,
            'weekly_change': self.weekly_change,
            'weekly_change_percent': self.weekly_change_percent,
            'monthly_change': self.monthly_change,
            'monthly_change_percent': self.monthly_change_percent,
            'best_performer': self.best_performer.to_dict() if self.best_performer else None,
            'worst_performer': self.worst_performer.to_dict() if self.worst_performer else None,
            'protocol_performance': {name: p.to_dict() for name, p in self.protocol_performance.items()},
            'positions': [p.to_dict() for p in self.positions],
            'timestamp': self.timestamp
        }


class PerformanceTracker:
    """
    PerformanceTracker computes PerformanceMetrics from:
    - the current position list
    - entry anchors and daily snapshots held by the SnapshotStore
    """

    def __init__(self, store: SnapshotStore):
        """
        Initialize the tracker

        Args:
            store (SnapshotStore): Entry and snapshot store
        """
        self.store = store

    def calculate_performance_metrics(self,
                                      positions: List[Position],
                                      now: Optional[float] = None,
                                      persist: bool = True) -> PerformanceMetrics:
        """
        Calculate portfolio performance. Unseen positions get an entry
        anchor and today's snapshot set is taken if missing; both are
        written only after the metrics are computed.

        Args:
            positions (List[Position]): Current positions
            now (float, optional): Current timestamp
            persist (bool): Write new entries and today's snapshot

        Returns:
            PerformanceMetrics: Computed metrics

        Raises:
            PersistenceError: If the store update cannot be written
        """
        now = self.store.clock() if now is None else now
        update = self.store.prepare_update(positions, now)

        performances = []
        for position in positions:
            entry = update.entries.get(position.id)
            if entry is None:
                continue
            performances.append(self.calculate_position_performance(position, entry, update.snapshots))

        total_value = sum(p.current_value for p in performances)
        changes = self.calculate_time_based_changes(update.snapshots, total_value, now)

        best = None
        worst = None
        for performance in performances:
            # Strict comparisons keep the first-seen position on ties
            if best is None or performance.unrealized_pnl_percent > best.unrealized_pnl_percent:
                best = performance
            if worst is None or performance.unrealized_pnl_percent < worst.unrealized_pnl_percent:
                worst = performance

        total_pnl = total_value - sum(p.entry_value for p in performances)
        protocol_performance = self.calculate_protocol_performance(performances, total_pnl)

        metrics = PerformanceMetrics(performances, changes, protocol_performance, best, worst, now)

        if persist:
            self.store.commit(update)

        logger.debug(f"Performance for {len(performances)} positions: "
                     f"{format_pnl(metrics.unrealized_pnl)} ({format_pnl_percent(metrics.unrealized_pnl_percent)})")
        return metrics

    def calculate_position_performance(self,
                                       position: Position,
                                       entry: PositionEntry,
                                       snapshots: Optional[List[PositionSnapshot]] = None) -> PositionPerformance:
        """
        Calculate performance of one position against its entry anchor

        Args:
            position (Position): Current position
            entry (PositionEntry): Entry anchor of the position
            snapshots (List[PositionSnapshot], optional): Snapshots used for peak/trough

        Returns:
            PositionPerformance: Position performance
        """
        tokens = []
        for token in position.tokens:
            entry_token = entry.token_entry(token.symbol)
            if entry_token is None:
                tokens.append(TokenPerformance(
                    symbol=token.symbol,
                    current_amount=token.balance,
                    current_price=token.unit_price,
                    current_value=token.value,
                    entry_price=token.unit_price,
                    entry_value=token.value
                ))
                continue

            entry_price = float(entry_token.get('entry_price') or 0.0)
            entry_value = float(self._entry_amount(entry_token)) * entry_price
            tokens.append(TokenPerformance(
                symbol=token.symbol,
                current_amount=token.balance,
                current_price=token.unit_price,
                current_value=token.value,
                entry_price=entry_price,
                entry_value=entry_value
            ))

        current_value = position.value
        peak_value = current_value
        trough_value = current_value
        best_date = None
        worst_date = None

        history = self.store.get_position_snapshots(position.id, snapshots)
        if history:
            peak_value = max([current_value] + [s.value for s in history])
            trough_value = min([current_value] + [s.value for s in history])
            best_date = next((s.timestamp for s in history if s.value == peak_value), None)
            worst_date = next((s.timestamp for s in history if s.value == trough_value), None)

        return PositionPerformance(
            position_id=position.id,
            protocol=position.protocol,
            kind=position.kind.value,
            current_value=current_value,
            entry_value=entry.entry_value,
            tokens=tokens,
            peak_value=peak_value,
            trough_value=trough_value,
            best_performance_date=best_date,
            worst_performance_date=worst_date
        )

    @staticmethod
    def _entry_amount(entry_token: Dict[str, Any]) -> Decimal:
        try:
            raw = Decimal(str(entry_token.get('balance', '0')))
        except InvalidOperation:
            return Decimal(0)
        return raw.scaleb(-int(entry_token.get('decimals', 18)))

    def calculate_time_based_changes(self,
                                     snapshots: List[PositionSnapshot],
                                     current_total: float,
                                     now: float) -> Dict[str, Dict[str, float]]:
        """
        Compare the current total with the snapshot set closest to each window start

        Args:
            snapshots (List[PositionSnapshot]): Snapshot history
            current_total (float): Current portfolio value
            now (float): Current timestamp

        Returns:
            Dict[str, Dict[str, float]]: Window name -> {'change', 'percent', 'baseline'}
        """
        changes = {}
        for name, days in TIME_WINDOWS.items():
            closest = self.store.closest_snapshot(now - days * SECONDS_PER_DAY, snapshots)
            if closest is not None:
                baseline = self.store.snapshot_total_at(closest.timestamp, snapshots)
            else:
                baseline = current_total

            change = current_total - baseline
            changes[name] = {
                'change': change,
                'percent': _percent(change, baseline),
                'baseline': baseline
            }
        return changes

    @staticmethod
    def calculate_protocol_performance(performances: List[PositionPerformance],
                                       total_portfolio_pnl: float) -> Dict[str, ProtocolPerformance]:
        """
        Attribute P&L to protocols

        Args:
            performances (List[PositionPerformance]): Position performances
            total_portfolio_pnl (float): Unrealized P&L of the whole portfolio

        Returns:
            Dict[str, ProtocolPerformance]: Protocol -> aggregated performance
        """
        protocols: Dict[str, ProtocolPerformance] = {}
        for performance in performances:
            if performance.protocol not in protocols:
                protocols[performance.protocol] = ProtocolPerformance(performance.protocol)
            protocols[performance.protocol].add(performance)

        for protocol in protocols.values():
            protocol.finalize(total_portfolio_pnl)

        return protocols


def format_pnl(pnl: float) -> str:
    """Format a USD P&L amount, e.g. +$12.00 or -$3.50"""
    sign = '+' if pnl >= 0 else '-'
    return f"{sign}${abs(pnl):.2f}"


def format_pnl_percent(pnl_percent: float) -> str:
    sign = '+' if pnl_percent >= 0 else ''
    return f"{sign}{pnl_percent:.2f}%"
