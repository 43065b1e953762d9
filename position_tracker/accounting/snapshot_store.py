"""
Snapshot Store
Durable per-position entry anchors and daily valuation snapshots, kept as
one blob per wallet in the persistence port:

    {positionEntries, dailySnapshots, lastSnapshotTimestamp}

At most one snapshot set is recorded per UTC calendar day, an empty
position list records nothing, and snapshots older than the retention
horizon are pruned on write. Every write builds the new state first and
swaps it in only after storage accepted it.
"""

import logging
import time
from datetime import datetime, timezone, date
from typing import Dict, Any, List, Optional, Callable

from position_tracker.core.models import Position, PositionEntry, PositionSnapshot
from position_tracker.core.storage import StorageBackend, PersistenceError

logger = logging.getLogger(__name__)
accounting_logger = logging.getLogger('accounting')

STORAGE_KEY = 'performance-data'
SECONDS_PER_DAY = 24 * 60 * 60


def utc_day(timestamp: float) -> date:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


def wallet_storage_key(wallet_address: str) -> str:
    return f"{STORAGE_KEY}:{wallet_address.lower()}"


class SnapshotUpdate:
    """Candidate store state computed from a position list, not yet persisted"""

    def __init__(self,
                 entries: Dict[str, PositionEntry],
                 snapshots: List[PositionSnapshot],
                 last_snapshot_timestamp: float,
                 new_entries: List[str],
                 snapshot_taken: bool):
        self.entries = entries
        self.snapshots = snapshots
        self.last_snapshot_timestamp = last_snapshot_timestamp
        self.new_entries = new_entries
        self.snapshot_taken = snapshot_taken

    @property
    def changed(self) -> bool:
        return bool(self.new_entries) or self.snapshot_taken


class SnapshotStore:
    """
    SnapshotStore keeps:
    - one PositionEntry per position id, written once and never overwritten
    - daily PositionSnapshots within the retention window
    """

    def __init__(self,
                 storage: StorageBackend,
                 retention_days: int = 90,
                 group_window: float = 3600,
                 clock: Callable[[], float] = time.time,
                 storage_key: str = STORAGE_KEY):
        """
        Initialize the store and load persisted state

        Args:
            storage (StorageBackend): Persistence port
            retention_days (int): Snapshots older than this are pruned on write
            group_window (float): Snapshots within this many seconds belong to one set
            clock (Callable): Time source returning seconds
            storage_key (str): Key of this store's blob in the persistence port

        Raises:
            PersistenceError: If the stored blob is unreadable
        """
        self.storage = storage
        self.retention_days = retention_days
        self.group_window = group_window
        self.clock = clock
        self.storage_key = storage_key

        self.entries: Dict[str, PositionEntry] = {}
        self.snapshots: List[PositionSnapshot] = []
        self.last_snapshot_timestamp: float = 0

        self._load()

    @classmethod
    def from_config(cls,
                    config_manager,
                    storage: StorageBackend,
                    clock: Callable[[], float] = time.time,
                    storage_key: str = STORAGE_KEY) -> 'SnapshotStore':
        return cls(
            storage=storage,
            clock=clock,
            storage_key=storage_key,
            retention_days=config_manager.get('performance.retention_days', 90),
            group_window=config_manager.get('performance.snapshot_group_window', 3600)
        )

    def _load(self):
        blob = self.storage.get(self.storage_key)
        if blob is None:
            return
        self._apply_blob(blob)
        logger.debug(f"Loaded {len(self.entries)} position entries and {len(self.snapshots)} snapshots")

    def _apply_blob(self, blob: Dict[str, Any]):
        try:
            entries = {
                position_id: PositionEntry.from_dict(data)
                for position_id, data in blob.get('positionEntries', {}).items()
            }
            snapshots = [PositionSnapshot.from_dict(data) for data in blob.get('dailySnapshots', [])]
            last_snapshot_timestamp = float(blob.get('lastSnapshotTimestamp') or 0)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceError(f"Corrupt performance data: {str(e)}") from e

        self.entries = entries
        self.snapshots = snapshots
        self.last_snapshot_timestamp = last_snapshot_timestamp

    @staticmethod
    def _to_blob(entries: Dict[str, PositionEntry],
                 snapshots: List[PositionSnapshot],
                 last_snapshot_timestamp: float) -> Dict[str, Any]:
        return {
            'positionEntries': {pid: entry.to_dict() for pid, entry in entries.items()},
            'dailySnapshots': [s.to_dict() for s in snapshots],
            'lastSnapshotTimestamp': last_snapshot_timestamp
        }

    def _commit(self,
                entries: Dict[str, PositionEntry],
                snapshots: List[PositionSnapshot],
                last_snapshot_timestamp: float):
        self.storage.set(self.storage_key, self._to_blob(entries, snapshots, last_snapshot_timestamp))
        self.entries = entries
        self.snapshots = snapshots
        self.last_snapshot_timestamp = last_snapshot_timestamp

    def has_snapshot_for_day(self, timestamp: float, snapshots: Optional[List[PositionSnapshot]] = None) -> bool:
        day = utc_day(timestamp)
        snapshots = self.snapshots if snapshots is None else snapshots
        return any(utc_day(s.timestamp) == day for s in snapshots)

    def prepare_update(self, positions: List[Position], now: Optional[float] = None) -> SnapshotUpdate:
        """
        Compute the state that recording these positions would produce:
        entries for unseen ids plus today's snapshot set if none exists yet.
        Nothing is persisted.

        Args:
            positions (List[Position]): Current positions
            now (float, optional): Current timestamp

        Returns:
            SnapshotUpdate: Candidate state
        """
        now = self.clock() if now is None else now

        entries = dict(self.entries)
        new_entries = []
        for position in positions:
            if position.id not in entries:
                entries[position.id] = PositionEntry.from_position(position, now)
                new_entries.append(position.id)

        snapshots = list(self.snapshots)
        last_snapshot_timestamp = self.last_snapshot_timestamp
        snapshot_taken = False

        if positions and not self.has_snapshot_for_day(now):
            snapshots.extend(PositionSnapshot.from_position(p, now) for p in positions)
            cutoff = now - self.retention_days * SECONDS_PER_DAY
            snapshots = [s for s in snapshots if s.timestamp > cutoff]
            last_snapshot_timestamp = now
            snapshot_taken = True

        return SnapshotUpdate(entries, snapshots, last_snapshot_timestamp, new_entries, snapshot_taken)

    def commit(self, update: SnapshotUpdate):
        """
        Persist a prepared update

        Args:
            update (SnapshotUpdate): Update from prepare_update()

        Raises:
            PersistenceError: If the write fails; in-memory state is left unchanged
        """
        if not update.changed:
            return
        self._commit(update.entries, update.snapshots, update.last_snapshot_timestamp)
        if update.new_entries:
            accounting_logger.info(f"Recorded entries for {len(update.new_entries)} new positions")
        if update.snapshot_taken:
            accounting_logger.info(f"Recorded daily snapshot at {update.last_snapshot_timestamp:.0f} "
                                   f"({len(update.snapshots)} snapshots retained)")

    def track_position_entry(self, position: Position, now: Optional[float] = None) -> bool:
        """
        Record the entry anchor of a position if its id has not been seen

        Returns:
            bool: True if a new entry was written
        """
        return self.track_position_entries([position], now) == 1

    def track_position_entries(self, positions: List[Position], now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        entries = dict(self.entries)
        added = 0
        for position in positions:
            if position.id not in entries:
                entries[position.id] = PositionEntry.from_position(position, now)
                added += 1

        if added:
            self._commit(entries, self.snapshots, self.last_snapshot_timestamp)
            accounting_logger.info(f"Recorded entries for {added} new positions")
        return added

    def take_snapshot(self, positions: List[Position], now: Optional[float] = None) -> bool:
        """
        Record one snapshot per position unless today's set already exists or
        there is nothing to record

        Args:
            positions (List[Position]): Current positions
            now (float, optional): Current timestamp

        Returns:
            bool: True if a snapshot set was written
        """
        now = self.clock() if now is None else now
        if not positions or self.has_snapshot_for_day(now):
            return False

        snapshots = list(self.snapshots)
        snapshots.extend(PositionSnapshot.from_position(p, now) for p in positions)
        cutoff = now - self.retention_days * SECONDS_PER_DAY
        snapshots = [s for s in snapshots if s.timestamp > cutoff]

        self._commit(self.entries, snapshots, now)
        accounting_logger.info(f"Recorded daily snapshot for {len(positions)} positions")
        return True

    def get_entry(self, position_id: str) -> Optional[PositionEntry]:
        return self.entries.get(position_id)

    def closest_snapshot(self,
                         target: float,
                         snapshots: Optional[List[PositionSnapshot]] = None) -> Optional[PositionSnapshot]:
        """
        Get the snapshot nearest to a timestamp

        Args:
            target (float): Target timestamp
            snapshots (List[PositionSnapshot], optional): Snapshots to search instead of the stored ones

        Returns:
            Optional[PositionSnapshot]: Snapshot with minimum distance; the earlier one on ties
        """
        snapshots = self.snapshots if snapshots is None else snapshots
        closest = None
        for snapshot in snapshots:
            if closest is None or abs(snapshot.timestamp - target) < abs(closest.timestamp - target):
                closest = snapshot
        return closest

    def snapshot_total_at(self,
                          timestamp: float,
                          snapshots: Optional[List[PositionSnapshot]] = None) -> float:
        """Sum of all snapshot values taken within the group window of a timestamp"""
        snapshots = self.snapshots if snapshots is None else snapshots
        return sum(s.value for s in snapshots if abs(s.timestamp - timestamp) < self.group_window)

    def get_position_snapshots(self,
                               position_id: str,
                               snapshots: Optional[List[PositionSnapshot]] = None) -> List[PositionSnapshot]:
        snapshots = self.snapshots if snapshots is None else snapshots
        return sorted((s for s in snapshots if s.position_id == position_id), key=lambda s: s.timestamp)

    def remove_position_tracking(self, position_id: str) -> bool:
        """
        Forget a closed position: its entry and every snapshot of it

        Returns:
            bool: True if anything was removed
        """
        entries = dict(self.entries)
        removed_entry = entries.pop(position_id, None) is not None
        snapshots = [s for s in self.snapshots if s.position_id != position_id]

        if not removed_entry and len(snapshots) == len(self.snapshots):
            return False

        self._commit(entries, snapshots, self.last_snapshot_timestamp)
        accounting_logger.info(f"Removed tracking for position {position_id}")
        return True

    def clear_all_data(self):
        self.storage.delete(self.storage_key)
        self.entries = {}
        self.snapshots = []
        self.last_snapshot_timestamp = 0
        accounting_logger.info("Cleared all performance data")

    def export_data(self) -> Dict[str, Any]:
        return self._to_blob(self.entries, self.snapshots, self.last_snapshot_timestamp)

    def import_data(self, blob: Dict[str, Any]):
        """
        Replace stored state with an exported blob

        Args:
            blob (Dict[str, Any]): Data from export_data()

        Raises:
            PersistenceError: If the blob is malformed or cannot be written
        """
        previous = (self.entries, self.snapshots, self.last_snapshot_timestamp)
        self._apply_blob(blob)
        try:
            self._commit(self.entries, self.snapshots, self.last_snapshot_timestamp)
        except PersistenceError:
            self.entries, self.snapshots, self.last_snapshot_timestamp = previous
            raise

    def get_historical_data(self, days: int = 30, now: Optional[float] = None) -> List[PositionSnapshot]:
        """
        Get snapshots from the last N days, oldest first

        Args:
            days (int): Look-back window in days
            now (float, optional): Current timestamp

        Returns:
            List[PositionSnapshot]: Snapshots sorted by timestamp
        """
        now = self.clock() if now is None else now
        cutoff = now - days * SECONDS_PER_DAY
        return sorted((s for s in self.snapshots if s.timestamp > cutoff), key=lambda s: s.timestamp)

    def get_portfolio_value_history(self, days: int = 30, now: Optional[float] = None) -> List[Dict[str, float]]:
        """
        Get total snapshot value per UTC day

        Returns:
            List[Dict[str, float]]: [{'timestamp': day start, 'value': total}] sorted by day
        """
        totals: Dict[date, float] = {}
        for snapshot in self.get_historical_data(days, now):
            day = utc_day(snapshot.timestamp)
            totals[day] = totals.get(day, 0.0) + snapshot.value

        history = []
        for day in sorted(totals):
            day_start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp()
            history.append({'timestamp': day_start, 'value': totals[day]})
        return history
