"""
Tests for the SnapshotStore entry anchors and daily snapshots.
"""

import pytest

from conftest import NOON, DAY, make_position
from position_tracker.accounting.snapshot_store import SnapshotStore, STORAGE_KEY, wallet_storage_key
from position_tracker.core.models import PositionSnapshot
from position_tracker.core.storage import MemoryStorage, PersistenceError


class BrokenStorage(MemoryStorage):
    """Storage whose writes fail once `broken` is set"""

    def __init__(self):
        super().__init__()
        self.broken = False

    def set(self, key, blob):
        if self.broken:
            raise PersistenceError("disk full")
        super().set(key, blob)


@pytest.fixture
def store(storage, clock):
    return SnapshotStore(storage, clock=clock)


def snapshot(position_id, timestamp, value):
    return PositionSnapshot(position_id, timestamp, value, [], 0.0, "aave")


def test_one_snapshot_set_per_utc_day(store):
    positions = [make_position("aave-usdc", 100), make_position("lido-steth", 200)]

    assert store.take_snapshot(positions, NOON)
    assert not store.take_snapshot(positions, NOON + 3600)
    assert len(store.snapshots) == 2

    # 12:00 plus 12h lands on the next UTC day
    assert store.take_snapshot(positions, NOON + 12 * 3600)
    assert len(store.snapshots) == 4


def test_empty_run_does_not_claim_the_day(store):
    assert not store.take_snapshot([], NOON)
    assert not store.prepare_update([], NOON + 60).changed

    assert store.take_snapshot([make_position("aave-usdc", 100)], NOON + 3600)
    assert [s.value for s in store.snapshots] == [100]
    assert store.last_snapshot_timestamp == NOON + 3600


def test_day_gate_reads_stored_snapshots(store):
    store.import_data({"positionEntries": {}, "dailySnapshots": [], "lastSnapshotTimestamp": NOON - 60})

    assert not store.has_snapshot_for_day(NOON)
    assert store.take_snapshot([make_position("aave-usdc", 100)], NOON)
    assert store.has_snapshot_for_day(NOON)


def test_wallet_stores_are_independent(storage, clock):
    first = SnapshotStore(storage, clock=clock, storage_key=wallet_storage_key("0xAAA"))
    second = SnapshotStore(storage, clock=clock, storage_key=wallet_storage_key("0xbbb"))

    assert first.take_snapshot([make_position("a-1", 1000)], NOON)
    assert second.take_snapshot([make_position("b-1", 50)], NOON + 60)

    assert storage.get("performance-data:0xaaa")["dailySnapshots"][0]["value"] == 1000
    assert [s.position_id for s in SnapshotStore(storage, storage_key=wallet_storage_key("0xBBB")).snapshots] == ["b-1"]
    assert storage.get(STORAGE_KEY) is None


def test_snapshots_older_than_retention_are_pruned(store):
    position = make_position("aave-usdc", 100)
    store.take_snapshot([position], NOON - 91 * DAY)
    store.take_snapshot([position], NOON - 10 * DAY)

    store.take_snapshot([position], NOON)

    assert [s.timestamp for s in store.snapshots] == [NOON - 10 * DAY, NOON]


def test_entries_are_written_once(store, clock):
    position = make_position("aave-usdc", 100)

    assert store.track_position_entry(position)
    clock.advance(DAY)
    assert not store.track_position_entry(make_position("aave-usdc", 999))

    entry = store.get_entry("aave-usdc")
    assert entry.entry_value == 100
    assert entry.entry_timestamp == NOON


def test_state_survives_reload(storage, clock):
    store = SnapshotStore(storage, clock=clock)
    store.track_position_entries([make_position("aave-usdc", 100)])
    store.take_snapshot([make_position("aave-usdc", 110)])

    reloaded = SnapshotStore(storage, clock=clock)

    assert reloaded.get_entry("aave-usdc").entry_value == 100
    assert [s.value for s in reloaded.snapshots] == [110]
    assert reloaded.last_snapshot_timestamp == NOON
    assert set(storage.get(STORAGE_KEY)) == {"positionEntries", "dailySnapshots", "lastSnapshotTimestamp"}


def test_prepare_update_does_not_persist(store, storage):
    update = store.prepare_update([make_position("aave-usdc", 100)], NOON)

    assert update.changed
    assert update.new_entries == ["aave-usdc"]
    assert store.entries == {}
    assert storage.get(STORAGE_KEY) is None

    store.commit(update)
    assert store.get_entry("aave-usdc") is not None
    assert not store.prepare_update([make_position("aave-usdc", 100)], NOON).changed


def test_failed_write_leaves_memory_unchanged(clock):
    storage = BrokenStorage()
    store = SnapshotStore(storage, clock=clock)
    store.take_snapshot([make_position("aave-usdc", 100)], NOON - DAY)

    storage.broken = True
    with pytest.raises(PersistenceError):
        store.take_snapshot([make_position("aave-usdc", 120)], NOON)
    with pytest.raises(PersistenceError):
        store.track_position_entry(make_position("lido-steth", 50))

    assert len(store.snapshots) == 1
    assert store.last_snapshot_timestamp == NOON - DAY
    assert store.get_entry("lido-steth") is None


def test_closest_snapshot_prefers_earlier_on_ties(store):
    snapshots = [snapshot("a", NOON - 100, 1), snapshot("a", NOON + 100, 2), snapshot("a", NOON + 500, 3)]

    assert store.closest_snapshot(NOON, snapshots).value == 1
    assert store.closest_snapshot(NOON + 450, snapshots).value == 3
    assert store.closest_snapshot(NOON, []) is None


def test_snapshot_total_at_sums_the_group_window(store):
    snapshots = [
        snapshot("a", NOON, 100),
        snapshot("b", NOON + 60, 50),
        snapshot("a", NOON - DAY, 90),
    ]

    assert store.snapshot_total_at(NOON, snapshots) == 150
    assert store.snapshot_total_at(NOON - DAY, snapshots) == 90


def test_portfolio_value_history_groups_by_day(store):
    store.take_snapshot([make_position("a", 100), make_position("b", 50)], NOON - 2 * DAY)
    store.take_snapshot([make_position("a", 120), make_position("b", 60)], NOON - DAY)

    history = store.get_portfolio_value_history(days=30, now=NOON)

    assert [h["value"] for h in history] == [150, 180]
    assert history[0]["timestamp"] == NOON - 2 * DAY - 12 * 3600


def test_historical_data_window(store):
    store.take_snapshot([make_position("a", 100)], NOON - 40 * DAY)
    store.take_snapshot([make_position("a", 110)], NOON - 5 * DAY)

    assert [s.value for s in store.get_historical_data(days=30, now=NOON)] == [110]


def test_remove_position_tracking(store):
    store.track_position_entries([make_position("a", 1), make_position("b", 2)], NOON)
    store.take_snapshot([make_position("a", 1), make_position("b", 2)], NOON)

    assert store.remove_position_tracking("a")
    assert not store.remove_position_tracking("a")
    assert store.get_entry("a") is None
    assert [s.position_id for s in store.snapshots] == ["b"]


def test_export_import_and_clear(store, storage, clock):
    store.track_position_entries([make_position("a", 1)], NOON)
    exported = store.export_data()

    store.clear_all_data()
    assert store.entries == {}
    assert storage.get(STORAGE_KEY) is None

    store.import_data(exported)
    assert store.get_entry("a") is not None
    assert SnapshotStore(storage, clock=clock).get_entry("a") is not None


def test_corrupt_blob_raises_on_load(storage):
    storage.set(STORAGE_KEY, {"positionEntries": {"a": {"entry_value": 1}}})

    with pytest.raises(PersistenceError):
        SnapshotStore(storage)
