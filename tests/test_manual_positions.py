"""
Tests for manual position storage and the manual position source.
"""

import pytest

from position_tracker.core.models import PositionKind
from position_tracker.sources.base import StaticPriceSource
from position_tracker.sources.manual_positions import (
    ManualPositionSource,
    ManualPositionStore,
    STORAGE_KEY,
)

WALLET = "0xAbC0000000000000000000000000000000000001"


@pytest.fixture
def store(storage, clock):
    return ManualPositionStore(storage, clock=clock)


def staking_data(**overrides):
    data = {
        "wallet_address": WALLET,
        "protocol": "mamo",
        "kind": "staking",
        "tokens": [{"symbol": "MAMO", "amount": "1000", "decimals": 18, "address": "0xmamo"}],
        "apy": 12.5,
        "claimable_amount": "20",
        "description": "MAMO staking vault",
    }
    data.update(overrides)
    return data


def test_add_and_get(store, storage, clock):
    position_id = store.add_position(staking_data())

    position = store.get_position(position_id)
    assert position.kind == PositionKind.STAKING
    assert position.created_at == clock.now
    assert position_id in storage.get(STORAGE_KEY)["positions"]


def test_missing_fields_are_rejected(store):
    with pytest.raises(ValueError, match="tokens"):
        store.add_position(staking_data(tokens=[]))


def test_update_keeps_id_and_creation_time(store, clock):
    position_id = store.add_position(staking_data())
    clock.advance(100)

    assert store.update_position(position_id, {"apy": 15, "id": "hijack", "created_at": 0})
    assert not store.update_position("missing", {"apy": 1})

    position = store.get_position(position_id)
    assert position.apy == 15
    assert position.id == position_id
    assert position.updated_at == position.created_at + 100


def test_wallet_filter_is_case_insensitive_and_skips_inactive(store):
    active = store.add_position(staking_data())
    inactive = store.add_position(staking_data())
    store.update_position(inactive, {"is_active": False})
    store.add_position(staking_data(wallet_address="0xother"))

    assert [p.id for p in store.get_positions_for_wallet(WALLET.lower())] == [active]


def test_positions_persist_across_instances(store, storage):
    position_id = store.add_position(staking_data())

    assert ManualPositionStore(storage).get_position(position_id) is not None

    assert store.remove_position(position_id)
    assert not store.remove_position(position_id)
    assert ManualPositionStore(storage).get_all_positions() == []


def test_export_and_import(store):
    store.add_position(staking_data())
    exported = store.export_positions()

    result = store.import_positions(exported + [{"protocol": "broken"}])

    assert result["imported"] == 1
    assert not result["success"]
    assert len(result["errors"]) == 1
    assert len(store.get_all_positions()) == 2


@pytest.mark.asyncio
async def test_source_prices_manual_positions(store):
    position_id = store.add_position(staking_data())
    source = ManualPositionSource(store, StaticPriceSource({"MAMO": 0.12}))

    positions = await source.fetch_positions(WALLET)

    assert len(positions) == 1
    position = positions[0]
    assert position.id == f"manual-{position_id}"
    assert position.protocol == "manual"
    assert position.value == pytest.approx(120)
    assert position.claimable == pytest.approx(2.4)
    assert position.metadata.payload["protocol"] == "mamo"
    assert position.tokens[0].balance == str(1000 * 10 ** 18)


@pytest.mark.asyncio
async def test_source_with_unknown_price_values_at_zero(store):
    store.add_position(staking_data(claimable_amount=None))
    source = ManualPositionSource(store, StaticPriceSource())

    positions = await source.fetch_positions(WALLET)

    assert positions[0].value == 0
    assert positions[0].claimable == 0
