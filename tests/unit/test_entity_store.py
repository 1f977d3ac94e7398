"""
SQLAlchemy entity store against in-memory SQLite.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from tradekeeper.domain.models import Position, PositionStatus, Regime, RegimeObservation, RegimeSnapshot
from tradekeeper.domain.protocols import Entity
from tradekeeper.exceptions import ValidationError
from tradekeeper.storage.db import Database
from tradekeeper.storage.repository import RegimeStateStore, SqlEntityStore


@pytest.fixture
def store():
    db = Database("sqlite:///:memory:")
    db.create_all()
    yield SqlEntityStore(db, timeout_seconds=15)
    db.drop_all()


@pytest.mark.asyncio
async def test_position_roundtrip(store, make_position):
    position = make_position(wallet_id="testnet-main")
    await store.create(Entity.POSITION.value, position.to_record())

    rows = await store.filter(Entity.POSITION.value, {"position_id": "pos-1"})

    assert len(rows) == 1
    restored = Position.from_record(rows[0])
    assert restored.quantity == Decimal("1")
    assert restored.entry_price == Decimal("100")
    assert restored.entry_timestamp == position.entry_timestamp
    assert restored.wallet_id == "testnet-main"


@pytest.mark.asyncio
async def test_filter_with_list_matches_any(store, make_position):
    await store.create(Entity.POSITION.value, make_position(id="a", position_id="a").to_record())
    await store.create(Entity.POSITION.value, make_position(id="b", position_id="b", status=PositionStatus.TRAILING).to_record())
    await store.create(
        Entity.POSITION.value,
        make_position(id="c", position_id="c", status=PositionStatus.CLOSED, quantity=Decimal("0")).to_record(),
    )

    rows = await store.filter(Entity.POSITION.value, {"trading_mode": "testnet", "status": ["open", "trailing"]})

    assert sorted(r["id"] for r in rows) == ["a", "b"]


@pytest.mark.asyncio
async def test_create_assigns_id(store, t0):
    created = await store.create(Entity.WALLET_STATE.value, {"trading_mode": "testnet", "last_updated": t0})
    assert created["id"]
    assert [r["id"] for r in await store.list(Entity.WALLET_STATE.value)] == [created["id"]]


@pytest.mark.asyncio
async def test_update_and_delete(store, make_position):
    await store.create(Entity.POSITION.value, make_position().to_record())

    updated = await store.update(Entity.POSITION.value, "rec-1", {"current_price": Decimal("99.5")})
    assert updated["current_price"] == Decimal("99.5")

    await store.delete(Entity.POSITION.value, "rec-1")
    assert await store.list(Entity.POSITION.value) == []


@pytest.mark.asyncio
async def test_missing_record_and_unknown_fields_raise(store):
    with pytest.raises(ValidationError):
        await store.delete(Entity.POSITION.value, "nope")
    with pytest.raises(ValidationError):
        await store.update(Entity.POSITION.value, "nope", {"current_price": 1})
    with pytest.raises(ValidationError):
        await store.filter(Entity.POSITION.value, {"colour": "red"})
    with pytest.raises(ValidationError):
        await store.list("Widget")


@pytest.mark.asyncio
async def test_regime_state_roundtrip(store, t0):
    snapshot = RegimeSnapshot(
        regime=Regime.UPTREND,
        confidence=0.72,
        consecutive_periods=2,
        regime_history=(
            RegimeObservation(Regime.RANGING, t0 - timedelta(hours=8)),
            RegimeObservation(Regime.UPTREND, t0 - timedelta(hours=4)),
            RegimeObservation(Regime.UPTREND, t0),
        ),
        calculated_at=t0,
        indicators={"adx": 31.5, "bbw": 0.05},
    )
    states = RegimeStateStore(store, "BTC/USDT", "4h")
    assert await states.load() is None

    await states.save(snapshot)
    await states.save(snapshot)  # second save updates in place

    assert len(await store.list(Entity.REGIME_STATE.value)) == 1
    restored = await RegimeStateStore(store, "BTC/USDT", "4h").load()
    assert restored == snapshot
    assert await RegimeStateStore(store, "ETH/USDT", "4h").load() is None


def test_unsupported_database_url():
    with pytest.raises(ValueError):
        Database("mysql://localhost/db")
