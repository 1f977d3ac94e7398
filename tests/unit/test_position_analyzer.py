"""
Ghost classification for individual positions.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradekeeper.domain.models import Balance
from tradekeeper.domain.protocols import Entity
from tradekeeper.reconciliation.position_analyzer import (
    REASON_INVALID_PRICES,
    REASON_LEGITIMATE,
    REASON_SEVERE_MISMATCH,
    REASON_STALE_MISMATCH,
    PositionAnalyzer,
)


def _store(trades=None):
    store = MagicMock()
    store.filter = AsyncMock(return_value=trades or [])
    return store


def _holdings(qty: str, asset: str = "BTC"):
    return {asset: Balance(asset=asset, free=Decimal(qty), locked=Decimal("0"))}


@pytest.fixture
def analyzer(clock):
    return PositionAnalyzer(_store(), clock=clock)


@pytest.mark.asyncio
async def test_matching_quantity_is_legitimate(analyzer, make_position):
    position = make_position(quantity=Decimal("10"))
    analysis = await analyzer.analyze(position, _holdings("9.6"))

    assert not analysis.is_ghost
    assert analysis.reason == REASON_LEGITIMATE
    assert analysis.factors.quantity.matches
    assert analysis.held_quantity == Decimal("9.6")
    # quantity 40 + prices 30 + young 10; no trade history
    assert analysis.confidence == 80


@pytest.mark.asyncio
async def test_severe_mismatch_is_ghost(analyzer, make_position):
    position = make_position(quantity=Decimal("10"))
    analysis = await analyzer.analyze(position, _holdings("0.9"))

    assert analysis.is_ghost
    assert analysis.reason == REASON_SEVERE_MISMATCH
    assert analysis.factors.quantity.ratio == Decimal("0.09")


@pytest.mark.asyncio
async def test_nothing_held_is_severe(analyzer, make_position):
    analysis = await analyzer.analyze(make_position(), {})
    assert analysis.is_ghost
    assert analysis.reason == REASON_SEVERE_MISMATCH
    assert analysis.held_quantity == Decimal("0")
    assert analysis.factors.quantity.ratio == Decimal("0")


@pytest.mark.asyncio
async def test_partial_mismatch_on_young_position_is_legitimate(analyzer, make_position):
    # ratio 0.5: neither a match nor severe; 2h old is not "old"
    analysis = await analyzer.analyze(make_position(quantity=Decimal("2")), _holdings("1"))
    assert not analysis.is_ghost
    assert analysis.reason == REASON_LEGITIMATE


@pytest.mark.asyncio
async def test_old_mismatch_without_trade_history_is_ghost(analyzer, make_position, t0):
    position = make_position(quantity=Decimal("2"), entry_timestamp=t0 - timedelta(hours=25))
    analysis = await analyzer.analyze(position, _holdings("1"))

    assert analysis.is_ghost
    assert analysis.reason == REASON_STALE_MISMATCH
    assert analysis.factors.age.is_old


@pytest.mark.asyncio
async def test_old_mismatch_with_trade_history_is_legitimate(clock, make_position, t0):
    store = _store(trades=[{"id": "t1", "position_id": "pos-1"}])
    analyzer = PositionAnalyzer(store, clock=clock)
    position = make_position(quantity=Decimal("2"), entry_timestamp=t0 - timedelta(hours=25))

    analysis = await analyzer.analyze(position, _holdings("1"))

    assert not analysis.is_ghost
    assert analysis.factors.has_trade_history
    store.filter.assert_awaited_once_with(
        Entity.TRADE.value, {"position_id": "pos-1", "trading_mode": "testnet"}
    )


@pytest.mark.asyncio
async def test_missing_current_price_is_ghost(analyzer, make_position):
    analysis = await analyzer.analyze(make_position(current_price=None), _holdings("1"))
    assert analysis.is_ghost
    assert analysis.reason == REASON_INVALID_PRICES


@pytest.mark.asyncio
async def test_zero_entry_price_is_ghost(analyzer, make_position):
    analysis = await analyzer.analyze(make_position(entry_price=Decimal("0")), _holdings("1"))
    assert analysis.is_ghost
    assert analysis.reason == REASON_INVALID_PRICES


@pytest.mark.asyncio
@pytest.mark.parametrize("field, value", [
    ("current_price", Decimal("NaN")),
    ("current_price", Decimal("Infinity")),
    ("entry_price", Decimal("NaN")),
])
async def test_non_finite_price_is_ghost(analyzer, make_position, field, value):
    analysis = await analyzer.analyze(make_position(**{field: value}), _holdings("1"))
    assert analysis.is_ghost
    assert analysis.reason == REASON_INVALID_PRICES


@pytest.mark.asyncio
async def test_very_new_position_needs_no_current_price(analyzer, make_position, t0):
    position = make_position(current_price=None, entry_timestamp=t0 - timedelta(minutes=2))
    analysis = await analyzer.analyze(position, _holdings("1"))
    assert not analysis.is_ghost
    assert analysis.factors.age.is_very_new


@pytest.mark.asyncio
async def test_base_asset_lookup_strips_quote(analyzer, make_position):
    position = make_position(symbol="ETHUSDT", quantity=Decimal("3"))
    analysis = await analyzer.analyze(position, _holdings("3", asset="ETH"))
    assert analysis.factors.quantity.matches


def test_quantity_check_without_expected():
    analyzer = PositionAnalyzer(_store())
    factor = analyzer.check_quantity(Decimal("0"), Decimal("1"))
    assert factor.ratio is None
    assert not factor.matches
    assert not factor.severe


@pytest.mark.asyncio
async def test_analysis_serializes(analyzer, make_position):
    data = (await analyzer.analyze(make_position(), _holdings("1"))).to_dict()
    assert data["expected_quantity"] == "1"
    assert data["factors"]["quantity"]["ratio"] == "1"
    assert data["factors"]["has_exchange_orders"] is None
