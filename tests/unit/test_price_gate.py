"""
Exit price gate: deviation bounds, source/freshness checks, fetch helper.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradekeeper.config.config import PriceGateConfig
from tradekeeper.domain.models import PriceSource, PriceTick, Ticker24h
from tradekeeper.exceptions import ExchangeTimeoutError
from tradekeeper.execution import (
    PriceContext,
    PriceGate,
    fetch_validated_exit_price,
    validate_exit_price,
)
from tradekeeper.execution.price_gate import (
    REASON_DEVIATION,
    REASON_INVALID_ENTRY,
    REASON_NON_NUMERIC,
    REASON_NON_POSITIVE,
    REASON_OK,
    REASON_STALE_PRICE,
    REASON_STATISTIC_SOURCE,
)


@pytest.fixture
def gate(clock):
    return PriceGate(clock=clock)


def _old_entry(clock):
    return PriceContext(entry_timestamp=clock.now - timedelta(hours=1))


def test_within_band_accepted(gate, clock):
    result = gate.validate(Decimal("119"), Decimal("100"), _old_entry(clock))
    assert result.accepted
    assert result.reason == REASON_OK
    assert result.deviation_pct == pytest.approx(0.19)


def test_beyond_band_rejected(gate, clock):
    result = gate.validate(Decimal("121"), Decimal("100"), _old_entry(clock))
    assert not result.accepted
    assert result.reason == REASON_DEVIATION
    assert result.deviation_pct == pytest.approx(0.21)


def test_band_edges_inclusive(gate, clock):
    assert gate.validate(Decimal("120"), Decimal("100"), _old_entry(clock)).accepted
    assert gate.validate(Decimal("80"), Decimal("100"), _old_entry(clock)).accepted
    assert not gate.validate(Decimal("79.99"), Decimal("100"), _old_entry(clock)).accepted


@pytest.mark.parametrize("candidate", [None, "120", float("nan"), float("inf"), True, object()])
def test_non_numeric_candidate_rejected(gate, candidate):
    result = gate.validate(candidate, Decimal("100"))
    assert not result.accepted
    assert result.reason == REASON_NON_NUMERIC


@pytest.mark.parametrize("candidate", [0, -5, Decimal("0")])
def test_non_positive_candidate_rejected(gate, candidate):
    result = gate.validate(candidate, Decimal("100"))
    assert result.reason == REASON_NON_POSITIVE


@pytest.mark.parametrize("entry", [0, -1, None])
def test_invalid_entry_rejected(gate, entry):
    result = gate.validate(Decimal("100"), entry)
    assert not result.accepted
    assert result.reason == REASON_INVALID_ENTRY


def test_24h_statistic_rejected_even_when_close(gate, clock):
    stat = Ticker24h(
        symbol="BTC/USDT",
        last_price=Decimal("100"),
        price_change_percent=Decimal("1.5"),
        observed_at=clock.now,
    )
    assert gate.validate(stat, Decimal("100")).reason == REASON_STATISTIC_SOURCE

    ctx = PriceContext(source=PriceSource.TICKER_24H, observed_at=clock.now)
    assert gate.validate(Decimal("100"), Decimal("100"), ctx).reason == REASON_STATISTIC_SOURCE


def test_stale_observation_rejected(gate, clock):
    ctx = PriceContext(source=PriceSource.TICKER_PRICE, observed_at=clock.now - timedelta(seconds=121))
    assert gate.validate(Decimal("100"), Decimal("100"), ctx).reason == REASON_STALE_PRICE

    fresh = PriceContext(source=PriceSource.TICKER_PRICE, observed_at=clock.now - timedelta(seconds=30))
    assert gate.validate(Decimal("100"), Decimal("100"), fresh).accepted


def test_young_position_uses_grace_band(gate, clock):
    young = PriceContext(entry_timestamp=clock.now - timedelta(minutes=2))
    assert gate.validate(Decimal("140"), Decimal("100"), young).accepted
    assert not gate.validate(Decimal("151"), Decimal("100"), young).accepted

    # Past the grace window the normal band applies again
    clock.advance(minutes=4)
    assert not gate.validate(Decimal("140"), Decimal("100"), young).accepted


def test_from_config():
    gate = PriceGate.from_config(PriceGateConfig(max_deviation_pct=0.05))
    assert gate.validate(Decimal("104"), Decimal("100")).accepted
    assert not gate.validate(Decimal("106"), Decimal("100")).accepted


def test_module_level_validator_uses_default_band():
    assert validate_exit_price(119.0, 100.0).accepted
    assert not validate_exit_price(121.0, 100.0).accepted


@pytest.mark.asyncio
async def test_fetch_validated_exit_price_accepts_fresh_tick(gate, clock, make_position):
    position = make_position(entry_price=Decimal("100"))
    tick = PriceTick("BTC/USDT", Decimal("110"), PriceSource.TICKER_PRICE, clock.now)
    client = MagicMock()
    client.get_ticker_price = AsyncMock(return_value=tick)

    assert await fetch_validated_exit_price(client, position, gate) is tick
    client.get_ticker_price.assert_awaited_once_with("BTC/USDT")


@pytest.mark.asyncio
async def test_fetch_validated_exit_price_skips_on_rejection(gate, clock, make_position):
    position = make_position(entry_price=Decimal("100"))
    tick = PriceTick("BTC/USDT", Decimal("300"), PriceSource.TICKER_PRICE, clock.now)
    client = MagicMock()
    client.get_ticker_price = AsyncMock(return_value=tick)

    assert await fetch_validated_exit_price(client, position, gate) is None


@pytest.mark.asyncio
async def test_fetch_validated_exit_price_skips_on_fetch_failure(gate, make_position):
    client = MagicMock()
    client.get_ticker_price = AsyncMock(side_effect=ExchangeTimeoutError("timed out"))

    assert await fetch_validated_exit_price(client, make_position(), gate) is None
