"""
Regime cache: validity window, confirmation streak, fallback, persistence.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradekeeper.domain.models import Regime, RegimeObservation, RegimeSnapshot
from tradekeeper.exceptions import ExchangeTimeoutError, RegimeComputationError, StoreError
from tradekeeper.regime.cache import CacheState, RegimeCache
from tradekeeper.regime.classifier import IndicatorReadings, RegimeClassification


def _classification(regime: Regime, confidence: float = 0.8) -> RegimeClassification:
    return RegimeClassification(
        regime=regime,
        confidence=confidence,
        scores={},
        readings=IndicatorReadings(adx=30.0, bbw=0.05),
    )


def _sequence(*regimes):
    return AsyncMock(side_effect=[_classification(r) for r in regimes])


@pytest.mark.asyncio
async def test_cached_value_served_within_validity(clock):
    compute = _sequence(Regime.UPTREND, Regime.DOWNTREND)
    cache = RegimeCache(compute, clock=clock)

    first = await cache.get_or_compute()
    clock.advance(minutes=59)
    second = await cache.get_or_compute()

    assert second is first
    assert compute.await_count == 1
    assert cache.state == CacheState.CACHED_VALID

    clock.advance(minutes=2)
    assert cache.state == CacheState.CACHED_STALE
    third = await cache.get_or_compute()
    assert third.regime == Regime.DOWNTREND
    assert compute.await_count == 2


@pytest.mark.asyncio
async def test_force_recompute_bypasses_cache(clock):
    compute = _sequence(Regime.UPTREND, Regime.UPTREND)
    cache = RegimeCache(compute, clock=clock)

    await cache.get_or_compute()
    snapshot = await cache.get_or_compute(force_recompute=True)

    assert compute.await_count == 2
    assert snapshot.consecutive_periods == 2


@pytest.mark.asyncio
async def test_streak_confirms_on_third_identical_regime(clock):
    cache = RegimeCache(_sequence(Regime.UPTREND, Regime.UPTREND, Regime.UPTREND), clock=clock)

    results = []
    for _ in range(3):
        results.append(await cache.get_or_compute(force_recompute=True))

    assert [s.consecutive_periods for s in results] == [1, 2, 3]
    assert [s.is_confirmed for s in results] == [False, False, True]
    assert len(results[-1].regime_history) == 3


@pytest.mark.asyncio
async def test_regime_change_resets_streak(clock):
    cache = RegimeCache(
        _sequence(Regime.UPTREND, Regime.UPTREND, Regime.UPTREND, Regime.DOWNTREND),
        clock=clock,
    )
    for _ in range(3):
        await cache.get_or_compute(force_recompute=True)

    snapshot = await cache.get_or_compute(force_recompute=True)

    assert snapshot.regime == Regime.DOWNTREND
    assert snapshot.consecutive_periods == 1
    assert not snapshot.is_confirmed


@pytest.mark.asyncio
async def test_history_is_capped(clock):
    cache = RegimeCache(_sequence(*([Regime.RANGING] * 5)), max_history=3, clock=clock)
    for _ in range(5):
        snapshot = await cache.get_or_compute(force_recompute=True)

    assert len(snapshot.regime_history) == 3
    assert snapshot.consecutive_periods == 5


@pytest.mark.asyncio
async def test_failure_leaves_cache_and_streak_untouched(clock):
    compute = AsyncMock(side_effect=[
        _classification(Regime.UPTREND),
        _classification(Regime.UPTREND),
        ExchangeTimeoutError("klines timed out"),
        _classification(Regime.UPTREND),
    ])
    cache = RegimeCache(compute, clock=clock)
    await cache.get_or_compute(force_recompute=True)
    before = await cache.get_or_compute(force_recompute=True)

    with pytest.raises(RegimeComputationError) as excinfo:
        await cache.get_or_compute(force_recompute=True)

    fallback = excinfo.value.fallback
    assert fallback.regime == Regime.NEUTRAL
    assert fallback.confidence == 0.5
    assert fallback.consecutive_periods == 0
    assert not fallback.is_confirmed
    assert fallback.is_fallback
    assert isinstance(excinfo.value.__cause__, ExchangeTimeoutError)
    assert cache.snapshot is before

    after = await cache.get_or_compute(force_recompute=True)
    assert after.consecutive_periods == 3
    assert after.is_confirmed


@pytest.mark.asyncio
async def test_reset_clears_state(clock):
    cache = RegimeCache(_sequence(Regime.UPTREND, Regime.UPTREND), clock=clock)
    await cache.get_or_compute()
    cache.reset()

    assert cache.state == CacheState.EMPTY
    snapshot = await cache.get_or_compute()
    assert snapshot.consecutive_periods == 1


@pytest.mark.asyncio
async def test_snapshot_carries_indicators(clock):
    snapshot = await RegimeCache(_sequence(Regime.UPTREND), clock=clock).get_or_compute()
    assert snapshot.indicators == {"adx": 30.0, "bbw": 0.05}
    assert snapshot.calculated_at == clock.now


@pytest.mark.asyncio
async def test_load_restores_streak(clock, t0):
    restored = RegimeSnapshot(
        regime=Regime.UPTREND,
        confidence=0.7,
        consecutive_periods=2,
        regime_history=(
            RegimeObservation(Regime.UPTREND, t0 - timedelta(hours=8)),
            RegimeObservation(Regime.UPTREND, t0 - timedelta(hours=4)),
        ),
        calculated_at=t0 - timedelta(hours=4),
    )
    store = MagicMock()
    store.load = AsyncMock(return_value=restored)
    store.save = AsyncMock()
    cache = RegimeCache(_sequence(Regime.UPTREND), state_store=store, clock=clock)

    assert await cache.load() is restored
    assert cache.state == CacheState.CACHED_STALE

    snapshot = await cache.get_or_compute()
    assert snapshot.consecutive_periods == 3
    assert snapshot.is_confirmed
    store.save.assert_awaited_once_with(snapshot)


@pytest.mark.asyncio
async def test_load_ignores_persisted_fallback(clock, t0):
    store = MagicMock()
    store.load = AsyncMock(return_value=RegimeSnapshot.neutral_fallback(now=t0))
    cache = RegimeCache(_sequence(Regime.UPTREND), state_store=store, clock=clock)

    assert await cache.load() is None
    assert cache.state == CacheState.EMPTY


@pytest.mark.asyncio
async def test_save_failure_does_not_fail_computation(clock):
    store = MagicMock()
    store.save = AsyncMock(side_effect=StoreError("db down"))
    cache = RegimeCache(_sequence(Regime.UPTREND), state_store=store, clock=clock)

    snapshot = await cache.get_or_compute()

    assert snapshot.regime == Regime.UPTREND
    assert cache.snapshot is snapshot
