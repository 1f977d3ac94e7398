"""
Test indicator calculations used by the regime classifier.
"""
import math

import pytest

from tradekeeper.strategy.indicators import Indicators


def test_ema_follows_uptrend(make_candles):
    candles = make_candles([100 + i for i in range(50)])

    ema = Indicators.calculate_ema(candles, period=20)

    assert len(ema) == 50
    assert ema.iloc[-1] > ema.iloc[0]
    # EMA lags price in a trend
    assert ema.iloc[-1] < 149


def test_sma_partial_window(make_candles):
    candles = make_candles([10, 20, 30])

    sma = Indicators.calculate_sma(candles, period=200)

    assert sma.iloc[-1] == pytest.approx(20.0)


def test_rsi_bounds_and_direction(make_candles):
    up = Indicators.calculate_rsi(make_candles([100 + i for i in range(30)]), period=14)
    down = Indicators.calculate_rsi(make_candles([200 - i for i in range(30)]), period=14)

    assert 50 < up.iloc[-1] <= 100
    assert 0 <= down.iloc[-1] < 50


def test_rsi_flat_window_is_neutral(make_candles):
    rsi = Indicators.calculate_rsi(make_candles([100] * 20), period=14)
    assert rsi.iloc[-1] == 50.0


def test_adx_columns(make_candles):
    adx_df = Indicators.calculate_adx(make_candles([100 + 2 * i for i in range(50)]), period=14)

    assert list(adx_df.columns) == ["ADX_14", "DMP_14", "DMN_14"]
    assert len(adx_df) == 50
    assert adx_df["ADX_14"].iloc[-1] > 0
    assert adx_df["DMP_14"].iloc[-1] > adx_df["DMN_14"].iloc[-1]


def test_atr_matches_constant_range(make_candles):
    atr = Indicators.calculate_atr(make_candles([100] * 30, spread=2.0), period=14)
    assert atr.iloc[-1] == pytest.approx(4.0)


def test_macd_positive_in_uptrend(make_candles):
    macd = Indicators.calculate_macd(make_candles([100 + i for i in range(60)]))

    assert set(macd.columns) == {"macd", "signal", "histogram"}
    assert macd["macd"].iloc[-1] > 0
    assert macd["histogram"].iloc[-1] == pytest.approx(macd["macd"].iloc[-1] - macd["signal"].iloc[-1])


def test_bollinger_width_zero_when_flat(make_candles):
    width = Indicators.calculate_bollinger_width(make_candles([100] * 25), period=20)
    assert width.iloc[-1] == pytest.approx(0.0)


def test_obv_accumulates_by_direction(make_candles):
    obv = Indicators.calculate_obv(make_candles([100, 101, 102, 101], volume=10))
    assert list(obv) == [0.0, 10.0, 20.0, 10.0]


def test_volume_roc_undefined_before_period(make_candles):
    roc = Indicators.calculate_volume_roc(make_candles([100] * 5, volume=10), period=2)

    assert math.isnan(roc.iloc[0])
    assert roc.iloc[-1] == pytest.approx(0.0)


def test_empty_candles_give_empty_series():
    assert Indicators.calculate_ema([], period=20).empty
