"""
Technical indicators for market regime classification.

Computed with pandas/numpy over candles ordered oldest first. Each function
returns a series aligned with the input candles; short histories produce a
value with a warning rather than raising, and the classifier decides whether
there is enough data.
"""
from typing import List

import numpy as np
import pandas as pd

from tradekeeper.domain.models import Candle
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

OHLCV = ('open', 'high', 'low', 'close', 'volume')


class Indicators:
    """Stateless indicator calculations."""

    @staticmethod
    def calculate_ema(candles: List[Candle], period: int = 20) -> pd.Series:
        if len(candles) < period:
            logger.warning("INDICATOR_SHORT_HISTORY", indicator="ema", candles=len(candles), period=period)
        return Indicators.frame(candles)['close'].ewm(span=period, adjust=False).mean()

    @staticmethod
    def calculate_sma(candles: List[Candle], period: int = 200) -> pd.Series:
        """
        Simple moving average.

        With fewer candles than ``period`` the average covers what is
        available (min_periods=1), so short histories still yield a value.
        """
        return Indicators.frame(candles)['close'].rolling(window=period, min_periods=1).mean()

    @staticmethod
    def calculate_adx(candles: List[Candle], period: int = 14) -> pd.DataFrame:
        """
        Average Directional Index with the directional indicators.

        Returns:
            DataFrame with ``ADX_<period>``, ``DMP_<period>`` (+DI) and
            ``DMN_<period>`` (-DI) columns
        """
        if len(candles) < period * 2:
            logger.warning("INDICATOR_SHORT_HISTORY", indicator="adx", candles=len(candles), period=period)

        df = Indicators.frame(candles)
        up_move = df['high'].diff()
        down_move = -df['low'].diff()
        plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
        minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)

        atr = Indicators._true_range(df).ewm(span=period, adjust=False).mean()
        plus_di = 100 * plus_dm.ewm(span=period, adjust=False).mean() / atr
        minus_di = 100 * minus_dm.ewm(span=period, adjust=False).mean() / atr
        dx = 100 * (plus_di - minus_di).abs() / (plus_di + minus_di)

        return pd.DataFrame({
            f'ADX_{period}': dx.ewm(span=period, adjust=False).mean(),
            f'DMP_{period}': plus_di,
            f'DMN_{period}': minus_di,
        })

    @staticmethod
    def calculate_atr(candles: List[Candle], period: int = 14) -> pd.Series:
        return Indicators._true_range(Indicators.frame(candles)).ewm(span=period, adjust=False).mean()

    @staticmethod
    def calculate_rsi(candles: List[Candle], period: int = 14) -> pd.Series:
        if len(candles) < period:
            logger.warning("INDICATOR_SHORT_HISTORY", indicator="rsi", candles=len(candles), period=period)

        delta = Indicators.frame(candles)['close'].diff()
        avg_gain = delta.clip(lower=0).ewm(span=period, adjust=False).mean()
        avg_loss = (-delta).clip(lower=0).ewm(span=period, adjust=False).mean()
        rsi = 100 - (100 / (1 + avg_gain / avg_loss))
        # Flat window (no gains, no losses) is neutral
        return rsi.fillna(50.0)

    @staticmethod
    def calculate_macd(
        candles: List[Candle],
        fast: int = 12,
        slow: int = 26,
        signal: int = 9,
    ) -> pd.DataFrame:
        """
        Calculate MACD line, signal line and histogram.

        Returns:
            DataFrame with macd, signal, histogram columns
        """
        df = Indicators.frame(candles)
        ema_fast = df['close'].ewm(span=fast, adjust=False).mean()
        ema_slow = df['close'].ewm(span=slow, adjust=False).mean()
        macd = ema_fast - ema_slow
        signal_line = macd.ewm(span=signal, adjust=False).mean()
        return pd.DataFrame({
            'macd': macd,
            'signal': signal_line,
            'histogram': macd - signal_line,
        })

    @staticmethod
    def calculate_bollinger_width(candles: List[Candle], period: int = 20, std_dev: float = 2.0) -> pd.Series:
        """
        Bollinger band width normalised by the middle band: (upper - lower) / middle.
        """
        df = Indicators.frame(candles)
        middle = df['close'].rolling(window=period, min_periods=1).mean()
        std = df['close'].rolling(window=period, min_periods=1).std(ddof=0)
        upper = middle + std_dev * std
        lower = middle - std_dev * std
        return (upper - lower) / middle

    @staticmethod
    def calculate_obv(candles: List[Candle]) -> pd.Series:
        """On-Balance Volume."""
        df = Indicators.frame(candles)
        direction = np.sign(df['close'].diff().fillna(0))
        return (direction * df['volume']).cumsum()

    @staticmethod
    def calculate_volume_sma(candles: List[Candle], period: int = 20) -> pd.Series:
        df = Indicators.frame(candles)
        return df['volume'].rolling(window=period, min_periods=1).mean()

    @staticmethod
    def calculate_volume_roc(candles: List[Candle], period: int = 14) -> pd.Series:
        """Volume rate of change in percent over ``period`` candles."""
        df = Indicators.frame(candles)
        previous = df['volume'].shift(period)
        return ((df['volume'] - previous) / previous.replace(0, np.nan)) * 100

    @staticmethod
    def _true_range(df: pd.DataFrame) -> pd.Series:
        prev_close = df['close'].shift()
        return pd.concat([
            df['high'] - df['low'],
            (df['high'] - prev_close).abs(),
            (df['low'] - prev_close).abs(),
        ], axis=1).max(axis=1)

    @staticmethod
    def frame(candles: List[Candle]) -> pd.DataFrame:
        """OHLCV float frame indexed by naive-UTC timestamp."""
        if not candles:
            return pd.DataFrame(columns=list(OHLCV), dtype=np.float64)
        index = pd.DatetimeIndex([c.timestamp.replace(tzinfo=None) for c in candles], name='timestamp')
        return pd.DataFrame(
            {col: np.fromiter((float(getattr(c, col)) for c in candles), dtype=np.float64, count=len(candles))
             for col in OHLCV},
            index=index,
        )
