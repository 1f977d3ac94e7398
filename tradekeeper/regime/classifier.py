"""
Market regime classifier.

Scores three candidate regimes (uptrend, downtrend, ranging) from the
latest indicator readings and picks the strict winner; ties resolve to
neutral. Confidence is a separate 0..1 score built from trend strength,
momentum and volatility, clamped to [0.1, 1.0].
"""
import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import pandas as pd

from tradekeeper.domain.models import Candle, Regime, SentimentReading
from tradekeeper.strategy.indicators import Indicators

ADX_TREND_LEVEL = 25.0
BBW_EXPANDED = 0.04
BBW_SQUEEZED = 0.03
RSI_BULLISH = 60.0
RSI_BEARISH = 40.0


@dataclass(frozen=True)
class IndicatorReadings:
    """Latest value of every indicator the classifier uses. None = unavailable."""
    price: Optional[float] = None
    ema: Optional[float] = None
    sma: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    rsi: Optional[float] = None
    adx: Optional[float] = None
    atr: Optional[float] = None
    bbw: Optional[float] = None
    obv: Optional[float] = None
    volume_sma: Optional[float] = None
    volume_roc: Optional[float] = None

    def to_dict(self) -> Dict[str, float]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class RegimeClassification:
    regime: Regime
    confidence: float
    scores: Dict[str, float]
    readings: IndicatorReadings
    sentiment: Optional[SentimentReading] = None


def _last(series: pd.Series) -> Optional[float]:
    if series is None or len(series) == 0:
        return None
    value = float(series.iloc[-1])
    if math.isnan(value) or math.isinf(value):
        return None
    return value


class RegimeClassifier:
    """
    Args:
        ema_period: short trend filter
        sma_period: long trend filter (MA200)
        adx_period / rsi_period / atr_period: standard 14
        bb_period: Bollinger window (20)
    """

    def __init__(
        self,
        ema_period: int = 20,
        sma_period: int = 200,
        adx_period: int = 14,
        rsi_period: int = 14,
        atr_period: int = 14,
        bb_period: int = 20,
    ):
        self.ema_period = ema_period
        self.sma_period = sma_period
        self.adx_period = adx_period
        self.rsi_period = rsi_period
        self.atr_period = atr_period
        self.bb_period = bb_period

    def readings(self, candles: List[Candle]) -> IndicatorReadings:
        macd = Indicators.calculate_macd(candles)
        adx = Indicators.calculate_adx(candles, self.adx_period)
        return IndicatorReadings(
            price=float(candles[-1].close) if candles else None,
            ema=_last(Indicators.calculate_ema(candles, self.ema_period)),
            sma=_last(Indicators.calculate_sma(candles, self.sma_period)),
            macd=_last(macd['macd']),
            macd_signal=_last(macd['signal']),
            rsi=_last(Indicators.calculate_rsi(candles, self.rsi_period)),
            adx=_last(adx[f'ADX_{self.adx_period}']),
            atr=_last(Indicators.calculate_atr(candles, self.atr_period)),
            bbw=_last(Indicators.calculate_bollinger_width(candles, self.bb_period)),
            obv=_last(Indicators.calculate_obv(candles)),
            volume_sma=_last(Indicators.calculate_volume_sma(candles)),
            volume_roc=_last(Indicators.calculate_volume_roc(candles)),
        )

    @staticmethod
    def score(r: IndicatorReadings) -> Dict[str, float]:
        up = down = ranging = 0.0

        if r.price is not None and r.ema is not None:
            if r.price > r.ema:
                up += 20
            else:
                down += 20

        if r.price is not None and r.sma is not None:
            if r.price > r.sma:
                up += 15
            else:
                down += 15

        if r.macd is not None and r.macd_signal is not None:
            points = min(15.0, abs(r.macd - r.macd_signal) * 1000)
            if r.macd > r.macd_signal:
                up += points
            else:
                down += points

        if r.rsi is not None:
            if r.rsi > RSI_BULLISH:
                up += min(10.0, (r.rsi - RSI_BULLISH) * 0.25)
            elif r.rsi < RSI_BEARISH:
                down += min(10.0, (RSI_BEARISH - r.rsi) * 0.25)
            else:
                ranging += 5

        # Strong trend / wide bands reinforce whichever trend already leads
        if r.adx is not None:
            if r.adx > ADX_TREND_LEVEL:
                boost = min(20.0, (r.adx - ADX_TREND_LEVEL) * 0.5)
                if up > down:
                    up += boost
                elif down > up:
                    down += boost
            else:
                ranging += min(15.0, (ADX_TREND_LEVEL - r.adx) * 0.6)

        if r.bbw is not None:
            if r.bbw > BBW_EXPANDED:
                bonus = min(8.0, r.bbw * 100)
                if up > down:
                    up += bonus
                elif down > up:
                    down += bonus
            else:
                ranging += min(12.0, (BBW_EXPANDED - r.bbw) * 200)

        return {
            Regime.UPTREND.value: up,
            Regime.DOWNTREND.value: down,
            Regime.RANGING.value: ranging,
        }

    @staticmethod
    def pick(scores: Dict[str, float]) -> Regime:
        """Strict maximum wins; any tie for the top is neutral."""
        up = scores[Regime.UPTREND.value]
        down = scores[Regime.DOWNTREND.value]
        ranging = scores[Regime.RANGING.value]
        if up > down and up > ranging:
            return Regime.UPTREND
        if down > up and down > ranging:
            return Regime.DOWNTREND
        if ranging > up and ranging > down:
            return Regime.RANGING
        return Regime.NEUTRAL

    @staticmethod
    def confidence(regime: Regime, r: IndicatorReadings) -> float:
        confidence = 0.5
        trending = regime in (Regime.UPTREND, Regime.DOWNTREND)

        if r.adx is not None:
            if r.adx > ADX_TREND_LEVEL:
                confidence += min(0.3, (r.adx - ADX_TREND_LEVEL) / 100)
            else:
                confidence -= min(0.2, (ADX_TREND_LEVEL - r.adx) / 100)

        if r.macd is not None and r.macd_signal is not None:
            confidence += min(0.15, abs(r.macd - r.macd_signal) * 10)

        if r.rsi is not None and (
            (regime == Regime.UPTREND and r.rsi > RSI_BULLISH)
            or (regime == Regime.DOWNTREND and r.rsi < RSI_BEARISH)
        ):
            confidence += min(0.1, abs(r.rsi - 50) / 500)

        if r.bbw is not None:
            if regime == Regime.RANGING and r.bbw < BBW_SQUEEZED:
                confidence += min(0.1, (BBW_SQUEEZED - r.bbw) * 2)
            elif trending and r.bbw > BBW_EXPANDED:
                confidence += min(0.1, r.bbw * 2)

        return max(0.1, min(1.0, confidence))

    def classify(self, candles: List[Candle]) -> RegimeClassification:
        readings = self.readings(candles)
        scores = self.score(readings)
        regime = self.pick(scores)
        return RegimeClassification(
            regime=regime,
            confidence=self.confidence(regime, readings),
            scores=scores,
            readings=readings,
        )
