"""
Market regime detector.

Pulls candles for the reference pair, classifies the regime, attaches the
optional sentiment reading and feeds the RegimeCache. Computation failures
never block the caller: ``get_regime`` returns the neutral fallback and
keeps the error on ``last_error`` for logging.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from tradekeeper.domain.models import RegimeSnapshot, SentimentReading
from tradekeeper.exceptions import InsufficientDataError, OperationalError, RegimeComputationError
from tradekeeper.monitoring.logger import get_logger
from tradekeeper.regime.cache import RegimeCache
from tradekeeper.regime.classifier import RegimeClassification, RegimeClassifier

logger = get_logger(__name__)


class RegimeDetector:
    """
    Args:
        client: ExchangeClient (``get_klines``)
        config: RegimeConfig
        sentiment: SentimentProvider, or None to skip sentiment
        state_store: RegimeStateStore so the streak survives restarts
        classifier: RegimeClassifier override (tests)
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        client: Any,
        config: Any,
        *,
        sentiment: Optional[Any] = None,
        state_store: Optional[Any] = None,
        classifier: Optional[RegimeClassifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.config = config
        self.sentiment = sentiment
        self.classifier = classifier or RegimeClassifier()
        self.last_error: Optional[BaseException] = None

        self.cache = RegimeCache(
            self._compute,
            validity=timedelta(hours=config.cache_validity_hours),
            confirmation_threshold=config.confirmation_threshold,
            max_history=config.max_history,
            state_store=state_store,
            clock=clock,
        )

    async def initialize(self) -> Optional[RegimeSnapshot]:
        """Restore the persisted streak."""
        return await self.cache.load()

    async def _read_sentiment(self) -> Optional[SentimentReading]:
        if self.sentiment is None or not self.sentiment.enabled:
            return None
        try:
            return await asyncio.wait_for(
                self.sentiment.get_reading(),
                timeout=self.config.sentiment.timeout_seconds,
            )
        except (OperationalError, asyncio.TimeoutError) as e:
            logger.debug("Sentiment skipped", error=str(e))
            return None

    async def _compute(self) -> RegimeClassification:
        candles = await self.client.get_klines(
            self.config.symbol, self.config.timeframe, self.config.kline_limit
        )
        if len(candles) < self.config.min_candles:
            raise InsufficientDataError(
                f"Need {self.config.min_candles} valid candles for {self.config.symbol} "
                f"{self.config.timeframe}, got {len(candles)}",
                available=len(candles),
                required=self.config.min_candles,
            )

        classification = self.classifier.classify(candles)
        return replace(classification, sentiment=await self._read_sentiment())

    def is_trading_blocked(self, snapshot: RegimeSnapshot) -> bool:
        """Confidence below the configured minimum blocks new entries."""
        return snapshot.confidence_pct < self.config.minimum_regime_confidence

    async def get_regime(self, force_recompute: bool = False) -> RegimeSnapshot:
        """
        Current regime snapshot; recomputed when the cache is stale or forced.

        On failure returns ``{neutral, 0.5, unconfirmed, 0 periods}`` and sets
        ``last_error``.
        """
        try:
            snapshot = await self.cache.get_or_compute(force_recompute)
        except RegimeComputationError as e:
            cause = e.__cause__ or e
            self.last_error = cause
            logger.warning(
                "REGIME_FALLBACK",
                symbol=self.config.symbol,
                timeframe=self.config.timeframe,
                error=str(cause),
                error_type=type(cause).__name__,
            )
            return e.fallback

        self.last_error = None
        if self.is_trading_blocked(snapshot):
            logger.info(
                "REGIME_BLOCKING",
                regime=snapshot.regime.value,
                confidence_pct=snapshot.confidence_pct,
                minimum=self.config.minimum_regime_confidence,
            )
        return snapshot
