"""
Market sentiment providers.

Sentiment is an optional capability: the Fear & Greed client attaches a
reading to regime snapshots on a best-effort basis; the disabled provider
is swapped in when the feature is off. A failing provider never blocks
regime computation.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp

from tradekeeper.domain.models import SentimentReading
from tradekeeper.exceptions import SentimentUnavailableError
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)


def parse_fear_greed(payload) -> SentimentReading:
    """Parse ``{"data": [{"value", "value_classification", "timestamp"}]}``."""
    try:
        item = payload["data"][0]
        value = int(item["value"])
        classification = str(item["value_classification"])
        ts = datetime.fromtimestamp(int(item["timestamp"]), tz=timezone.utc)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise SentimentUnavailableError(f"Unexpected Fear & Greed payload: {e}") from e
    return SentimentReading(value=value, classification=classification, timestamp=ts)


class DisabledSentimentProvider:
    """No-op provider."""

    @property
    def enabled(self) -> bool:
        return False

    async def get_reading(self) -> Optional[SentimentReading]:
        return None


class FearGreedSentimentProvider:
    """
    Fear & Greed index client with its own failure counter and backoff.

    - Fetches at most once per ``fetch_interval_seconds``; in between the
      cached reading is returned.
    - After a failure the next attempt waits ``interval * 2**(failures-1)``,
      capped at ``max_backoff_seconds``.
    - Logs once when a failure streak starts, once more at the
      ``warn_again_after_failures``-th consecutive failure, and once on recovery.
    """

    def __init__(
        self,
        url: str = "https://api.alternative.me/fng/?limit=1",
        fetch_interval_seconds: float = 30.0,
        timeout_seconds: float = 15.0,
        max_backoff_seconds: float = 600.0,
        warn_again_after_failures: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.fetch_interval_seconds = fetch_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.warn_again_after_failures = warn_again_after_failures
        self._clock = clock

        self.consecutive_failures = 0
        self._last_attempt: Optional[float] = None
        self._last_reading: Optional[SentimentReading] = None

    @property
    def enabled(self) -> bool:
        return True

    def _next_attempt_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.fetch_interval_seconds
        backoff = self.fetch_interval_seconds * (2 ** (self.consecutive_failures - 1))
        return min(backoff, self.max_backoff_seconds)

    async def _fetch(self) -> SentimentReading:
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.url) as resp:
                    if resp.status != 200:
                        raise SentimentUnavailableError(f"Fear & Greed HTTP {resp.status}")
                    payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SentimentUnavailableError(f"Fear & Greed request failed: {e}") from e
        return parse_fear_greed(payload)

    async def get_reading(self) -> Optional[SentimentReading]:
        """Latest reading, or the last good one when a fetch is not due / fails."""
        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self._next_attempt_delay():
            return self._last_reading

        self._last_attempt = now
        try:
            reading = await self._fetch()
        except SentimentUnavailableError as e:
            self.consecutive_failures += 1
            if self.consecutive_failures == 1:
                logger.warning("SENTIMENT_UNAVAILABLE", error=str(e))
            elif self.consecutive_failures == self.warn_again_after_failures:
                logger.warning(
                    "SENTIMENT_STILL_UNAVAILABLE",
                    consecutive_failures=self.consecutive_failures,
                    next_retry_seconds=self._next_attempt_delay(),
                    error=str(e),
                )
            return self._last_reading

        if self.consecutive_failures:
            logger.info("SENTIMENT_RECOVERED", failures=self.consecutive_failures, value=reading.value)
        self.consecutive_failures = 0
        self._last_reading = reading
        return reading
