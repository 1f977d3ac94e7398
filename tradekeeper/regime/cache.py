"""
Time-boxed regime cache with a confirmation-streak state machine.

States: EMPTY -> COMPUTING -> CACHED_VALID -> CACHED_STALE -> COMPUTING -> ...

Each successful computation is appended to the regime history; the streak
(``consecutive_periods``) increments while the new regime equals the
previous one and resets to 1 otherwise. A failed computation yields the
neutral fallback to the caller and leaves both the cache and the streak
untouched.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from tradekeeper.domain.models import RegimeObservation, RegimeSnapshot
from tradekeeper.exceptions import OperationalError, RegimeComputationError
from tradekeeper.monitoring.logger import get_logger
from tradekeeper.regime.classifier import RegimeClassification

logger = get_logger(__name__)


class CacheState(str, Enum):
    EMPTY = "empty"
    COMPUTING = "computing"
    CACHED_VALID = "cached_valid"
    CACHED_STALE = "cached_stale"


class RegimeCache:
    """
    Args:
        compute: async callable producing a fresh RegimeClassification
        validity: how long a computed regime is served without recomputing
        confirmation_threshold: streak length required for ``is_confirmed``
        max_history: regime history entries kept
        state_store: optional persistence (``load()`` / ``save(snapshot)``)
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        compute: Callable[[], Awaitable[RegimeClassification]],
        validity: timedelta = timedelta(hours=1),
        confirmation_threshold: int = 3,
        max_history: int = 10,
        state_store=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._compute = compute
        self.validity = validity
        self.confirmation_threshold = confirmation_threshold
        self.max_history = max_history
        self.state_store = state_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = asyncio.Lock()
        self._computing = False
        self._snapshot: Optional[RegimeSnapshot] = None
        self._last_calculated: Optional[datetime] = None
        self._history: Tuple[RegimeObservation, ...] = ()
        self._consecutive_periods = 0

    @property
    def state(self) -> CacheState:
        if self._computing:
            return CacheState.COMPUTING
        if self._snapshot is None:
            return CacheState.EMPTY
        return CacheState.CACHED_VALID if self.is_cache_valid() else CacheState.CACHED_STALE

    @property
    def snapshot(self) -> Optional[RegimeSnapshot]:
        return self._snapshot

    def is_cache_valid(self) -> bool:
        if self._snapshot is None or self._last_calculated is None:
            return False
        return self._clock() - self._last_calculated < self.validity

    def reset(self) -> None:
        """Forget the cached regime and the streak."""
        self._snapshot = None
        self._last_calculated = None
        self._history = ()
        self._consecutive_periods = 0

    async def load(self) -> Optional[RegimeSnapshot]:
        """Restore the last persisted snapshot (streak and history) on startup."""
        if self.state_store is None:
            return None
        try:
            restored = await self.state_store.load()
        except OperationalError as e:
            logger.warning("REGIME_STATE_LOAD_FAILED", error=str(e))
            return None
        if restored is None or restored.is_fallback:
            return None

        self._history = tuple(restored.regime_history[-self.max_history:])
        self._consecutive_periods = restored.consecutive_periods
        self._snapshot = restored
        self._last_calculated = restored.calculated_at
        logger.info(
            "REGIME_STATE_RESTORED",
            regime=restored.regime.value,
            consecutive_periods=restored.consecutive_periods,
            history=len(self._history),
        )
        return restored

    def _advance_streak(self, classification: RegimeClassification, now: datetime) -> RegimeSnapshot:
        previous = self._history[-1].regime if self._history else None
        if previous == classification.regime:
            self._consecutive_periods += 1
        else:
            self._consecutive_periods = 1

        history = self._history + (RegimeObservation(regime=classification.regime, timestamp=now),)
        self._history = history[-self.max_history:]

        return RegimeSnapshot(
            regime=classification.regime,
            confidence=max(0.0, min(1.0, classification.confidence)),
            consecutive_periods=self._consecutive_periods,
            confirmation_threshold=self.confirmation_threshold,
            regime_history=self._history,
            calculated_at=now,
            indicators=classification.readings.to_dict(),
            sentiment=classification.sentiment,
        )

    async def get_or_compute(self, force_recompute: bool = False) -> RegimeSnapshot:
        """
        Return the cached snapshot while valid (unless forced); otherwise compute.

        Raises:
            RegimeComputationError: computation failed; ``fallback`` holds the
                neutral snapshot and the cause is chained.
        """
        async with self._lock:
            if not force_recompute and self.is_cache_valid():
                return self._snapshot

            self._computing = True
            try:
                classification = await self._compute()
            except Exception as e:
                fallback = RegimeSnapshot.neutral_fallback(self.confirmation_threshold, self._clock())
                raise RegimeComputationError(f"Regime computation failed: {e}", fallback=fallback) from e
            finally:
                self._computing = False

            now = self._clock()
            snapshot = self._advance_streak(classification, now)
            self._snapshot = snapshot
            self._last_calculated = now

            logger.info(
                "REGIME_CALCULATED",
                regime=snapshot.regime.value,
                confidence_pct=snapshot.confidence_pct,
                consecutive_periods=snapshot.consecutive_periods,
                is_confirmed=snapshot.is_confirmed,
                scores=classification.scores,
            )

            if self.state_store is not None:
                try:
                    await self.state_store.save(snapshot)
                except OperationalError as e:
                    # Streak stays correct in memory; next save retries
                    logger.warning("REGIME_STATE_SAVE_FAILED", error=str(e))

            return snapshot
