"""
Exit price validation gate.

Validates a candidate execution/exit price against the position's entry
price before any close is computed. The gate itself is pure; the async
helper at the bottom fetches a fresh current price and logs rejections.

On rejection the caller skips this close attempt and retries on the next
cycle with a freshly fetched price. There is no fallback to a second,
possibly stale, source.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from tradekeeper.domain.models import Position, PriceSource, PriceTick, Ticker24h
from tradekeeper.exceptions import OperationalError
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

# Rejection reasons
REASON_OK = "ok"
REASON_NON_NUMERIC = "non_numeric"
REASON_NON_POSITIVE = "non_positive"
REASON_INVALID_ENTRY = "invalid_entry_price"
REASON_STATISTIC_SOURCE = "statistic_source"
REASON_STALE_PRICE = "stale_price"
REASON_DEVIATION = "deviation_exceeded"


@dataclass(frozen=True)
class PriceContext:
    """Position and price-observation context travelling with a candidate."""
    entry_timestamp: Optional[datetime] = None
    source: Optional[PriceSource] = None
    observed_at: Optional[datetime] = None
    symbol: Optional[str] = None
    position_id: Optional[str] = None

    @classmethod
    def for_position(cls, position: Position, tick: Optional[PriceTick] = None) -> "PriceContext":
        return cls(
            entry_timestamp=position.entry_timestamp,
            source=tick.source if tick else None,
            observed_at=tick.observed_at if tick else None,
            symbol=position.symbol,
            position_id=position.position_id,
        )


@dataclass(frozen=True)
class PriceGateResult:
    accepted: bool
    reason: str
    deviation_pct: Optional[float] = None


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


class PriceGate:
    """
    Accepts a candidate only when:
      - it is a finite number > 0,
      - it was not taken from a 24h statistic and is not older than ``max_price_age``,
      - ``|candidate - entry| / entry <= max_deviation_pct``; positions younger
        than ``grace_window`` use ``grace_deviation_pct`` instead.
    """

    def __init__(
        self,
        max_deviation_pct: float = 0.20,
        grace_window: timedelta = timedelta(minutes=5),
        grace_deviation_pct: float = 0.50,
        max_price_age: timedelta = timedelta(seconds=120),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_deviation_pct = Decimal(str(max_deviation_pct))
        self.grace_window = grace_window
        self.grace_deviation_pct = Decimal(str(grace_deviation_pct))
        self.max_price_age = max_price_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, cfg: Any, clock: Optional[Callable[[], datetime]] = None) -> "PriceGate":
        return cls(
            max_deviation_pct=cfg.max_deviation_pct,
            grace_window=timedelta(minutes=cfg.grace_window_minutes),
            grace_deviation_pct=cfg.grace_deviation_pct,
            max_price_age=timedelta(seconds=cfg.max_price_age_seconds),
            clock=clock,
        )

    def validate(self, candidate: Any, entry_price: Any, context: Optional[PriceContext] = None) -> PriceGateResult:
        if isinstance(candidate, Ticker24h):
            return PriceGateResult(False, REASON_STATISTIC_SOURCE)

        price = _as_decimal(candidate)
        if price is None:
            return PriceGateResult(False, REASON_NON_NUMERIC)
        if price <= 0:
            return PriceGateResult(False, REASON_NON_POSITIVE)

        entry = _as_decimal(entry_price)
        if entry is None or entry <= 0:
            return PriceGateResult(False, REASON_INVALID_ENTRY)

        ctx = context or PriceContext()
        now = self._clock()

        if ctx.source == PriceSource.TICKER_24H:
            return PriceGateResult(False, REASON_STATISTIC_SOURCE)
        if ctx.observed_at is not None and now - ctx.observed_at > self.max_price_age:
            return PriceGateResult(False, REASON_STALE_PRICE)

        deviation = abs(price - entry) / entry
        tolerance = self.max_deviation_pct
        if ctx.entry_timestamp is not None and now - ctx.entry_timestamp < self.grace_window:
            tolerance = self.grace_deviation_pct

        if deviation > tolerance:
            return PriceGateResult(False, REASON_DEVIATION, float(deviation))
        return PriceGateResult(True, REASON_OK, float(deviation))


_default_gate = PriceGate()


def validate_exit_price(
    candidate: Any,
    entry_price: Any,
    context: Optional[PriceContext] = None,
    gate: Optional[PriceGate] = None,
) -> PriceGateResult:
    """Validate with the given gate, or the default 20% / 5 minute gate."""
    return (gate or _default_gate).validate(candidate, entry_price, context)


async def fetch_validated_exit_price(client: Any, position: Position, gate: PriceGate) -> Optional[PriceTick]:
    """
    Fetch a fresh current price for ``position`` and run it through the gate.

    Returns the tick when accepted, None when this close attempt should be
    skipped (rejected price or failed fetch).
    """
    try:
        tick = await client.get_ticker_price(position.symbol)
    except OperationalError as e:
        logger.warning("EXIT_PRICE_FETCH_FAILED", symbol=position.symbol, position_id=position.position_id, error=str(e))
        return None

    result = gate.validate(tick.price, position.entry_price, PriceContext.for_position(position, tick))
    if not result.accepted:
        logger.warning(
            "PRICE_GATE_REJECTED",
            symbol=position.symbol,
            position_id=position.position_id,
            candidate=str(tick.price),
            entry_price=str(position.entry_price),
            reason=result.reason,
            deviation_pct=result.deviation_pct,
        )
        return None
    return tick
