"""
Ghost position analysis.

Scores one locally recorded position against exchange holdings and local
trade history, and classifies it as ghost or legitimate.

Classification (first match wins):
  1. severe quantity mismatch (held/expected < severe ratio)   -> ghost
  2. invalid prices                                              -> ghost
  3. mismatch AND no trade history AND older than the age limit  -> ghost
  4. otherwise                                                   -> legitimate

The confidence score (0-100) is diagnostic only and never gates deletion.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from tradekeeper.domain.models import Balance, Position
from tradekeeper.domain.protocols import Entity, UnknownOrderHistory
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

REASON_SEVERE_MISMATCH = "severe_quantity_mismatch"
REASON_INVALID_PRICES = "invalid_prices"
REASON_STALE_MISMATCH = "quantity_mismatch_no_trade_history_old"
REASON_LEGITIMATE = "legitimate"


@dataclass(frozen=True)
class QuantityFactor:
    expected: Decimal
    held: Decimal
    ratio: Optional[Decimal]  # None when expected <= 0
    matches: bool
    severe: bool


@dataclass(frozen=True)
class AgeFactor:
    age_hours: float
    is_old: bool
    is_very_new: bool


@dataclass(frozen=True)
class PriceFactor:
    entry_price_valid: bool
    current_price_valid: bool
    valid: bool


@dataclass(frozen=True)
class GhostFactors:
    quantity: QuantityFactor
    age: AgeFactor
    prices: PriceFactor
    has_trade_history: bool
    has_exchange_orders: Optional[bool]  # None = unknown


@dataclass(frozen=True)
class GhostAnalysis:
    """Ephemeral verdict for one position in one pass. Never persisted."""
    position_id: str
    record_id: str
    symbol: str
    expected_quantity: Decimal
    held_quantity: Decimal
    is_ghost: bool
    reason: str
    confidence: int
    factors: GhostFactors = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for logging."""
        data = asdict(self)
        data["expected_quantity"] = str(self.expected_quantity)
        data["held_quantity"] = str(self.held_quantity)
        q = data["factors"]["quantity"]
        q["expected"] = str(q["expected"])
        q["held"] = str(q["held"])
        q["ratio"] = str(q["ratio"]) if q["ratio"] is not None else None
        return data


class PositionAnalyzer:
    """
    Args:
        store: EntityStore used for the trade-history lookup
        quote_asset: quote currency stripped from symbols to find the base asset
        ghost_threshold: held/expected at or above this is a quantity match
        severe_ratio: held/expected below this is a severe mismatch
        old_after: positions older than this are "old"
        very_new_within: positions younger than this need no current price
        order_history: OrderHistoryChecker extension (default: unknown)
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        store: Any,
        *,
        quote_asset: str = "USDT",
        ghost_threshold: float = 0.95,
        severe_ratio: float = 0.10,
        old_after: timedelta = timedelta(hours=24),
        very_new_within: timedelta = timedelta(minutes=5),
        order_history: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.quote_asset = quote_asset
        self.ghost_threshold = Decimal(str(ghost_threshold))
        self.severe_ratio = Decimal(str(severe_ratio))
        self.old_after = old_after
        self.very_new_within = very_new_within
        self.order_history = order_history or UnknownOrderHistory()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, store: Any, exchange_cfg: Any, recon_cfg: Any, **kwargs) -> "PositionAnalyzer":
        return cls(
            store,
            quote_asset=exchange_cfg.quote_asset,
            ghost_threshold=recon_cfg.ghost_detection_threshold,
            severe_ratio=recon_cfg.severe_mismatch_ratio,
            old_after=timedelta(hours=recon_cfg.old_position_hours),
            very_new_within=timedelta(minutes=recon_cfg.very_new_position_minutes),
            **kwargs,
        )

    def check_quantity(self, expected: Decimal, held: Decimal) -> QuantityFactor:
        if expected <= 0:
            return QuantityFactor(expected=expected, held=held, ratio=None, matches=False, severe=False)
        ratio = held / expected if held > 0 else Decimal("0")
        return QuantityFactor(
            expected=expected,
            held=held,
            ratio=ratio,
            matches=ratio >= self.ghost_threshold,
            severe=ratio < self.severe_ratio,
        )

    def check_age(self, position: Position, now: datetime) -> AgeFactor:
        age = position.age(now)
        return AgeFactor(
            age_hours=round(age.total_seconds() / 3600, 2),
            is_old=age > self.old_after,
            is_very_new=age < self.very_new_within,
        )

    def check_prices(self, position: Position, age: AgeFactor) -> PriceFactor:
        entry_ok = position.entry_price.is_finite() and position.entry_price > 0
        current = position.current_price
        current_ok = current is not None and current.is_finite() and current > 0
        return PriceFactor(
            entry_price_valid=entry_ok,
            current_price_valid=current_ok,
            valid=entry_ok and (current_ok or age.is_very_new),
        )

    async def has_trade_history(self, position: Position) -> bool:
        """A closed Trade referencing the position's business key exists."""
        trades = await self.store.filter(
            Entity.TRADE.value,
            {"position_id": position.position_id, "trading_mode": position.trading_mode.value},
        )
        return len(trades) > 0

    @staticmethod
    def classify(factors: GhostFactors) -> tuple[bool, str]:
        q = factors.quantity
        if q.severe:
            return True, REASON_SEVERE_MISMATCH
        if not factors.prices.valid:
            return True, REASON_INVALID_PRICES
        if not q.matches and not factors.has_trade_history and factors.age.is_old:
            return True, REASON_STALE_MISMATCH
        return False, REASON_LEGITIMATE

    @staticmethod
    def score(factors: GhostFactors) -> int:
        confidence = 0
        if factors.quantity.matches:
            confidence += 40
        if factors.prices.valid:
            confidence += 30
        if factors.has_trade_history:
            confidence += 20
        if not factors.age.is_old:
            confidence += 10
        return confidence

    async def analyze(self, position: Position, holdings: Mapping[str, Balance]) -> GhostAnalysis:
        """
        Analyze one position against ``holdings`` (asset -> Balance, quote excluded).

        Raises:
            OperationalError: the trade-history lookup failed
        """
        now = self._clock()
        base = position.base_asset(self.quote_asset)
        holding = holdings.get(base)
        held = holding.total if holding is not None else Decimal("0")

        age = self.check_age(position, now)
        factors = GhostFactors(
            quantity=self.check_quantity(position.quantity, held),
            age=age,
            prices=self.check_prices(position, age),
            has_trade_history=await self.has_trade_history(position),
            has_exchange_orders=await self.order_history.has_orders(position),
        )
        is_ghost, reason = self.classify(factors)

        return GhostAnalysis(
            position_id=position.position_id,
            record_id=position.id,
            symbol=position.symbol,
            expected_quantity=position.quantity,
            held_quantity=held,
            is_ghost=is_ghost,
            reason=reason,
            confidence=self.score(factors),
            factors=factors,
        )
