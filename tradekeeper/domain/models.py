"""
Domain models for the reconciliation and regime engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all money and quantities
are Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TradingMode(str, Enum):
    """Isolation axis: positions and wallets are tracked per mode."""
    TESTNET = "testnet"
    LIVE = "live"


class PositionStatus(str, Enum):
    """Position lifecycle status. CLOSED is terminal."""
    OPEN = "open"
    TRAILING = "trailing"
    CLOSED = "closed"


ACTIVE_STATUSES: Tuple[PositionStatus, ...] = (PositionStatus.OPEN, PositionStatus.TRAILING)


class Regime(str, Enum):
    """Market regime label."""
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    RANGING = "ranging"
    NEUTRAL = "neutral"


class PriceSource(str, Enum):
    """Where a price observation came from."""
    LAST_TRADE = "last_trade"
    TICKER_PRICE = "ticker_price"
    TICKER_24H = "ticker_24h"  # rolling statistic; never a live price
    STORED = "stored"


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce a record value to Decimal; None/empty/unparseable/NaN/Infinity -> default."""
    if value is None or value == "":
        return default
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    return d if d.is_finite() else default


def to_utc(value: Any) -> Optional[datetime]:
    """Coerce a record timestamp (datetime, ISO string, epoch ms) to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def strip_quote(symbol: str, quote_asset: str = "USDT") -> str:
    """'BTC/USDT' or 'BTCUSDT' -> 'BTC'."""
    s = (symbol or "").upper()
    quote = quote_asset.upper()
    s = s.replace(f"/{quote}", "")
    if s.endswith(quote):
        s = s[: -len(quote)]
    return s


@dataclass(frozen=True)
class Candle:
    """
    OHLCV candle used for regime classification.
    """
    timestamp: datetime
    symbol: str  # e.g., "BTC/USDT"
    timeframe: str  # e.g., "1h", "4h"
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def __post_init__(self):
        """Validate candle data."""
        if self.timestamp.tzinfo is None:
            raise ValueError("Candle timestamp must be timezone-aware (UTC)")
        if self.high < self.low:
            raise ValueError(f"Invalid candle: high ({self.high}) < low ({self.low})")


@dataclass(frozen=True)
class Balance:
    """
    Exchange holding for a single asset (external truth, read-only).
    """
    asset: str
    free: Decimal
    locked: Decimal

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass(frozen=True)
class AccountSnapshot:
    """Exchange account balances observed at one instant."""
    balances: Tuple[Balance, ...]
    fetched_at: datetime

    def holdings(self, quote_asset: str = "USDT") -> Dict[str, Balance]:
        """Non-quote assets with a positive total, keyed by asset."""
        quote = quote_asset.upper()
        return {
            b.asset.upper(): b
            for b in self.balances
            if b.asset.upper() != quote and b.total > 0
        }

    def quote_balance(self, quote_asset: str = "USDT") -> Balance:
        quote = quote_asset.upper()
        for b in self.balances:
            if b.asset.upper() == quote:
                return b
        return Balance(asset=quote, free=Decimal("0"), locked=Decimal("0"))


@dataclass(frozen=True)
class PriceTick:
    """
    A genuinely current price (latest trade / ticker price endpoint).
    """
    symbol: str
    price: Decimal
    source: PriceSource
    observed_at: datetime


@dataclass(frozen=True)
class Ticker24h:
    """
    Rolling 24h ticker statistics.

    Deliberately has no ``price`` attribute: ``last_price`` here is a
    statistic and must never be used as a live execution price.
    """
    symbol: str
    last_price: Decimal
    price_change_percent: Decimal
    observed_at: datetime


@dataclass(frozen=True)
class Position:
    """
    Locally recorded position (one exchange-side order pair).
    """
    id: str
    position_id: str
    symbol: str
    trading_mode: TradingMode
    quantity: Decimal
    entry_price: Decimal
    entry_timestamp: datetime
    status: PositionStatus = PositionStatus.OPEN
    wallet_id: Optional[str] = None
    strategy_name: Optional[str] = None

    # Last observed price; may be stale or missing
    current_price: Optional[Decimal] = None

    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None

    # Auto-close deadline, hours after entry
    time_exit_hours: Optional[Decimal] = None

    def __post_init__(self):
        if self.entry_timestamp.tzinfo is None:
            raise ValueError("Position entry_timestamp must be timezone-aware (UTC)")
        if self.status in ACTIVE_STATUSES and self.quantity <= 0:
            raise ValueError(
                f"Position {self.position_id}: quantity must be > 0 while {self.status.value}"
            )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def entry_value(self) -> Decimal:
        return self.quantity * self.entry_price

    @property
    def time_exit_at(self) -> Optional[datetime]:
        if self.time_exit_hours is None:
            return None
        return self.entry_timestamp + timedelta(hours=float(self.time_exit_hours))

    def is_time_exit_due(self, now: datetime) -> bool:
        deadline = self.time_exit_at
        return deadline is not None and now >= deadline

    def age(self, now: datetime) -> timedelta:
        return now - self.entry_timestamp

    def base_asset(self, quote_asset: str = "USDT") -> str:
        return strip_quote(self.symbol, quote_asset)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Position":
        """Build from an entity-store record."""
        return cls(
            id=str(record["id"]),
            position_id=str(record.get("position_id") or record["id"]),
            symbol=str(record["symbol"]),
            trading_mode=TradingMode(record.get("trading_mode") or TradingMode.TESTNET.value),
            quantity=to_decimal(record.get("quantity"), Decimal("0")),
            entry_price=to_decimal(record.get("entry_price"), Decimal("0")),
            entry_timestamp=to_utc(record.get("entry_timestamp")) or datetime.now(timezone.utc),
            status=PositionStatus(record.get("status") or PositionStatus.OPEN.value),
            wallet_id=record.get("wallet_id"),
            strategy_name=record.get("strategy_name"),
            current_price=to_decimal(record.get("current_price")),
            stop_loss_price=to_decimal(record.get("stop_loss_price")),
            take_profit_price=to_decimal(record.get("take_profit_price")),
            trailing_stop_price=to_decimal(record.get("trailing_stop_price")),
            time_exit_hours=to_decimal(record.get("time_exit_hours")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position_id": self.position_id,
            "symbol": self.symbol,
            "trading_mode": self.trading_mode.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "entry_timestamp": self.entry_timestamp,
            "status": self.status.value,
            "wallet_id": self.wallet_id,
            "strategy_name": self.strategy_name,
            "current_price": self.current_price,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "trailing_stop_price": self.trailing_stop_price,
            "time_exit_hours": self.time_exit_hours,
        }


@dataclass(frozen=True)
class Trade:
    """
    Completed trade (entry -> exit). Produced exactly once per closed position.
    """
    trade_id: str
    symbol: str
    trading_mode: TradingMode
    quantity: Decimal
    entry_price: Decimal
    exit_price: Decimal
    pnl: Decimal
    entry_timestamp: datetime
    exit_timestamp: Optional[datetime] = None
    position_id: Optional[str] = None
    strategy_name: Optional[str] = None
    exit_reason: Optional[str] = None

    def dedupe_key(self) -> str:
        """Identity used to drop duplicated trade records (same fill recorded twice)."""
        entry_second = int(self.entry_timestamp.timestamp())
        return "|".join([
            self.symbol,
            self.strategy_name or "",
            f"{self.entry_price:.6f}",
            f"{self.exit_price:.6f}",
            f"{self.quantity:.6f}",
            str(entry_second),
        ])

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Trade":
        return cls(
            trade_id=str(record.get("trade_id") or record["id"]),
            symbol=str(record["symbol"]),
            trading_mode=TradingMode(record.get("trading_mode") or TradingMode.TESTNET.value),
            quantity=to_decimal(record.get("quantity"), Decimal("0")),
            entry_price=to_decimal(record.get("entry_price"), Decimal("0")),
            exit_price=to_decimal(record.get("exit_price"), Decimal("0")),
            pnl=to_decimal(record.get("pnl"), Decimal("0")),
            entry_timestamp=to_utc(record.get("entry_timestamp")) or datetime.fromtimestamp(0, tz=timezone.utc),
            exit_timestamp=to_utc(record.get("exit_timestamp")),
            position_id=record.get("position_id"),
            strategy_name=record.get("strategy_name"),
            exit_reason=record.get("exit_reason"),
        )


@dataclass(frozen=True)
class SentimentReading:
    """Fear & Greed index reading (0 = extreme fear, 100 = extreme greed)."""
    value: int
    classification: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "classification": self.classification,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RegimeObservation:
    """One entry in the regime history."""
    regime: Regime
    timestamp: datetime


@dataclass(frozen=True)
class RegimeSnapshot:
    """
    Confidence-scored, streak-confirmed market regime.

    ``is_confirmed`` always equals ``consecutive_periods >= confirmation_threshold``.
    """
    regime: Regime
    confidence: float  # 0..1
    consecutive_periods: int
    confirmation_threshold: int = 3
    regime_history: Tuple[RegimeObservation, ...] = ()
    calculated_at: Optional[datetime] = None
    indicators: Dict[str, float] = field(default_factory=dict)
    sentiment: Optional[SentimentReading] = None
    is_fallback: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Regime confidence out of range: {self.confidence}")
        if self.consecutive_periods < 0:
            raise ValueError("consecutive_periods must be >= 0")

    @property
    def is_confirmed(self) -> bool:
        return self.consecutive_periods >= self.confirmation_threshold

    @property
    def confidence_pct(self) -> float:
        return round(self.confidence * 100, 2)

    @classmethod
    def neutral_fallback(cls, confirmation_threshold: int = 3, now: Optional[datetime] = None) -> "RegimeSnapshot":
        """Usable non-blocking result when computation fails."""
        return cls(
            regime=Regime.NEUTRAL,
            confidence=0.5,
            consecutive_periods=0,
            confirmation_threshold=confirmation_threshold,
            calculated_at=now,
            is_fallback=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "regime": self.regime.value,
            "confidence": self.confidence,
            "is_confirmed": self.is_confirmed,
            "consecutive_periods": self.consecutive_periods,
            "confirmation_threshold": self.confirmation_threshold,
            "regime_history": [
                {"regime": o.regime.value, "timestamp": o.timestamp.isoformat()}
                for o in self.regime_history
            ],
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
            "indicators": dict(self.indicators),
            "sentiment": self.sentiment.to_dict() if self.sentiment else None,
            "is_fallback": self.is_fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegimeSnapshot":
        sentiment = data.get("sentiment")
        return cls(
            regime=Regime(data["regime"]),
            confidence=float(data["confidence"]),
            consecutive_periods=int(data.get("consecutive_periods", 0)),
            confirmation_threshold=int(data.get("confirmation_threshold", 3)),
            regime_history=tuple(
                RegimeObservation(regime=Regime(h["regime"]), timestamp=to_utc(h["timestamp"]))
                for h in data.get("regime_history") or []
            ),
            calculated_at=to_utc(data.get("calculated_at")),
            indicators=dict(data.get("indicators") or {}),
            sentiment=SentimentReading(
                value=int(sentiment["value"]),
                classification=sentiment["classification"],
                timestamp=to_utc(sentiment["timestamp"]),
            ) if sentiment else None,
            is_fallback=bool(data.get("is_fallback", False)),
        )


@dataclass(frozen=True)
class WalletSnapshot:
    """
    One consistent view of a wallet. Immutable; replaced wholesale on every
    aggregation pass.
    """
    trading_mode: TradingMode
    total_equity: Decimal
    available_balance: Decimal
    balance_in_trades: Decimal
    unrealized_pnl: Decimal
    open_positions_count: int
    total_realized_pnl: Decimal
    balances: Tuple[Balance, ...]
    positions: Tuple[Position, ...]
    last_updated: datetime

    total_trades_count: int = 0
    winning_trades_count: int = 0
    losing_trades_count: int = 0
    total_gross_profit: Decimal = Decimal("0")
    total_gross_loss: Decimal = Decimal("0")

    def key_fields(self) -> Tuple[Decimal, Decimal, Decimal, int]:
        """Fields whose change warrants notifying subscribers."""
        return (
            self.total_equity,
            self.available_balance,
            self.balance_in_trades,
            self.open_positions_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trading_mode": self.trading_mode.value,
            "total_equity": str(self.total_equity),
            "available_balance": str(self.available_balance),
            "balance_in_trades": str(self.balance_in_trades),
            "unrealized_pnl": str(self.unrealized_pnl),
            "open_positions_count": self.open_positions_count,
            "total_realized_pnl": str(self.total_realized_pnl),
            "total_trades_count": self.total_trades_count,
            "winning_trades_count": self.winning_trades_count,
            "losing_trades_count": self.losing_trades_count,
            "total_gross_profit": str(self.total_gross_profit),
            "total_gross_loss": str(self.total_gross_loss),
            "last_updated": self.last_updated.isoformat(),
        }
