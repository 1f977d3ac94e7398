"""
Binance spot client (read-only surface used by the engine).

Wraps ccxt.async_support. Every call carries an explicit deadline; a
timed-out call is a failure and is never retried inline (the next polling
tick is the retry). Raw payloads are parsed into typed DTOs that fail fast
on shape mismatch.
"""
import asyncio
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import ccxt.async_support as ccxt_async

from tradekeeper.domain.models import (
    AccountSnapshot,
    Balance,
    Candle,
    PriceSource,
    PriceTick,
    Ticker24h,
)
from tradekeeper.exceptions import (
    APIError,
    AuthenticationError,
    ExchangeTimeoutError,
    MalformedPayloadError,
    RateLimitError,
)
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def exchange_symbol(symbol: str) -> str:
    """'BTC/USDT' -> 'BTCUSDT' (raw REST endpoints take the joined form)."""
    return symbol.replace("/", "").replace("-", "").upper()


def _decimal_field(payload: Dict[str, Any], key: str) -> Decimal:
    if key not in payload:
        raise MalformedPayloadError(f"missing field '{key}'", payload)
    try:
        value = Decimal(str(payload[key]))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise MalformedPayloadError(f"field '{key}' is not numeric: {payload[key]!r}", payload) from e
    if not value.is_finite():
        raise MalformedPayloadError(f"field '{key}' is not finite", payload)
    return value


def parse_account_info(payload: Any, fetched_at: Optional[datetime] = None) -> AccountSnapshot:
    """Parse ``{balances: [{asset, free, locked}]}``."""
    if not isinstance(payload, dict) or not isinstance(payload.get("balances"), list):
        raise MalformedPayloadError("account info must contain a 'balances' list", payload)

    balances = []
    for entry in payload["balances"]:
        if not isinstance(entry, dict) or not entry.get("asset"):
            raise MalformedPayloadError("balance entry must have an 'asset'", entry)
        balances.append(Balance(
            asset=str(entry["asset"]).upper(),
            free=_decimal_field(entry, "free"),
            locked=_decimal_field(entry, "locked"),
        ))
    return AccountSnapshot(
        balances=tuple(balances),
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )


def parse_ticker_price(payload: Any, symbol: str, observed_at: Optional[datetime] = None) -> PriceTick:
    """Parse ``{symbol, price}`` from the current-price endpoint."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("ticker price must be an object", payload)
    return PriceTick(
        symbol=symbol,
        price=_decimal_field(payload, "price"),
        source=PriceSource.TICKER_PRICE,
        observed_at=observed_at or datetime.now(timezone.utc),
    )


def parse_ticker_24h(payload: Any, symbol: str, observed_at: Optional[datetime] = None) -> Ticker24h:
    """Parse ``{lastPrice, priceChangePercent}`` from the 24h statistics endpoint."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("24h ticker must be an object", payload)
    return Ticker24h(
        symbol=symbol,
        last_price=_decimal_field(payload, "lastPrice"),
        price_change_percent=_decimal_field(payload, "priceChangePercent"),
        observed_at=observed_at or datetime.now(timezone.utc),
    )


def parse_klines(rows: Any, symbol: str, timeframe: str) -> List[Candle]:
    """
    Parse OHLCV rows ``[ts_ms, open, high, low, close, volume]``.

    Rows with NaN or non-positive prices are dropped (exchanges occasionally
    return empty buckets); a row of the wrong shape fails the whole payload.
    """
    if not isinstance(rows, list):
        raise MalformedPayloadError("klines must be a list", rows)

    candles: List[Candle] = []
    dropped = 0
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 6:
            raise MalformedPayloadError("kline row must have 6 fields", row)
        timestamp_ms, open_price, high, low, close, volume = row[:6]
        try:
            values = [float(v) for v in (open_price, high, low, close, volume)]
        except (TypeError, ValueError):
            dropped += 1
            continue
        if any(math.isnan(v) or math.isinf(v) for v in values) or min(values[:4]) <= 0 or values[1] < values[2]:
            dropped += 1
            continue
        candles.append(Candle(
            timestamp=datetime.fromtimestamp(int(timestamp_ms) / 1000, tz=timezone.utc),
            symbol=symbol,
            timeframe=timeframe,
            open=Decimal(str(open_price)),
            high=Decimal(str(high)),
            low=Decimal(str(low)),
            close=Decimal(str(close)),
            volume=Decimal(str(volume)),
        ))

    if dropped:
        logger.debug("Dropped invalid klines", symbol=symbol, timeframe=timeframe, dropped=dropped)
    return candles


class BinanceClient:
    """
    Read-only Binance spot client.

    Args:
        api_key / api_secret: credentials (account info requires them)
        use_testnet: route to the Binance spot testnet
        account_timeout / ticker_timeout / klines_timeout: per-call deadlines (seconds)
        exchange: pre-built ccxt exchange (tests)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        use_testnet: bool = True,
        account_timeout: float = 120.0,
        ticker_timeout: float = 15.0,
        klines_timeout: float = 30.0,
        exchange: Optional[Any] = None,
    ):
        self.use_testnet = use_testnet
        self.account_timeout = account_timeout
        self.ticker_timeout = ticker_timeout
        self.klines_timeout = klines_timeout

        if exchange is not None:
            self.exchange = exchange
        else:
            self.exchange = ccxt_async.binance({
                "apiKey": api_key or "",
                "secret": api_secret or "",
                "enableRateLimit": True,
                "options": {"defaultType": "spot"},
            })
            if use_testnet:
                self.exchange.set_sandbox_mode(True)

        logger.info("Binance client initialized", testnet=use_testnet, has_credentials=bool(api_key))

    async def _call(self, op: str, awaitable: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("EXCHANGE_TIMEOUT", op=op, timeout_seconds=timeout)
            raise ExchangeTimeoutError(f"{op} timed out after {timeout}s") from e
        except ccxt_async.RequestTimeout as e:
            logger.warning("EXCHANGE_TIMEOUT", op=op, error=str(e))
            raise ExchangeTimeoutError(f"{op} timed out: {e}") from e
        except ccxt_async.AuthenticationError as e:
            logger.error("EXCHANGE_AUTH_FAILED", op=op, error=str(e))
            raise AuthenticationError(f"{op}: {e}") from e
        except ccxt_async.RateLimitExceeded as e:
            logger.warning("EXCHANGE_RATE_LIMITED", op=op, error=str(e))
            raise RateLimitError(f"{op}: {e}") from e
        except ccxt_async.BaseError as e:
            logger.warning("EXCHANGE_API_ERROR", op=op, error_type=type(e).__name__, error=str(e))
            raise APIError(f"{op}: {e}") from e

    async def get_account_info(self) -> AccountSnapshot:
        """Balances for every asset on the account."""
        balance = await self._call("get_account_info", self.exchange.fetch_balance(), self.account_timeout)
        info = balance.get("info") if isinstance(balance, dict) else None
        return parse_account_info(info)

    async def get_ticker_price(self, symbol: str) -> PriceTick:
        """Latest traded price (the only price acceptable for exits)."""
        payload = await self._call(
            "get_ticker_price",
            self.exchange.public_get_ticker_price({"symbol": exchange_symbol(symbol)}),
            self.ticker_timeout,
        )
        return parse_ticker_price(payload, symbol)

    async def get_ticker_24h(self, symbol: str) -> Ticker24h:
        """Rolling 24h statistics. Never a live price."""
        payload = await self._call(
            "get_ticker_24h",
            self.exchange.public_get_ticker_24hr({"symbol": exchange_symbol(symbol)}),
            self.ticker_timeout,
        )
        return parse_ticker_24h(payload, symbol)

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """OHLCV candles, oldest first."""
        rows = await self._call(
            "get_klines",
            self.exchange.fetch_ohlcv(symbol, timeframe=interval, limit=limit),
            self.klines_timeout,
        )
        candles = parse_klines(rows, symbol, interval)
        logger.debug("Fetched klines", symbol=symbol, timeframe=interval, count=len(candles))
        return candles

    async def close(self) -> None:
        """Cleanup resources."""
        if self.exchange:
            await self.exchange.close()
