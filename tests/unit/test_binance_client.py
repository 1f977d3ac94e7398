"""
Binance payload parsing and exchange error mapping.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt_async
import pytest

from tradekeeper.data.binance_client import (
    BinanceClient,
    exchange_symbol,
    parse_account_info,
    parse_klines,
    parse_ticker_24h,
    parse_ticker_price,
)
from tradekeeper.domain.models import PriceSource
from tradekeeper.exceptions import (
    APIError,
    AuthenticationError,
    ExchangeTimeoutError,
    MalformedPayloadError,
    RateLimitError,
)


def test_exchange_symbol():
    assert exchange_symbol("BTC/USDT") == "BTCUSDT"
    assert exchange_symbol("eth-usdt") == "ETHUSDT"


def test_parse_account_info():
    snapshot = parse_account_info({"balances": [
        {"asset": "usdt", "free": "150.5", "locked": "10"},
        {"asset": "BTC", "free": "0.25", "locked": "0"},
        {"asset": "DOGE", "free": "0", "locked": "0"},
    ]})

    assert snapshot.quote_balance("USDT").free == Decimal("150.5")
    assert set(snapshot.holdings("USDT")) == {"BTC"}
    assert snapshot.holdings("USDT")["BTC"].total == Decimal("0.25")


@pytest.mark.parametrize("payload", [
    None,
    {},
    {"balances": "nope"},
    {"balances": [{"free": "1", "locked": "0"}]},
    {"balances": [{"asset": "BTC", "free": "abc", "locked": "0"}]},
    {"balances": [{"asset": "BTC", "free": "1"}]},
])
def test_parse_account_info_rejects_malformed(payload):
    with pytest.raises(MalformedPayloadError):
        parse_account_info(payload)


def test_parse_ticker_price():
    tick = parse_ticker_price({"symbol": "BTCUSDT", "price": "64000.12"}, "BTC/USDT")
    assert tick.price == Decimal("64000.12")
    assert tick.source == PriceSource.TICKER_PRICE
    assert tick.observed_at.tzinfo is not None

    with pytest.raises(MalformedPayloadError):
        parse_ticker_price({"symbol": "BTCUSDT"}, "BTC/USDT")
    with pytest.raises(MalformedPayloadError):
        parse_ticker_price({"price": "NaN"}, "BTC/USDT")


def test_parse_ticker_24h_has_no_live_price():
    stats = parse_ticker_24h({"lastPrice": "64000", "priceChangePercent": "-1.25"}, "BTC/USDT")
    assert stats.last_price == Decimal("64000")
    assert stats.price_change_percent == Decimal("-1.25")
    assert not hasattr(stats, "price")


def test_parse_klines_drops_invalid_rows():
    rows = [
        [1717200000000, "100", "101", "99", "100.5", "10"],
        [1717203600000, "0", "0", "0", "0", "0"],
        [1717207200000, "100", "99", "101", "100", "10"],  # high < low
        [1717210800000, None, "101", "99", "100", "10"],
        [1717214400000, 100.5, 102.0, 100.0, 101.5, 12.0],
    ]
    candles = parse_klines(rows, "BTC/USDT", "4h")

    assert [c.close for c in candles] == [Decimal("100.5"), Decimal("101.5")]
    assert candles[0].timestamp.tzinfo is not None
    assert candles[0].timeframe == "4h"


@pytest.mark.parametrize("rows", [None, {"a": 1}, [[1, 2, 3]]])
def test_parse_klines_rejects_bad_shape(rows):
    with pytest.raises(MalformedPayloadError):
        parse_klines(rows, "BTC/USDT", "4h")


def _client(exchange) -> BinanceClient:
    return BinanceClient(exchange=exchange, account_timeout=15, ticker_timeout=15, klines_timeout=15)


@pytest.mark.asyncio
async def test_get_account_info_reads_raw_info():
    exchange = MagicMock()
    exchange.fetch_balance = AsyncMock(return_value={"info": {"balances": [
        {"asset": "USDT", "free": "5", "locked": "0"},
    ]}})

    snapshot = await _client(exchange).get_account_info()

    assert snapshot.quote_balance().free == Decimal("5")


@pytest.mark.asyncio
async def test_get_ticker_price_uses_joined_symbol():
    exchange = MagicMock()
    exchange.public_get_ticker_price = AsyncMock(return_value={"symbol": "BTCUSDT", "price": "1"})

    await _client(exchange).get_ticker_price("BTC/USDT")

    exchange.public_get_ticker_price.assert_awaited_once_with({"symbol": "BTCUSDT"})


@pytest.mark.asyncio
@pytest.mark.parametrize("raised, expected", [
    (ccxt_async.RequestTimeout("slow"), ExchangeTimeoutError),
    (ccxt_async.AuthenticationError("bad key"), AuthenticationError),
    (ccxt_async.RateLimitExceeded("slow down"), RateLimitError),
    (ccxt_async.ExchangeNotAvailable("maintenance"), APIError),
])
async def test_ccxt_errors_are_mapped(raised, expected):
    exchange = MagicMock()
    exchange.fetch_ohlcv = AsyncMock(side_effect=raised)

    with pytest.raises(expected):
        await _client(exchange).get_klines("BTC/USDT", "4h", 300)


@pytest.mark.asyncio
async def test_deadline_exceeded_is_timeout():
    async def _hang(*args, **kwargs):
        await asyncio.sleep(10)

    exchange = MagicMock()
    exchange.fetch_balance = _hang
    client = BinanceClient(exchange=exchange)
    client.account_timeout = 0.05

    with pytest.raises(ExchangeTimeoutError):
        await client.get_account_info()
