"""
Pytest configuration and shared fixtures.
"""
import os

# Unit tests never touch a real database; the store fixture uses in-memory SQLite.
os.environ.pop("DATABASE_URL", None)

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradekeeper.config.config import Config, ReconciliationConfig, WalletConfig
from tradekeeper.domain.models import Candle, Position, PositionStatus, TradingMode


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeClock:
    """Settable UTC clock for components that take ``clock=``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def t0() -> datetime:
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0) -> FakeClock:
    return FakeClock(t0)


@pytest.fixture
def make_position(t0):
    """Factory for positions; defaults to a 1 BTC testnet position opened 2h before t0."""

    def _make(**overrides) -> Position:
        fields = dict(
            id="rec-1",
            position_id="pos-1",
            symbol="BTC/USDT",
            trading_mode=TradingMode.TESTNET,
            quantity=Decimal("1"),
            entry_price=Decimal("100"),
            entry_timestamp=t0 - timedelta(hours=2),
            status=PositionStatus.OPEN,
            current_price=Decimal("101"),
        )
        fields.update(overrides)
        return Position(**fields)

    return _make


@pytest.fixture
def make_candles(t0):
    """Factory for hourly candles following ``closes``."""

    def _make(closes, spread: float = 1.0, volume: float = 100.0):
        candles = []
        start = t0 - timedelta(hours=len(closes))
        for i, close in enumerate(closes):
            candles.append(Candle(
                timestamp=start + timedelta(hours=i),
                symbol="BTC/USDT",
                timeframe="1h",
                open=Decimal(str(close)),
                high=Decimal(str(close + spread)),
                low=Decimal(str(close - spread)),
                close=Decimal(str(close)),
                volume=Decimal(str(volume)),
            ))
        return candles

    return _make


@pytest.fixture
def config() -> Config:
    """Config with a zero throttle and no debounce, so tests control timing explicitly."""
    return Config(
        reconciliation=ReconciliationConfig(throttle_seconds=0, max_attempts=5),
        wallet=WalletConfig(debounce_ms=0),
    )
