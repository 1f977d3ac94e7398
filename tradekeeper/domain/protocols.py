"""
Domain protocols (interfaces) for dependency inversion.

Components depend on these contracts rather than on the concrete exchange
client or SQL store, so tests can substitute AsyncMock fakes.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from tradekeeper.domain.models import (
    AccountSnapshot,
    Candle,
    Position,
    PriceTick,
    SentimentReading,
    Ticker24h,
)


class Entity(str, Enum):
    """Entity names understood by the store."""
    POSITION = "Position"
    TRADE = "Trade"
    WALLET_STATE = "WalletState"
    REGIME_STATE = "RegimeState"


@runtime_checkable
class EntityStore(Protocol):
    """
    Async CRUD over plain-dict records.

    ``filter`` criteria match by equality, or by membership when the value
    is a list/tuple.
    """

    async def create(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def list(self, entity: str) -> List[Dict[str, Any]]: ...

    async def filter(self, entity: str, criteria: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    async def update(self, entity: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def delete(self, entity: str, record_id: str) -> None: ...


@runtime_checkable
class ExchangeClient(Protocol):
    """Exchange surface consumed by the engine (read-only)."""

    async def get_account_info(self) -> AccountSnapshot: ...

    async def get_ticker_price(self, symbol: str) -> PriceTick: ...

    async def get_ticker_24h(self, symbol: str) -> Ticker24h: ...

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...

    async def close(self) -> None: ...


@runtime_checkable
class SentimentProvider(Protocol):
    """Optional market sentiment capability."""

    @property
    def enabled(self) -> bool: ...

    async def get_reading(self) -> Optional[SentimentReading]: ...


@runtime_checkable
class OrderHistoryChecker(Protocol):
    """
    Extension point: look up exchange order history for a position.

    Returns True/False when known, None when unknown.
    """

    async def has_orders(self, position: Position) -> Optional[bool]: ...


class UnknownOrderHistory:
    """Default checker: order history is never consulted."""

    async def has_orders(self, position: Position) -> Optional[bool]:
        return None
