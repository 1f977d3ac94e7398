"""
Entity store backed by SQLAlchemy.

Records cross the store boundary as plain dicts; sessions are synchronous
and run on a worker thread so the event loop is never blocked.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Numeric, String
from sqlalchemy.exc import SQLAlchemyError

from tradekeeper.domain.models import RegimeSnapshot
from tradekeeper.domain.protocols import Entity
from tradekeeper.exceptions import StoreError, ValidationError
from tradekeeper.monitoring.logger import get_logger
from tradekeeper.storage.db import Base, Database

logger = get_logger(__name__)

T = TypeVar("T")

_AMOUNT = Numeric(precision=28, scale=12)


class PositionModel(Base):
    """ORM model for locally recorded positions."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_mode_status", "trading_mode", "status"),
        Index("idx_position_business_key", "position_id"),
    )

    id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    trading_mode = Column(String, nullable=False)
    wallet_id = Column(String, nullable=True)
    strategy_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")

    quantity = Column(_AMOUNT, nullable=False)
    entry_price = Column(_AMOUNT, nullable=False)
    entry_timestamp = Column(DateTime(timezone=True), nullable=False)
    current_price = Column(_AMOUNT, nullable=True)

    stop_loss_price = Column(_AMOUNT, nullable=True)
    take_profit_price = Column(_AMOUNT, nullable=True)
    trailing_stop_price = Column(_AMOUNT, nullable=True)
    time_exit_hours = Column(Numeric(precision=10, scale=2), nullable=True)


class TradeModel(Base):
    """ORM model for completed trades."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_mode_position", "trading_mode", "position_id"),
    )

    id = Column(String, primary_key=True)
    trade_id = Column(String, nullable=True)
    position_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    trading_mode = Column(String, nullable=False)
    strategy_name = Column(String, nullable=True)

    quantity = Column(_AMOUNT, nullable=False)
    entry_price = Column(_AMOUNT, nullable=False)
    exit_price = Column(_AMOUNT, nullable=False)
    pnl = Column(_AMOUNT, nullable=False)

    entry_timestamp = Column(DateTime(timezone=True), nullable=False)
    exit_timestamp = Column(DateTime(timezone=True), nullable=True)
    exit_reason = Column(String, nullable=True)


class WalletStateModel(Base):
    """ORM model for the persisted wallet summary (one row per trading mode)."""
    __tablename__ = "wallet_states"

    id = Column(String, primary_key=True)
    trading_mode = Column(String, nullable=False, unique=True)

    total_equity = Column(_AMOUNT, nullable=False, default=0)
    available_balance = Column(_AMOUNT, nullable=False, default=0)
    balance_in_trades = Column(_AMOUNT, nullable=False, default=0)
    unrealized_pnl = Column(_AMOUNT, nullable=False, default=0)
    total_realized_pnl = Column(_AMOUNT, nullable=False, default=0)
    open_positions_count = Column(Integer, nullable=False, default=0)
    total_trades_count = Column(Integer, nullable=False, default=0)
    winning_trades_count = Column(Integer, nullable=False, default=0)
    losing_trades_count = Column(Integer, nullable=False, default=0)
    total_gross_profit = Column(_AMOUNT, nullable=False, default=0)
    total_gross_loss = Column(_AMOUNT, nullable=False, default=0)

    last_updated = Column(DateTime(timezone=True), nullable=True)


class RegimeStateModel(Base):
    """ORM model for the persisted regime snapshot (streak survives restarts)."""
    __tablename__ = "regime_states"
    __table_args__ = (
        Index("idx_regime_symbol_timeframe", "symbol", "timeframe", unique=True),
    )

    id = Column(String, primary_key=True)
    symbol = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


_MODELS: Dict[str, Type[Base]] = {
    Entity.POSITION.value: PositionModel,
    Entity.TRADE.value: TradeModel,
    Entity.WALLET_STATE.value: WalletStateModel,
    Entity.REGIME_STATE.value: RegimeStateModel,
}


def _model_for(entity: str) -> Type[Base]:
    key = entity.value if isinstance(entity, Entity) else str(entity)
    model = _MODELS.get(key)
    if model is None:
        raise ValidationError(f"Unknown entity: {key}")
    return model


def _columns(model: Type[Base]) -> List[str]:
    return [c.name for c in model.__table__.columns]


def _to_record(row: Base) -> Dict[str, Any]:
    return {name: getattr(row, name) for name in _columns(type(row))}


def _coerce(value: Any) -> Any:
    # Enums are stored by value
    return getattr(value, "value", value)


class SqlEntityStore:
    """
    EntityStore over SQLAlchemy ORM models.

    Every call runs on a worker thread and is bounded by ``timeout_seconds``;
    driver errors and timeouts surface as StoreError.
    """

    def __init__(self, db: Database, timeout_seconds: float = 30.0):
        self.db = db
        self.timeout_seconds = timeout_seconds

    async def _run(self, op: str, entity: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreError(f"{op} {entity} timed out after {self.timeout_seconds}s") from e
        except SQLAlchemyError as e:
            logger.error("STORE_ERROR", op=op, entity=str(entity), error=str(e))
            raise StoreError(f"{op} {entity} failed: {e}") from e

    async def create(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        model = _model_for(entity)
        columns = set(_columns(model))
        values = {k: _coerce(v) for k, v in data.items() if k in columns}
        values.setdefault("id", uuid.uuid4().hex)

        def _create():
            with self.db.get_session() as session:
                row = model(**values)
                session.add(row)
                session.flush()
                return _to_record(row)

        return await self._run("create", entity, _create)

    async def list(self, entity: str) -> List[Dict[str, Any]]:
        model = _model_for(entity)

        def _list():
            with self.db.get_session() as session:
                return [_to_record(r) for r in session.query(model).all()]

        return await self._run("list", entity, _list)

    async def filter(self, entity: str, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        model = _model_for(entity)
        columns = set(_columns(model))
        unknown = set(criteria) - columns
        if unknown:
            raise ValidationError(f"Unknown {entity} fields in filter: {sorted(unknown)}")

        def _filter():
            with self.db.get_session() as session:
                query = session.query(model)
                for key, value in criteria.items():
                    column = getattr(model, key)
                    if isinstance(value, (list, tuple, set, frozenset)):
                        query = query.filter(column.in_([_coerce(v) for v in value]))
                    else:
                        query = query.filter(column == _coerce(value))
                return [_to_record(r) for r in query.all()]

        return await self._run("filter", entity, _filter)

    async def update(self, entity: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        model = _model_for(entity)
        columns = set(_columns(model)) - {"id"}

        def _update():
            with self.db.get_session() as session:
                row = session.get(model, record_id)
                if row is None:
                    raise ValidationError(f"{entity} {record_id} not found")
                for key, value in data.items():
                    if key in columns:
                        setattr(row, key, _coerce(value))
                session.flush()
                return _to_record(row)

        return await self._run("update", entity, _update)

    async def delete(self, entity: str, record_id: str) -> None:
        model = _model_for(entity)

        def _delete():
            with self.db.get_session() as session:
                row = session.get(model, record_id)
                if row is None:
                    raise ValidationError(f"{entity} {record_id} not found")
                session.delete(row)

        await self._run("delete", entity, _delete)


class RegimeStateStore:
    """Persists one RegimeSnapshot per (symbol, timeframe) through an EntityStore."""

    def __init__(self, store: Any, symbol: str, timeframe: str):
        self.store = store
        self.symbol = symbol
        self.timeframe = timeframe
        self._record_id: Optional[str] = None

    async def load(self) -> Optional[RegimeSnapshot]:
        rows = await self.store.filter(
            Entity.REGIME_STATE.value, {"symbol": self.symbol, "timeframe": self.timeframe}
        )
        if not rows:
            return None
        row = rows[0]
        self._record_id = row["id"]
        return RegimeSnapshot.from_dict(row["payload"])

    async def save(self, snapshot: RegimeSnapshot) -> None:
        data = {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "payload": snapshot.to_dict(),
            "updated_at": datetime.now(timezone.utc),
        }
        if self._record_id is None:
            rows = await self.store.filter(
                Entity.REGIME_STATE.value, {"symbol": self.symbol, "timeframe": self.timeframe}
            )
            if rows:
                self._record_id = rows[0]["id"]
        if self._record_id is None:
            created = await self.store.create(Entity.REGIME_STATE.value, data)
            self._record_id = created["id"]
        else:
            await self.store.update(Entity.REGIME_STATE.value, self._record_id, data)
