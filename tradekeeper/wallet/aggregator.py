"""
Central wallet state aggregator.

Turns scattered balance, position and trade updates into one consistent
WalletSnapshot per trading mode and fans it out to subscribers.

- Snapshots are immutable and replaced wholesale; every derived field is
  recomputed from raw balances/positions/trades on each publish.
- Notifications are debounced per trading mode with a single pending slot:
  updates arriving inside the settle window replace the pending snapshot and
  restart the timer, so only the latest is delivered.
- A notification whose key fields (equity, available, in-trades, open
  count) equal the last delivered snapshot is skipped.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from tradekeeper.domain.models import (
    ACTIVE_STATUSES,
    Balance,
    Position,
    Trade,
    TradingMode,
    WalletSnapshot,
)
from tradekeeper.domain.protocols import Entity
from tradekeeper.exceptions import OperationalError
from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[WalletSnapshot], Union[None, Awaitable[None]]]

ZERO = Decimal("0")


@dataclass(frozen=True)
class TradeStats:
    total_realized_pnl: Decimal = ZERO
    total_trades_count: int = 0
    winning_trades_count: int = 0
    losing_trades_count: int = 0
    total_gross_profit: Decimal = ZERO
    total_gross_loss: Decimal = ZERO
    duplicates_dropped: int = 0


def summarize_trades(trades: Iterable[Trade]) -> TradeStats:
    """Realized P&L and win/loss counts over closed trades, duplicates removed."""
    seen: Set[str] = set()
    pnl = gross_profit = gross_loss = ZERO
    count = wins = losses = dupes = 0
    for trade in trades:
        key = trade.dedupe_key()
        if key in seen:
            dupes += 1
            continue
        seen.add(key)
        count += 1
        pnl += trade.pnl
        if trade.pnl > 0:
            wins += 1
            gross_profit += trade.pnl
        elif trade.pnl < 0:
            losses += 1
            gross_loss += -trade.pnl
    return TradeStats(
        total_realized_pnl=pnl,
        total_trades_count=count,
        winning_trades_count=wins,
        losing_trades_count=losses,
        total_gross_profit=gross_profit,
        total_gross_loss=gross_loss,
        duplicates_dropped=dupes,
    )


def build_snapshot(
    trading_mode: TradingMode,
    balances: Tuple[Balance, ...],
    positions: Tuple[Position, ...],
    trades: Tuple[Trade, ...],
    prices: Mapping[str, Decimal],
    now: datetime,
    quote_asset: str = "USDT",
) -> WalletSnapshot:
    """
    Pure snapshot computation.

    available_balance = free quote balance
    balance_in_trades = sum of open position entry values
    unrealized_pnl    = sum of (mark - entry) * quantity, where mark is the live
                        price, else the stored current price, else the entry price
    total_equity      = available + in trades + unrealized
    """
    quote = quote_asset.upper()
    available = next((b.free for b in balances if b.asset.upper() == quote), ZERO)

    open_positions = tuple(p for p in positions if p.status in ACTIVE_STATUSES)
    in_trades = sum((p.entry_value for p in open_positions), ZERO)

    unrealized = ZERO
    for p in open_positions:
        mark = prices.get(p.symbol)
        if mark is None or mark <= 0:
            mark = p.current_price if p.current_price and p.current_price > 0 else p.entry_price
        unrealized += mark * p.quantity - p.entry_value

    stats = summarize_trades(trades)

    return WalletSnapshot(
        trading_mode=trading_mode,
        total_equity=available + in_trades + unrealized,
        available_balance=available,
        balance_in_trades=in_trades,
        unrealized_pnl=unrealized,
        open_positions_count=len(open_positions),
        total_realized_pnl=stats.total_realized_pnl,
        balances=tuple(balances),
        positions=open_positions,
        last_updated=now,
        total_trades_count=stats.total_trades_count,
        winning_trades_count=stats.winning_trades_count,
        losing_trades_count=stats.losing_trades_count,
        total_gross_profit=stats.total_gross_profit,
        total_gross_loss=stats.total_gross_loss,
    )


@dataclass
class _RawWallet:
    balances: Tuple[Balance, ...] = ()
    positions: Tuple[Position, ...] = ()
    trades: Tuple[Trade, ...] = ()
    prices: Dict[str, Decimal] = field(default_factory=dict)


class WalletStateAggregator:
    """
    Single writer of WalletSnapshots; many readers.

    Args:
        client: ExchangeClient (account info and ticker prices)
        store: EntityStore (positions, trades, wallet-state record)
        config: Config (reads ``wallet`` and ``exchange``)
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        client: Any,
        store: Any,
        config: Any,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.store = store
        self.quote_asset = config.exchange.quote_asset
        self.debounce_seconds = config.wallet.debounce_ms / 1000
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._raw: Dict[str, _RawWallet] = {}
        self._snapshots: Dict[str, WalletSnapshot] = {}
        self._record_ids: Dict[str, str] = {}
        self._sync_locks: Dict[str, asyncio.Lock] = {}
        self._resync_requested: Set[str] = set()

        self._subscribers: List[Subscriber] = []
        self._pending: Dict[str, WalletSnapshot] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._last_notified: Dict[str, WalletSnapshot] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.notification_count = 0
        self.skipped_notifications = 0

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get_snapshot(self, trading_mode: Union[str, TradingMode]) -> Optional[WalletSnapshot]:
        return self._snapshots.get(TradingMode(trading_mode).value)

    def is_ready(self, trading_mode: Union[str, TradingMode]) -> bool:
        return TradingMode(trading_mode).value in self._snapshots

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register ``callback``; it is called immediately with every current
        snapshot, then on each (debounced) change. Returns an unsubscribe function.
        """
        self._subscribers.append(callback)
        for snapshot in list(self._snapshots.values()):
            self._deliver(callback, snapshot)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _deliver(self, callback: Subscriber, snapshot: WalletSnapshot) -> None:
        try:
            r = callback(snapshot)
            if asyncio.iscoroutine(r):
                task = asyncio.get_running_loop().create_task(r)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        except Exception as e:
            logger.error("WALLET_SUBSCRIBER_FAILED", error=str(e), exc_info=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("WALLET_SUBSCRIBER_FAILED", error=str(task.exception()))

    def _flush(self, mode: str) -> None:
        self._timers.pop(mode, None)
        snapshot = self._pending.pop(mode, None)
        if snapshot is None:
            return

        last = self._last_notified.get(mode)
        if last is not None and last.key_fields() == snapshot.key_fields():
            self.skipped_notifications += 1
            logger.debug("WALLET_NOTIFICATION_SKIPPED", trading_mode=mode, skipped=self.skipped_notifications)
            return

        self._last_notified[mode] = snapshot
        self.notification_count += 1
        for callback in list(self._subscribers):
            self._deliver(callback, snapshot)
        logger.debug(
            "WALLET_SNAPSHOT_PUBLISHED",
            trading_mode=mode,
            subscribers=len(self._subscribers),
            total_equity=str(snapshot.total_equity),
            open_positions=snapshot.open_positions_count,
        )

    def _publish(self, snapshot: WalletSnapshot) -> None:
        mode = snapshot.trading_mode.value
        self._snapshots[mode] = snapshot
        self._pending[mode] = snapshot

        timer = self._timers.pop(mode, None)
        if timer is not None:
            timer.cancel()

        if self.debounce_seconds <= 0:
            self._flush(mode)
            return
        self._timers[mode] = asyncio.get_running_loop().call_later(self.debounce_seconds, self._flush, mode)

    def _rebuild(self, mode: str) -> WalletSnapshot:
        raw = self._raw.setdefault(mode, _RawWallet())
        snapshot = build_snapshot(
            TradingMode(mode),
            raw.balances,
            raw.positions,
            raw.trades,
            raw.prices,
            self._clock(),
            self.quote_asset,
        )
        self._publish(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def apply_balances(self, trading_mode: Union[str, TradingMode], balances: Iterable[Balance]) -> WalletSnapshot:
        """Replace raw balances (e.g. from a user-data stream) and republish."""
        mode = TradingMode(trading_mode).value
        self._raw.setdefault(mode, _RawWallet()).balances = tuple(balances)
        return self._rebuild(mode)

    def apply_positions(self, trading_mode: Union[str, TradingMode], positions: Iterable[Position]) -> WalletSnapshot:
        """Replace raw open positions and republish."""
        mode = TradingMode(trading_mode).value
        self._raw.setdefault(mode, _RawWallet()).positions = tuple(positions)
        return self._rebuild(mode)

    def republish(self, trading_mode: Optional[Union[str, TradingMode]] = None) -> List[WalletSnapshot]:
        """Recompute from raw state (one mode, or every known mode)."""
        modes = [TradingMode(trading_mode).value] if trading_mode is not None else list(self._raw)
        return [self._rebuild(mode) for mode in modes]

    async def initialize(self, trading_mode: Union[str, TradingMode]) -> WalletSnapshot:
        """Load (or create) the persisted wallet-state record, then sync with the exchange."""
        mode = TradingMode(trading_mode).value
        rows = await self.store.filter(Entity.WALLET_STATE.value, {"trading_mode": mode})
        if rows:
            self._record_ids[mode] = rows[0]["id"]
            logger.info("WALLET_STATE_LOADED", trading_mode=mode, record_id=rows[0]["id"])
        else:
            created = await self.store.create(
                Entity.WALLET_STATE.value,
                {"trading_mode": mode, "last_updated": self._clock()},
            )
            self._record_ids[mode] = created["id"]
            logger.info("WALLET_STATE_CREATED", trading_mode=mode, record_id=created["id"])

        return await self.sync_with_exchange(mode)

    async def _fetch_prices(self, symbols: List[str]) -> Dict[str, Decimal]:
        results = await asyncio.gather(
            *(self.client.get_ticker_price(s) for s in symbols), return_exceptions=True
        )
        prices: Dict[str, Decimal] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("WALLET_PRICE_FETCH_FAILED", symbol=symbol, error=str(result))
                continue
            prices[symbol] = result.price
        return prices

    async def _persist(self, mode: str, snapshot: WalletSnapshot) -> None:
        record_id = self._record_ids.get(mode)
        if record_id is None:
            return
        data = {
            "total_equity": snapshot.total_equity,
            "available_balance": snapshot.available_balance,
            "balance_in_trades": snapshot.balance_in_trades,
            "unrealized_pnl": snapshot.unrealized_pnl,
            "total_realized_pnl": snapshot.total_realized_pnl,
            "open_positions_count": snapshot.open_positions_count,
            "total_trades_count": snapshot.total_trades_count,
            "winning_trades_count": snapshot.winning_trades_count,
            "losing_trades_count": snapshot.losing_trades_count,
            "total_gross_profit": snapshot.total_gross_profit,
            "total_gross_loss": snapshot.total_gross_loss,
            "last_updated": snapshot.last_updated,
        }
        try:
            await self.store.update(Entity.WALLET_STATE.value, record_id, data)
        except OperationalError as e:
            # In-memory snapshot stays authoritative; next sync persists again
            logger.warning("WALLET_STATE_PERSIST_FAILED", trading_mode=mode, error=str(e))

    def _parse_rows(self, rows: List[Dict[str, Any]], parse: Callable[[Dict[str, Any]], Any], event: str) -> List[Any]:
        parsed = []
        for row in rows:
            try:
                parsed.append(parse(row))
            except (KeyError, ValueError, InvalidOperation) as e:
                logger.warning(event, record_id=row.get("id"), error=str(e))
        return parsed

    async def _sync_once(self, mode: str) -> WalletSnapshot:
        account = await self.client.get_account_info()
        position_rows = await self.store.filter(
            Entity.POSITION.value,
            {"trading_mode": mode, "status": [s.value for s in ACTIVE_STATUSES]},
        )
        trade_rows = await self.store.filter(Entity.TRADE.value, {"trading_mode": mode})

        positions = self._parse_rows(position_rows, Position.from_record, "WALLET_INVALID_POSITION_RECORD")
        trades = self._parse_rows(trade_rows, Trade.from_record, "WALLET_INVALID_TRADE_RECORD")

        prices = await self._fetch_prices(sorted({p.symbol for p in positions}))

        raw = self._raw.setdefault(mode, _RawWallet())
        raw.balances = account.balances
        raw.positions = tuple(positions)
        raw.trades = tuple(trades)
        raw.prices = prices

        snapshot = self._rebuild(mode)
        await self._persist(mode, snapshot)
        return snapshot

    async def sync_with_exchange(self, trading_mode: Union[str, TradingMode]) -> Optional[WalletSnapshot]:
        """
        Full refresh: exchange balances, local open positions, closed trades
        and live prices, then publish.

        A request arriving while a sync for the same mode is in flight returns
        the current snapshot and marks the mode for another pass; the in-flight
        sync repeats once it finishes, since it may have read positions before
        the change that triggered the request.

        Raises:
            OperationalError: exchange or store unavailable
        """
        mode = TradingMode(trading_mode).value
        lock = self._sync_locks.setdefault(mode, asyncio.Lock())
        if lock.locked():
            self._resync_requested.add(mode)
            logger.debug("WALLET_SYNC_IN_PROGRESS", trading_mode=mode)
            return self._snapshots.get(mode)

        async with lock:
            while True:
                self._resync_requested.discard(mode)
                snapshot = await self._sync_once(mode)
                if mode not in self._resync_requested:
                    break
                logger.debug("WALLET_RESYNC", trading_mode=mode)

        logger.info(
            "WALLET_SYNCED",
            trading_mode=mode,
            total_equity=str(snapshot.total_equity),
            available_balance=str(snapshot.available_balance),
            balance_in_trades=str(snapshot.balance_in_trades),
            open_positions=snapshot.open_positions_count,
            total_realized_pnl=str(snapshot.total_realized_pnl),
        )
        return snapshot

    async def on_positions_changed(self, trading_mode: Union[str, TradingMode]) -> None:
        """Listener for the reconciler: positions were removed, refresh now."""
        await self.sync_with_exchange(trading_mode)

    def close(self) -> None:
        """Cancel pending notifications and drop subscribers."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()
        self._subscribers.clear()
