"""
Ghost position reconciliation.

Keeps locally recorded open positions consistent with what the exchange
actually holds. One pass:

  1. throttle (one pass per window, shared by every wallet)
  2. attempt budget per (trading_mode, wallet_id)
  3. exchange account snapshot -> holdings (quote asset excluded, total > 0)
  4. local open/trailing positions for the wallet
  5. PositionAnalyzer per position -> ghost / legitimate
  6. delete ghosts concurrently, collecting per-item errors
  7. success (even with zero ghosts) resets the attempt counter

A failure in 3-6 increments the counter and returns a structured failure;
it never propagates to the polling loop. Wallets that crossed most of the
budget are healed by ``auto_reset_stale_attempts``.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from tradekeeper.domain.models import ACTIVE_STATUSES, Position, TradingMode
from tradekeeper.domain.protocols import Entity
from tradekeeper.exceptions import InvariantError, TradeKeeperError
from tradekeeper.monitoring.logger import get_logger
from tradekeeper.reconciliation.position_analyzer import GhostAnalysis, PositionAnalyzer

logger = get_logger(__name__)

CounterKey = Tuple[str, str]


@dataclass
class ReconcileAttemptCounter:
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None


@dataclass
class ReconcileSummary:
    total_positions: int = 0
    ghost_positions_detected: int = 0
    ghost_positions_cleaned: int = 0
    legitimate_positions: int = 0
    invalid_records: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileResult:
    success: bool
    trading_mode: str
    wallet_id: str
    throttled: bool = False
    summary: Optional[ReconcileSummary] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "trading_mode": self.trading_mode,
            "wallet_id": self.wallet_id,
            "throttled": self.throttled,
            "attempts": self.attempts,
        }
        if self.summary is not None:
            data["summary"] = self.summary.to_dict()
        if self.details:
            data["details"] = self.details
        if self.error is not None:
            data["error"] = self.error
        return data


class Reconciler:
    """
    Ghost position reconciler. Owns the throttle and the attempt counters.

    Args:
        client: ExchangeClient (``get_account_info``)
        store: EntityStore
        config: Config (reads ``reconciliation``, ``exchange`` and ``wallet``)
        analyzer: PositionAnalyzer override
        on_positions_changed: called with the trading mode after ghosts are removed
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        client: Any,
        store: Any,
        config: Any,
        *,
        analyzer: Optional[PositionAnalyzer] = None,
        on_positions_changed: Optional[Callable[[str], Union[None, Awaitable[None]]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.store = store
        self.config = config
        self.on_positions_changed = on_positions_changed
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        recon_cfg = config.reconciliation
        self.reconcile_enabled = recon_cfg.reconcile_enabled
        self.throttle = timedelta(seconds=recon_cfg.throttle_seconds)
        self.max_attempts = recon_cfg.max_attempts
        self.auto_reset_fraction = recon_cfg.auto_reset_fraction
        self.auto_reset_cooldown = timedelta(seconds=recon_cfg.auto_reset_cooldown_seconds)
        self.quote_asset = config.exchange.quote_asset

        self.analyzer = analyzer or PositionAnalyzer.from_config(
            store, config.exchange, recon_cfg, clock=self._clock
        )

        self._last_reconcile_at: Optional[datetime] = None
        self._counters: Dict[CounterKey, ReconcileAttemptCounter] = {}

    def _resolve_wallet(self, trading_mode: str, wallet_id: Optional[str]) -> str:
        if wallet_id:
            return wallet_id
        wallet_id_for = getattr(self.config, "wallet_id_for", None)
        return wallet_id_for(trading_mode) if callable(wallet_id_for) else "default"

    def _counter(self, key: CounterKey) -> ReconcileAttemptCounter:
        return self._counters.setdefault(key, ReconcileAttemptCounter())

    def attempts(self, trading_mode: Union[str, TradingMode], wallet_id: Optional[str] = None) -> int:
        mode = TradingMode(trading_mode).value
        counter = self._counters.get((mode, self._resolve_wallet(mode, wallet_id)))
        return counter.attempts if counter else 0

    async def _load_positions(self, mode: str, wallet_id: str, summary: ReconcileSummary) -> List[Position]:
        records = await self.store.filter(
            Entity.POSITION.value,
            {"trading_mode": mode, "status": [s.value for s in ACTIVE_STATUSES]},
        )
        positions: List[Position] = []
        for record in records:
            # Positions without a wallet id belong to the mode's default wallet
            if record.get("wallet_id") not in (None, wallet_id):
                continue
            try:
                positions.append(Position.from_record(record))
            except (KeyError, ValueError, InvalidOperation) as e:
                summary.invalid_records += 1
                logger.warning(
                    "RECONCILE_INVALID_RECORD",
                    record_id=record.get("id"),
                    symbol=record.get("symbol"),
                    error=str(e),
                )
        return positions

    async def _delete_ghosts(self, ghosts: List[GhostAnalysis], summary: ReconcileSummary) -> None:
        results = await asyncio.gather(
            *(self.store.delete(Entity.POSITION.value, g.record_id) for g in ghosts),
            return_exceptions=True,
        )
        for ghost, result in zip(ghosts, results):
            if isinstance(result, Exception):
                summary.errors.append({
                    "position_id": ghost.position_id,
                    "symbol": ghost.symbol,
                    "error": str(result),
                })
                logger.error(
                    "RECONCILE_GHOST_DELETE_FAILED",
                    position_id=ghost.position_id,
                    symbol=ghost.symbol,
                    error=str(result),
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                summary.ghost_positions_cleaned += 1
                logger.info(
                    "RECONCILE_GHOST_REMOVED",
                    position_id=ghost.position_id,
                    symbol=ghost.symbol,
                    reason=ghost.reason,
                )

    async def _notify_changed(self, mode: str) -> None:
        if not self.on_positions_changed:
            return
        try:
            r = self.on_positions_changed(mode)
            if asyncio.iscoroutine(r):
                await r
        except InvariantError:
            raise
        except Exception as e:
            logger.warning("RECONCILE_LISTENER_FAILED", trading_mode=mode, error=str(e), error_type=type(e).__name__)

    def _failed(self, key: CounterKey, counter: ReconcileAttemptCounter, error: Exception) -> ReconcileResult:
        mode, wallet = key
        counter.attempts += 1
        if counter.attempts == self.max_attempts - 2:
            logger.warning(
                "RECONCILE_ATTEMPTS_NEAR_LIMIT",
                trading_mode=mode,
                wallet_id=wallet,
                attempts=counter.attempts,
                max_attempts=self.max_attempts,
            )
        logger.error(
            "RECONCILE_FAILED",
            trading_mode=mode,
            wallet_id=wallet,
            attempts=counter.attempts,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ReconcileResult(False, mode, wallet, error=str(error), attempts=counter.attempts)

    async def reconcile(
        self,
        trading_mode: Union[str, TradingMode],
        wallet_id: Optional[str] = None,
    ) -> ReconcileResult:
        """Run one reconciliation pass for a wallet. Only InvariantError propagates."""
        mode = TradingMode(trading_mode).value
        wallet = self._resolve_wallet(mode, wallet_id)
        key = (mode, wallet)
        counter = self._counter(key)
        now = self._clock()

        if not self.reconcile_enabled:
            logger.info("RECONCILE_SUMMARY", reconcile_disabled=True, trading_mode=mode, wallet_id=wallet)
            return ReconcileResult(True, mode, wallet, summary=ReconcileSummary(), attempts=counter.attempts)

        if self._last_reconcile_at is not None and now - self._last_reconcile_at < self.throttle:
            logger.debug(
                "RECONCILE_THROTTLED",
                trading_mode=mode,
                wallet_id=wallet,
                seconds_since_last=(now - self._last_reconcile_at).total_seconds(),
            )
            return ReconcileResult(True, mode, wallet, throttled=True, attempts=counter.attempts)

        if counter.attempts >= self.max_attempts:
            logger.warning(
                "RECONCILE_BUDGET_EXHAUSTED",
                trading_mode=mode,
                wallet_id=wallet,
                attempts=counter.attempts,
                max_attempts=self.max_attempts,
            )
            return ReconcileResult(
                False, mode, wallet,
                error=f"Max reconciliation attempts ({self.max_attempts}) reached",
                attempts=counter.attempts,
            )

        self._last_reconcile_at = now
        counter.last_attempt_at = now
        logger.info("RECONCILE_START", trading_mode=mode, wallet_id=wallet, attempt=counter.attempts + 1)

        summary = ReconcileSummary()
        try:
            account = await self.client.get_account_info()
            holdings = account.holdings(self.quote_asset)
            quote = account.quote_balance(self.quote_asset)

            positions = await self._load_positions(mode, wallet, summary)
            summary.total_positions = len(positions)

            analyses = await asyncio.gather(*(self.analyzer.analyze(p, holdings) for p in positions))
            ghosts = [a for a in analyses if a.is_ghost]
            legitimate = [a for a in analyses if not a.is_ghost]
            summary.ghost_positions_detected = len(ghosts)
            summary.legitimate_positions = len(legitimate)

            for ghost in ghosts:
                logger.warning("RECONCILE_GHOST_DETECTED", trading_mode=mode, wallet_id=wallet, **ghost.to_dict())

            if ghosts:
                await self._delete_ghosts(ghosts, summary)
        except InvariantError:
            raise
        except TradeKeeperError as e:
            return self._failed(key, counter, e)
        except Exception as e:
            # Unexpected collaborator or record failures still count against the budget
            logger.exception("RECONCILE_UNEXPECTED_ERROR", trading_mode=mode, wallet_id=wallet)
            return self._failed(key, counter, e)

        counter.attempts = 0
        if summary.ghost_positions_cleaned:
            await self._notify_changed(mode)

        logger.info("RECONCILE_SUMMARY", trading_mode=mode, wallet_id=wallet, **summary.to_dict())
        return ReconcileResult(
            True, mode, wallet,
            summary=summary,
            details={
                "holdings": {asset: str(b.total) for asset, b in holdings.items()},
                "quote_balance": {"asset": quote.asset, "free": str(quote.free), "locked": str(quote.locked)},
                "ghosts": [g.to_dict() for g in ghosts],
                "legitimate_position_ids": [a.position_id for a in legitimate],
            },
            attempts=0,
        )

    def reset_attempts(self, trading_mode: Union[str, TradingMode], wallet_id: Optional[str] = None) -> int:
        """Manually reset a wallet's counter (every wallet of the mode when wallet_id is None)."""
        mode = TradingMode(trading_mode).value
        reset = 0
        for (m, w), counter in self._counters.items():
            if m == mode and (wallet_id is None or w == wallet_id):
                if counter.attempts:
                    reset += 1
                counter.attempts = 0
        logger.info("RECONCILE_ATTEMPTS_RESET", trading_mode=mode, wallet_id=wallet_id, wallets_reset=reset)
        return reset

    def auto_reset_stale_attempts(self) -> List[CounterKey]:
        """Reset wallets past ``auto_reset_fraction`` of the budget whose last attempt is old enough."""
        now = self._clock()
        threshold = self.max_attempts * self.auto_reset_fraction
        reset: List[CounterKey] = []
        for key, counter in self._counters.items():
            if counter.attempts < threshold or counter.last_attempt_at is None:
                continue
            if now - counter.last_attempt_at >= self.auto_reset_cooldown:
                logger.info(
                    "RECONCILE_ATTEMPTS_AUTO_RESET",
                    trading_mode=key[0],
                    wallet_id=key[1],
                    attempts=counter.attempts,
                    idle_seconds=(now - counter.last_attempt_at).total_seconds(),
                )
                counter.attempts = 0
                reset.append(key)
        return reset

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        since_last = (now - self._last_reconcile_at).total_seconds() if self._last_reconcile_at else None
        return {
            "enabled": self.reconcile_enabled,
            "last_reconcile_at": self._last_reconcile_at.isoformat() if self._last_reconcile_at else None,
            "seconds_since_last": since_last,
            "throttle_seconds": self.throttle.total_seconds(),
            "is_throttled": since_last is not None and since_last < self.throttle.total_seconds(),
            "max_attempts": self.max_attempts,
            "wallets": {
                f"{mode}:{wallet}": {
                    "attempts": c.attempts,
                    "last_attempt_at": c.last_attempt_at.isoformat() if c.last_attempt_at else None,
                    "exhausted": c.attempts >= self.max_attempts,
                }
                for (mode, wallet), c in self._counters.items()
            },
        }
