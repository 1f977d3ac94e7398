"""
Engine wiring and polling loops.

Three independently timed asyncio loops:
  - regime:     refresh the cached regime on the scan interval
  - reconcile:  auto-reset sweep, then one reconciliation pass
  - wallet:     full wallet sync with the exchange

Every iteration catches and logs its failure (TradeKeeperError as an
expected failure, anything else with a traceback); no loop failure stops
the others. InvariantError stops the engine.
"""
import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from tradekeeper.config.config import Config
from tradekeeper.data.binance_client import BinanceClient
from tradekeeper.data.sentiment import DisabledSentimentProvider, FearGreedSentimentProvider
from tradekeeper.exceptions import InvariantError, TradeKeeperError
from tradekeeper.execution.price_gate import PriceGate
from tradekeeper.monitoring.logger import bind_engine_context, clear_engine_context, get_logger
from tradekeeper.reconciliation.reconciler import Reconciler
from tradekeeper.regime.detector import RegimeDetector
from tradekeeper.storage.db import init_db
from tradekeeper.storage.repository import RegimeStateStore, SqlEntityStore
from tradekeeper.wallet.aggregator import WalletStateAggregator

logger = get_logger(__name__)


def build_client(config: Config) -> BinanceClient:
    ex = config.exchange
    return BinanceClient(
        api_key=ex.api_key,
        api_secret=ex.api_secret,
        use_testnet=ex.use_testnet,
        account_timeout=ex.account_timeout_seconds,
        ticker_timeout=ex.ticker_timeout_seconds,
        klines_timeout=ex.klines_timeout_seconds,
    )


def build_store(config: Config) -> SqlEntityStore:
    if not config.data.database_url:
        raise ValueError("data.database_url (DATABASE_URL) is required")
    return SqlEntityStore(
        init_db(config.data.database_url),
        timeout_seconds=config.reconciliation.store_timeout_seconds,
    )


def build_sentiment(config: Config) -> Any:
    s = config.regime.sentiment
    if not s.enabled:
        return DisabledSentimentProvider()
    return FearGreedSentimentProvider(
        url=s.url,
        fetch_interval_seconds=s.fetch_interval_seconds,
        timeout_seconds=s.timeout_seconds,
        max_backoff_seconds=s.max_backoff_seconds,
        warn_again_after_failures=s.warn_again_after_failures,
    )


class TradingEngine:
    """
    Owns the exchange client, the store and the four components.

    Collaborators may be injected (tests); otherwise they are built from config.
    """

    def __init__(
        self,
        config: Config,
        *,
        client: Optional[Any] = None,
        store: Optional[Any] = None,
        sentiment: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.trading_mode = config.trading_mode
        self.wallet_id = config.wallet_id_for(config.trading_mode)

        self.client = client or build_client(config)
        self.store = store or build_store(config)

        self.regime_detector = RegimeDetector(
            self.client,
            config.regime,
            sentiment=sentiment if sentiment is not None else build_sentiment(config),
            state_store=RegimeStateStore(self.store, config.regime.symbol, config.regime.timeframe),
            clock=clock,
        )
        self.wallet = WalletStateAggregator(self.client, self.store, config, clock=clock)
        self.reconciler = Reconciler(
            self.client,
            self.store,
            config,
            on_positions_changed=self.wallet.on_positions_changed,
            clock=clock,
        )
        self.price_gate = PriceGate.from_config(config.price_gate, clock=clock)

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        bind_engine_context(trading_mode=self.trading_mode, wallet_id=self.wallet_id)
        logger.info("ENGINE_START")
        await self.regime_detector.initialize()
        try:
            await self.wallet.initialize(self.trading_mode)
        except InvariantError:
            raise
        except TradeKeeperError as e:
            # Wallet loop retries on its own interval
            logger.warning("WALLET_INIT_FAILED", trading_mode=self.trading_mode, error=str(e))
        except Exception as e:
            logger.exception("WALLET_INIT_CRASHED", trading_mode=self.trading_mode, error=str(e))

        self._tasks = [
            asyncio.create_task(self._loop("regime", self.config.regime.scan_interval_seconds, self.regime_step)),
            asyncio.create_task(self._loop("wallet", self.config.wallet.sync_interval_seconds, self.wallet_step)),
        ]
        if self.config.reconciliation.reconcile_enabled:
            self._tasks.append(asyncio.create_task(
                self._loop("reconcile", self.config.reconciliation.periodic_interval_seconds, self.reconcile_step)
            ))

    async def _loop(self, name: str, interval: float, step: Callable[[], Awaitable[None]]) -> None:
        while not self._stop.is_set():
            try:
                await step()
            except InvariantError as e:
                logger.critical("ENGINE_INVARIANT_VIOLATION", loop=name, error=str(e))
                self._stop.set()
                raise
            except TradeKeeperError as e:
                logger.error("LOOP_ITERATION_FAILED", loop=name, error=str(e), error_type=type(e).__name__)
            except Exception as e:
                logger.exception("LOOP_ITERATION_CRASHED", loop=name, error=str(e), error_type=type(e).__name__)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def regime_step(self) -> None:
        snapshot = await self.regime_detector.get_regime()
        logger.info(
            "REGIME_STATUS",
            regime=snapshot.regime.value,
            confidence_pct=snapshot.confidence_pct,
            is_confirmed=snapshot.is_confirmed,
            consecutive_periods=snapshot.consecutive_periods,
            is_fallback=snapshot.is_fallback,
            blocked=self.regime_detector.is_trading_blocked(snapshot),
        )

    async def reconcile_step(self) -> None:
        self.reconciler.auto_reset_stale_attempts()
        result = await self.reconciler.reconcile(self.trading_mode, self.wallet_id)
        if not result.success:
            logger.warning("RECONCILE_PASS_FAILED", **result.to_dict())

    async def wallet_step(self) -> None:
        await self.wallet.sync_with_exchange(self.trading_mode)

    async def run(self, run_seconds: Optional[float] = None) -> None:
        """Start, then run until stopped (or for ``run_seconds``)."""
        await self.start()
        try:
            if run_seconds is None:
                await self._stop.wait()
            else:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=run_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.wallet.close()
        await self.client.close()
        logger.info("ENGINE_STOPPED")
        clear_engine_context()
        for result in results:
            if isinstance(result, InvariantError):
                raise result
