"""
CLI entrypoint for the TradeKeeper engine.

Provides commands for running the engine and for one-shot reconcile,
regime, wallet and exit-price checks.
"""
import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from tradekeeper.config.config import Config, load_config
from tradekeeper.domain.models import Position
from tradekeeper.domain.protocols import Entity
from tradekeeper.exceptions import TradeKeeperError
from tradekeeper.execution.price_gate import fetch_validated_exit_price
from tradekeeper.live.engine import TradingEngine
from tradekeeper.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="tradekeeper",
    help="Position reconciliation and regime confirmation engine",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path], log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(str(config_path) if config_path else None)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Failed to load configuration: {e}", fg=typer.colors.RED, bold=True, err=True)
        raise typer.Exit(1)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _echo_json(data: dict) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
    run_seconds: Optional[float] = typer.Option(None, "--run-seconds", help="Stop after this many seconds"),
):
    """
    Run the engine (regime, reconciliation and wallet loops).

    Example:
        python run.py run --run-seconds 600
    """
    config = _load(config_path, log_file)
    if config.trading_mode == "live":
        typer.secho("Running against the LIVE exchange account", fg=typer.colors.YELLOW, bold=True)

    engine = TradingEngine(config)
    try:
        asyncio.run(engine.run(run_seconds))
    except KeyboardInterrupt:
        logger.info("Engine stopped by user")
    except TradeKeeperError as e:
        logger.error("Engine failed", error=str(e), error_type=type(e).__name__)
        raise typer.Exit(1)


@app.command()
def reconcile(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    wallet_id: Optional[str] = typer.Option(None, "--wallet", help="Wallet id (default: the mode's wallet)"),
):
    """Run one reconciliation pass and print the result."""
    config = _load(config_path)
    engine = TradingEngine(config)

    async def _run():
        try:
            return await engine.reconciler.reconcile(config.trading_mode, wallet_id)
        finally:
            await engine.client.close()

    result = asyncio.run(_run())
    _echo_json(result.to_dict())
    if not result.success:
        raise typer.Exit(1)


@app.command()
def regime(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    force: bool = typer.Option(False, "--force", help="Ignore the cached value"),
):
    """Detect the current market regime and print the snapshot."""
    config = _load(config_path)
    engine = TradingEngine(config)

    async def _run():
        try:
            await engine.regime_detector.initialize()
            return await engine.regime_detector.get_regime(force_recompute=force)
        finally:
            await engine.client.close()

    snapshot = asyncio.run(_run())
    _echo_json(snapshot.to_dict())
    blocked = engine.regime_detector.is_trading_blocked(snapshot)
    color = typer.colors.RED if blocked else typer.colors.GREEN
    typer.secho(f"Trading {'BLOCKED' if blocked else 'allowed'} by regime gate", fg=color, bold=True)


@app.command()
def wallet(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Sync the wallet with the exchange and print the snapshot."""
    config = _load(config_path)
    engine = TradingEngine(config)

    async def _run():
        try:
            return await engine.wallet.initialize(config.trading_mode)
        finally:
            engine.wallet.close()
            await engine.client.close()

    try:
        snapshot = asyncio.run(_run())
    except TradeKeeperError as e:
        typer.secho(f"Wallet sync failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    _echo_json(snapshot.to_dict())


@app.command(name="exit-price")
def exit_price(
    position_id: str = typer.Argument(..., help="Business position id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Fetch a current price for a stored position and run it through the price gate."""
    config = _load(config_path)
    engine = TradingEngine(config)

    async def _run():
        try:
            records = await engine.store.filter(
                Entity.POSITION.value,
                {"position_id": position_id, "trading_mode": config.trading_mode},
            )
            if not records:
                return None, None
            position = Position.from_record(records[0])
            return position, await fetch_validated_exit_price(engine.client, position, engine.price_gate)
        finally:
            await engine.client.close()

    position, tick = asyncio.run(_run())
    if position is None:
        typer.secho(f"No position {position_id} in {config.trading_mode}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if tick is None:
        typer.secho(f"{position.symbol}: no acceptable exit price (see logs)", fg=typer.colors.YELLOW)
        raise typer.Exit(2)
    typer.secho(
        f"{position.symbol}: exit price {tick.price} accepted (entry {position.entry_price})",
        fg=typer.colors.GREEN,
    )


if __name__ == "__main__":
    app()
