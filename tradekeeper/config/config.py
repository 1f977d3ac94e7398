"""
Configuration models for the reconciliation and regime engine.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeConfig(BaseSettings):
    """Exchange configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binance"
    quote_asset: str = "USDT"
    use_testnet: bool = True
    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    # Per-call deadlines; a timed-out call is a failure, never retried inline
    account_timeout_seconds: float = Field(default=120.0, ge=15.0, le=120.0)
    ticker_timeout_seconds: float = Field(default=15.0, ge=15.0, le=120.0)
    klines_timeout_seconds: float = Field(default=30.0, ge=15.0, le=120.0)


class PriceGateConfig(BaseSettings):
    """Exit price validation bounds."""
    model_config = SettingsConfigDict(extra="ignore")

    max_deviation_pct: float = Field(default=0.20, gt=0.0, le=1.0, description="Max |candidate-entry|/entry")
    grace_window_minutes: float = Field(default=5.0, ge=0.0, le=60.0, description="Young positions get the wider band")
    grace_deviation_pct: float = Field(default=0.50, gt=0.0, le=5.0)
    max_price_age_seconds: float = Field(default=120.0, ge=1.0, le=3600.0, description="Reject prices observed earlier than this")


class SentimentConfig(BaseSettings):
    """Fear & Greed sentiment index (optional)."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    url: str = "https://api.alternative.me/fng/?limit=1"
    fetch_interval_seconds: float = Field(default=30.0, ge=1.0, le=3600.0)
    timeout_seconds: float = Field(default=15.0, ge=1.0, le=120.0)
    max_backoff_seconds: float = Field(default=600.0, ge=30.0, le=3600.0)
    warn_again_after_failures: int = Field(default=5, ge=2, le=100)


class RegimeConfig(BaseSettings):
    """Market regime detection configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    symbol: str = "BTC/USDT"
    timeframe: str = "4h"
    kline_limit: int = Field(default=300, ge=50, le=1000)
    min_candles: int = Field(default=50, ge=20, le=1000)
    cache_validity_hours: float = Field(default=1.0, gt=0.0, le=24.0)
    confirmation_threshold: int = Field(default=3, ge=1, le=20)
    max_history: int = Field(default=10, ge=1, le=100)
    minimum_regime_confidence: float = Field(default=60.0, ge=0.0, le=100.0, description="Blocking threshold (percent)")
    scan_interval_seconds: int = Field(default=300, ge=10, le=14400)
    sentiment: SentimentConfig = Field(default_factory=SentimentConfig)


class ReconciliationConfig(BaseSettings):
    """Ghost position reconciliation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    reconcile_enabled: bool = Field(default=True, description="Run ghost reconciliation periodically")
    periodic_interval_seconds: int = Field(default=300, ge=5, le=3600)
    throttle_seconds: float = Field(default=300.0, ge=0.0, le=3600.0, description="Minimum gap between passes (global)")
    max_attempts: int = Field(default=20, ge=1, le=1000)
    ghost_detection_threshold: float = Field(default=0.95, gt=0.0, le=1.0)
    severe_mismatch_ratio: float = Field(default=0.10, ge=0.0, le=1.0)
    old_position_hours: float = Field(default=24.0, gt=0.0)
    very_new_position_minutes: float = Field(default=5.0, ge=0.0)
    auto_reset_fraction: float = Field(default=0.8, gt=0.0, le=1.0)
    auto_reset_cooldown_seconds: float = Field(default=600.0, ge=0.0)
    store_timeout_seconds: float = Field(default=30.0, ge=15.0, le=120.0)

    @model_validator(mode="after")
    def validate_ratios(self) -> "ReconciliationConfig":
        if self.severe_mismatch_ratio >= self.ghost_detection_threshold:
            raise ValueError("severe_mismatch_ratio must be below ghost_detection_threshold")
        return self


class WalletConfig(BaseSettings):
    """Wallet state aggregation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    debounce_ms: int = Field(default=100, ge=0, le=5000)
    sync_interval_seconds: int = Field(default=60, ge=5, le=3600)
    testnet_wallet_id: str = "testnet-main"
    live_wallet_id: str = "live-main"


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # PostgreSQL in production; sqlite accepted for local runs and tests
    database_url: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    price_gate: PriceGateConfig = Field(default_factory=PriceGateConfig)
    regime: RegimeConfig = Field(default_factory=RegimeConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    trading_mode: Literal["testnet", "live"] = "testnet"
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unset variables become YAML null
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]
        if "TRADING_MODE" in os.environ:
            config_dict["trading_mode"] = os.environ["TRADING_MODE"]

        if not config_dict.get("data", {}).get("database_url"):
            db_url = os.getenv("DATABASE_URL")
            if db_url:
                config_dict.setdefault("data", {})["database_url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.environment == "prod" and not self.data.database_url:
            raise ValueError("DATABASE_URL must be set in production")
        if self.trading_mode == "live" and self.exchange.use_testnet:
            raise ValueError("trading_mode=live requires exchange.use_testnet=false")

    def wallet_id_for(self, trading_mode: str) -> str:
        """Default wallet id for a trading mode."""
        if trading_mode == "live":
            return self.wallet.live_wallet_id
        return self.wallet.testnet_wallet_id


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses tradekeeper/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
