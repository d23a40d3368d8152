"""Configuration management for the bridge arbitrage engine."""

import os
import re
from pathlib import Path
from typing import Dict, List, Optional
import yaml
from pydantic import BaseModel, Field

from .venues import (
    DEFAULT_MIN_INTERVAL_MS,
    DEFAULT_WITHDRAWAL_FEES,
    FALLBACK_UNITS_PER_REFERENCE,
)

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class DepositAddress(BaseModel):
    """Deposit address for one asset on one venue."""
    address: str
    tag: Optional[str] = None


class ExchangeAccount(BaseModel):
    """Exchange account configuration."""
    key: str = ""
    secret: str = ""
    password: Optional[str] = None
    sandbox: bool = True  # Default to sandbox for safety
    deposit_addresses: Dict[str, DepositAddress] = Field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.key and self.secret)


class ExchangesConfig(BaseModel):
    """Selected venues and their accounts."""
    enabled: List[str] = Field(default_factory=lambda: ["binance", "kraken", "okx"])
    accounts: Dict[str, ExchangeAccount] = Field(default_factory=dict)
    timeout_ms: int = 10000


class FeeConfig(BaseModel):
    """Fee configuration."""
    taker_bps: Dict[str, float] = Field(default_factory=lambda: {"default": 10.0})
    withdrawal: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WITHDRAWAL_FEES))
    network: Dict[str, float] = Field(default_factory=dict)


class ScanConfig(BaseModel):
    """Path scanning configuration."""
    currencies: List[str] = Field(default_factory=lambda: ["USDT", "USDC"])
    bridge_assets: List[str] = Field(default_factory=lambda: ["XRP", "XLM", "TRX", "LTC"])
    default_bridge: str = "XRP"
    rotation_interval_s: float = 60.0
    min_profit_percent: float = 0.5
    enabled_categories: Dict[str, bool] = Field(
        default_factory=lambda: {"ZAR": True, "INTERNATIONAL": True}
    )


class PriceCacheConfig(BaseModel):
    """Price cache configuration."""
    poll_interval_ms: int = 5000
    fetch_timeout_ms: int = 10000
    reference_quote: str = "USDT"
    synthetic_spread_pct: float = 0.05
    max_cross_rate_deviation_pct: float = 30.0


class RiskConfig(BaseModel):
    """Risk limits for trade sizing."""
    max_balance_percent: float = 10.0
    max_trade_amount_ref: float = 5000.0  # In reference currency (USDT)
    min_reserve_percent: float = 5.0
    max_concurrent_trades: int = 1
    max_daily_trades: int = 10
    fallback_units_per_reference: Dict[str, float] = Field(
        default_factory=lambda: dict(FALLBACK_UNITS_PER_REFERENCE)
    )


class ValidationConfig(BaseModel):
    """Pre-flight validation configuration."""
    min_profit_percent: float = 0.5
    fee_buffer_percent: float = 0.2
    min_trade_amount: float = 10.0
    max_trade_amount: float = 5000.0
    portfolio_percent: Optional[float] = None  # Falls back to risk.max_balance_percent
    require_confirmation: bool = True
    # Extra venues that need a tag per asset, merged with the built-in table
    extra_tag_required: Dict[str, List[str]] = Field(default_factory=dict)


class RateLimitConfig(BaseModel):
    """Per-venue call spacing."""
    min_interval_ms: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_MIN_INTERVAL_MS))
    global_delay_ms: int = 100


class ExecutionConfig(BaseModel):
    """Execution configuration."""
    mode: str = "paper"  # paper | live
    deposit_poll_interval_s: float = 5.0
    deposit_timeout_s: float = 600.0
    deposit_arrival_ratio: float = 0.95
    leg_timeout_s: float = 30.0
    history_limit: int = 100


class PaperConfig(BaseModel):
    """Simulated venues used in paper mode."""
    balances: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    transfer_delay_s: float = 3.0


class AlertConfig(BaseModel):
    """Alert configuration."""
    telegram_token: str = ""
    telegram_chat_id: str = ""
    notify_all_executions: bool = True
    notify_fund_loss_risk: bool = True


class StorageConfig(BaseModel):
    """Storage configuration."""
    db_path: str = "bridgearb.sqlite"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "bridgearb.log"
    log_quotes: bool = False


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080


class Config(BaseModel):
    """Main configuration model."""
    exchanges: ExchangesConfig = Field(default_factory=ExchangesConfig)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    price_cache: PriceCacheConfig = Field(default_factory=PriceCacheConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    alerts: Optional[AlertConfig] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def is_live(self) -> bool:
        return self.execution.mode == "live"

    def get_taker_fee(self, exchange: str) -> float:
        """Taker fee for an exchange as a fraction (10 bps -> 0.001)."""
        bps = self.fees.taker_bps.get(exchange, self.fees.taker_bps.get("default", 10.0))
        return bps / 10000

    def get_withdrawal_fee(self, asset: str) -> float:
        """Flat withdrawal fee in units of the asset."""
        return self.fees.withdrawal.get(asset, 0.0)

    def get_network_fee(self, asset: str) -> float:
        return self.fees.network.get(asset, 0.0)

    def get_min_interval_ms(self, exchange: str) -> int:
        intervals = self.rate_limits.min_interval_ms
        return intervals.get(exchange, intervals.get("default", 200))

    def get_account(self, exchange: str) -> ExchangeAccount:
        return self.exchanges.accounts.get(exchange) or ExchangeAccount()

    @classmethod
    def load_from_file(cls, config_path: str = "config.yaml") -> "Config":
        """Load configuration from YAML file with environment variable substitution."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        raw = config_path.read_text()

        # Unset variables are left as-is so a missing secret is visible
        raw = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), raw)

        config_data = yaml.safe_load(raw) or {}
        return cls(**config_data)


def get_config(config_path: str = "config.yaml") -> Config:
    """Get configuration instance."""
    return Config.load_from_file(config_path)
