"""Configuration management for the settlement service.

Rules:
- YAML provides defaults for non-secret config (symbols, timeouts, policies).
- Environment variables / .env override YAML (``__`` as nested delimiter,
  e.g. ``DATABASE__SQLITE__PATH`` or ``SETTLEMENT__REFUND_ON_PRICE_UNAVAILABLE``).
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BinanceConfig(BaseModel):
    """Binance public market-data stream."""

    websocket_url: str = Field(
        default="wss://stream.binance.com:9443/ws",
        description="Binance raw stream base URL (one stream per connection)",
    )
    stream: str = Field(default="ticker", description="'ticker' (24h rolling ticker) or 'trade'")

    @field_validator("stream")
    @classmethod
    def validate_stream(cls, v: str) -> str:
        if str(v).lower() not in ("ticker", "trade"):
            raise ValueError("stream must be 'ticker' or 'trade'")
        return str(v).lower()


class FeedConfig(BaseModel):
    """Price feed adapter timeouts and reconnect policy."""

    snapshot_wait_timeout_sec: float = Field(default=5.0, gt=0, le=120)
    snapshot_max_age_sec: float = Field(default=10.0, gt=0, le=3600)
    price_wait_timeout_sec: float = Field(default=15.0, gt=0, le=600)
    heartbeat_interval_sec: float = Field(default=20.0, gt=0, le=300)
    stale_after_sec: float = Field(default=60.0, gt=0, le=3600)
    initial_reconnect_backoff_sec: float = Field(default=1.0, gt=0, le=60)
    max_reconnect_backoff_sec: float = Field(default=60.0, ge=1, le=600)
    history_size: int = Field(default=512, ge=1, le=100_000)
    listener_queue_size: int = Field(default=256, ge=1, le=100_000)
    idle_unsubscribe_sec: float = Field(default=300.0, ge=0, le=86400)


class SettlementConfig(BaseModel):
    """Resolution scheduler and failure policy."""

    sweep_interval_sec: float = Field(default=5.0, gt=0, le=3600)
    sweep_batch_size: int = Field(default=200, ge=1, le=10_000)
    claim_lease_sec: float = Field(default=120.0, gt=0, le=86400)
    retry_initial_backoff_sec: float = Field(default=1.0, gt=0, le=60)
    retry_max_backoff_sec: float = Field(default=60.0, gt=0, le=3600)
    refund_on_price_unavailable: bool = Field(
        default=False,
        description="Credit the stake back when an order fails with PRICE_UNAVAILABLE",
    )
    max_duration_sec: int = Field(default=86400, ge=1)

    @field_validator("retry_max_backoff_sec")
    @classmethod
    def validate_retry_backoff(cls, v: float, info) -> float:
        if "retry_initial_backoff_sec" in info.data and v < info.data["retry_initial_backoff_sec"]:
            raise ValueError("retry_max_backoff_sec must be >= retry_initial_backoff_sec")
        return v


class SymbolSeedConfig(BaseModel):
    """One tradable symbol as seeded into the symbol table at startup."""

    id: str
    binance_symbol: str
    enabled: bool = True
    min_amount: Decimal = Field(default=Decimal("1"), gt=0)
    max_amount: Decimal = Field(default=Decimal("1000"), gt=0)
    payout_rate: Decimal = Field(default=Decimal("80"), gt=0, le=1000)

    @field_validator("binance_symbol")
    @classmethod
    def validate_binance_symbol(cls, v: str) -> str:
        v = str(v).strip().upper()
        if not v.isalnum():
            raise ValueError("binance_symbol must be alphanumeric (e.g. BTCUSDT)")
        return v

    @model_validator(mode="after")
    def validate_amount_range(self) -> "SymbolSeedConfig":
        if self.max_amount < self.min_amount:
            raise ValueError("max_amount must be >= min_amount")
        return self


class DatabaseConfig(BaseModel):
    type: str = Field(default="sqlite")

    class SQLiteConfig(BaseModel):
        path: str = Field(default="data/settlement.db")
        busy_timeout_sec: float = Field(default=5.0, gt=0, le=120)

    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)

    @field_validator("type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        if str(v).lower() != "sqlite":
            raise ValueError("Database type must be 'sqlite'")
        return str(v).lower()


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])
    user_header: str = Field(default="X-User-Id", description="Header carrying the authenticated user id")


class MonitoringConfig(BaseModel):
    metrics_interval_seconds: int = Field(default=5, ge=1, le=300)
    metrics_path: str = Field(default="data/metrics.json")


class SettlementServiceConfig(BaseSettings):
    """Main configuration class for the settlement service.

    YAML is parsed as the base config, then env overrides are applied on top.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="DEMO")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    symbols: List[SymbolSeedConfig] = Field(default_factory=list)
    demo_accounts: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if str(v).upper() not in {"DEMO", "REAL"}:
            raise ValueError("Environment must be 'DEMO' or 'REAL'")
        return str(v).upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @field_validator("symbols")
    @classmethod
    def validate_unique_symbols(cls, v: List[SymbolSeedConfig]) -> List[SymbolSeedConfig]:
        ids = [s.id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError("symbol ids must be unique")
        return v

    @field_validator("demo_accounts")
    @classmethod
    def validate_demo_accounts(cls, v: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for user_id, balance in v.items():
            if balance < 0:
                raise ValueError(f"demo account {user_id!r} has a negative balance")
        return v

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "SettlementServiceConfig":
        """Load configuration from YAML, then apply environment overrides.

        Values from the environment (and .env) win over YAML, key by key.
        """
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {yaml_path}")

        merged = _deep_merge(data, _env_overrides(cls.model_config.get("env_nested_delimiter") or "__"))

        try:
            return cls.model_validate(merged)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")


_SECTIONS = ("binance", "feed", "settlement", "database", "api", "monitoring")
_TOP_LEVEL = ("environment", "log_level", "json_logs")


def _env_overrides(delimiter: str) -> Dict[str, Any]:
    """Collect ENV overrides (e.g. FEED__PRICE_WAIT_TIMEOUT_SEC=20) as a nested dict."""
    out: Dict[str, Any] = {}
    for key, value in os.environ.items():
        lowered = key.lower()
        if lowered in _TOP_LEVEL:
            out[lowered] = value
            continue
        parts = lowered.split(delimiter)
        if len(parts) < 2 or parts[0] not in _SECTIONS:
            continue
        node = out
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return out


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[Path] = None) -> SettlementServiceConfig:
    """Load configuration from YAML + .env (env wins)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        env_path = os.getenv("BINSETTLE_CONFIG")
        possible_paths = [Path(env_path)] if env_path else []
        possible_paths += [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return SettlementServiceConfig.from_yaml(config_path)
