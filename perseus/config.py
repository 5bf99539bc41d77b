"""Runtime configuration read from the environment.

Secrets (API keys, DATABASE_URL) are carried here but must never be logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal, Optional

DEFAULT_SYMBOLS = ("BTC-USD", "ETH-USD")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RiskParameters:
    """Limits applied by the risk management agent (fractions of portfolio)."""

    max_position_size: float = 0.05
    max_total_exposure: float = 0.50
    max_drawdown: float = 0.15
    stop_loss_default: float = 0.03
    position_sizing: Literal["risk-based", "fixed", "kelly"] = "risk-based"
    risk_per_trade: float = 0.01
    correlation_threshold: float = 0.7
    min_risk_reward: float = 1.5
    kelly_fraction: float = 0.5


@dataclass
class ExecutionParameters:
    slippage_tolerance: float = 0.001
    execution_strategy: Literal["market", "limit", "smart"] = "market"
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    circuit_breaker_threshold: float = 0.05
    emergency_stop_loss: float = 0.10
    expire_after_seconds: int = 60
    smart_routing_enabled: bool = True
    order_size_limit: float = 100_000.0
    aggressiveness: float = 0.5
    iceberg_chunks: int = 10
    chunk_delay_ms: int = 500
    order_poll_interval_ms: int = 1000
    limit_offset: float = 0.001
    fee_rate: float = 0.001


@dataclass(frozen=True)
class ProviderCredentials:
    """API credentials for one exchange provider."""

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None
    testnet: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @classmethod
    def from_env(cls, prefix: str) -> "ProviderCredentials":
        """Read ``<PREFIX>_API_KEY``, ``_API_SECRET``, ``_PASSPHRASE`` and ``_TESTNET``."""
        prefix = prefix.upper()
        return cls(
            api_key=os.environ.get(f"{prefix}_API_KEY") or None,
            api_secret=os.environ.get(f"{prefix}_API_SECRET") or None,
            passphrase=os.environ.get(f"{prefix}_PASSPHRASE") or None,
            testnet=_env_bool(f"{prefix}_TESTNET", False),
        )


@dataclass(frozen=True)
class SystemConfig:
    symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    dry_run: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    database_url: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"
    enable_providers: bool = True
    binance: ProviderCredentials = field(default_factory=ProviderCredentials)
    coinbase: ProviderCredentials = field(default_factory=ProviderCredentials)

    @classmethod
    def from_env(cls) -> "SystemConfig":
        raw_symbols = os.environ.get("PERSEUS_SYMBOLS", "")
        symbols = tuple(s.strip().upper() for s in raw_symbols.split(",") if s.strip()) or DEFAULT_SYMBOLS
        return cls(
            symbols=symbols,
            dry_run=_env_bool("PERSEUS_DRY_RUN", True),
            api_host=os.environ.get("PERSEUS_API_HOST", "127.0.0.1"),
            api_port=int(os.environ.get("PERSEUS_API_PORT", "8000")),
            database_url=os.environ.get("DATABASE_URL") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_dir=os.environ.get("PERSEUS_LOG_DIR", "logs") or None,
            enable_providers=_env_bool("PERSEUS_ENABLE_PROVIDERS", True),
            binance=ProviderCredentials.from_env("BINANCE"),
            coinbase=ProviderCredentials.from_env("COINBASE"),
        )
