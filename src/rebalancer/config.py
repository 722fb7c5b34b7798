"""Application configuration using pydantic-settings.

Runtime settings come from the environment (or `.env`); the chain and route
tables come from a JSON document referenced by `routes_file`.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rebalancer.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAINNET_ACROSS_URL = "https://app.across.to/api"
TESTNET_ACROSS_URL = "https://testnet.across.to/api"
BINANCE_BASE_URL = "https://api.binance.com"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="mainnet", description="mainnet or testnet")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(default=True, description="Fabricate receipts instead of submitting")

    # ======================
    # Ledger store
    # ======================
    redis_url: str = Field(default="redis://localhost:6379/0", description="Ledger store URL")
    redis_connect_timeout: float = Field(default=17.0, description="Store connect timeout (s)")

    # ======================
    # Routes
    # ======================
    routes_file: str = Field(default="config/routes.json", description="Chains and routes JSON")
    own_address: str = Field(default="", description="Agent address used as sender/recipient")

    # ======================
    # Rails
    # ======================
    across_api_url: Optional[str] = Field(default=None, description="Override Across API URL")
    binance_api_key: str = Field(default="", description="Binance API key")
    binance_api_secret: str = Field(default="", description="Binance API secret")
    binance_base_url: str = Field(default=BINANCE_BASE_URL, description="Binance API URL")

    # ======================
    # Timeouts and scheduling
    # ======================
    quote_timeout: float = Field(default=30.0, description="Bound on a single quote (s)")
    submission_timeout: float = Field(default=600.0, description="Bound on submit+confirm (s)")
    receipt_timeout: float = Field(default=30.0, description="Bound on a receipt lookup (s)")
    balance_timeout: float = Field(default=30.0, description="Bound on a balance read (s)")
    max_concurrency: int = Field(default=4, description="Max routes/entries in flight")
    poll_interval_seconds: int = Field(default=60, description="Seconds between cycles")

    # ======================
    # Metrics
    # ======================
    metrics_port: int = Field(default=0, description="Prometheus port (0 = disabled)")

    @property
    def is_mainnet(self) -> bool:
        return self.environment.lower() == "mainnet"

    @property
    def across_url(self) -> str:
        if self.across_api_url:
            return self.across_api_url
        return MAINNET_ACROSS_URL if self.is_mainnet else TESTNET_ACROSS_URL

    @property
    def has_binance(self) -> bool:
        return bool(self.binance_api_key and self.binance_api_secret)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "redis_url": self._redact_url(self.redis_url),
            "routes_file": self.routes_file,
            "own_address": self.own_address or "(not set)",
            "across_url": self.across_url,
            "binance": {
                "base_url": self.binance_base_url,
                "api_key": "***" if self.binance_api_key else "(not set)",
                "api_secret": "***" if self.binance_api_secret else "(not set)",
            },
            "timeouts": {
                "quote": self.quote_timeout,
                "submission": self.submission_timeout,
                "receipt": self.receipt_timeout,
                "balance": self.balance_timeout,
            },
            "max_concurrency": self.max_concurrency,
            "poll_interval_seconds": self.poll_interval_seconds,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact the password part of a store URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            creds, host = rest.rsplit("@", 1)
            if ":" in creds:
                user, _ = creds.split(":", 1)
                return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class AssetConfig(BaseModel):
    """A token known on one chain."""

    symbol: str
    address: str
    decimals: int = 18
    ticker_hash: Optional[str] = None

    @property
    def ticker(self) -> str:
        return (self.ticker_hash or self.symbol).lower()


class ChainConfig(BaseModel):
    """RPC providers and assets for one chain."""

    providers: list[str] = Field(default_factory=list)
    assets: list[AssetConfig] = Field(default_factory=list)


class RouteConfig(BaseModel):
    """A liquidity corridor with its thresholds and rail preferences."""

    origin: int
    destination: int
    asset: str
    maximum: int
    reserve: int = 0
    preferences: list[str]
    slippages: list[int] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_scalar_slippage(cls, data):
        if isinstance(data, dict) and "slippages" not in data and "slippage" in data:
            data = dict(data)
            data["slippages"] = [data.pop("slippage")]
        return data

    @field_validator("maximum", "reserve")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @model_validator(mode="after")
    def _check_preferences(self) -> "RouteConfig":
        if not self.preferences:
            raise ValueError("route needs at least one bridge preference")
        if not self.slippages:
            raise ValueError("route needs a slippage tolerance")
        if len(self.slippages) == 1 and len(self.preferences) > 1:
            self.slippages = self.slippages * len(self.preferences)
        if len(self.slippages) != len(self.preferences):
            raise ValueError(
                f"{len(self.slippages)} slippages for {len(self.preferences)} preferences"
            )
        if any(s < 0 for s in self.slippages):
            raise ValueError("slippage must be non-negative")
        return self

    def slippage_for(self, index: int) -> int:
        return self.slippages[index]

    @property
    def label(self) -> str:
        return f"{self.origin}->{self.destination}:{self.asset}"


class RebalanceConfig(BaseModel):
    """Chains and routes consumed by a rebalancing cycle."""

    chains: dict[str, ChainConfig] = Field(default_factory=dict)
    routes: list[RouteConfig] = Field(default_factory=list)

    def chain(self, chain_id: int) -> Optional[ChainConfig]:
        return self.chains.get(str(chain_id))


def load_rebalance_config(path: Optional[str] = None) -> RebalanceConfig:
    """Load the chains/routes document.

    Raises:
        ConfigurationError: If the file is missing or does not validate
    """
    path = path or get_settings().routes_file
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        config = RebalanceConfig.model_validate(raw)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Routes file not found: {path}") from e
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid routes file {path}: {e}") from e

    logger.info(f"Loaded {len(config.routes)} route(s) across {len(config.chains)} chain(s)")
    return config
