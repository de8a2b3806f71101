"""
Application settings with environment variable support.

Uses Pydantic Settings so every value can come from the environment
or a .env file, validated before the engine starts.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from triarb.config.constants import (
    DEFAULT_BALANCE_FRACTION,
    DEFAULT_FILL_POLL_INTERVAL_S,
    DEFAULT_FILL_TIMEOUT_S,
    DEFAULT_MAX_RETRY_ROUNDS,
    DEFAULT_PAIR_AB,
    DEFAULT_PAIR_AC,
    DEFAULT_PAIR_BC,
    DEFAULT_PROFIT_THRESHOLD,
    DEFAULT_RATE_LIMIT_CALLS,
    DEFAULT_RATE_LIMIT_INTERVAL,
    DEFAULT_RETRY_BACKOFF_S,
    DEFAULT_TICKER_MIN_INTERVAL_MS,
    TRADE_ACCOUNTS,
    UTILITY_ACCOUNT,
)


ACCOUNT_NAMES: tuple[str, ...] = (*TRADE_ACCOUNTS, UTILITY_ACCOUNT)


class ConfigurationError(Exception):
    """Settings are valid on their own but unusable for the requested run."""


class Settings(BaseSettings):
    """
    Trader settings loaded from environment variables.

    Credentials are only required for live trading; dry runs use the
    public ticker and a paper exchange.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Sub-account Credentials
    # =========================================================================

    trade_0_api_key: SecretStr | None = Field(default=None, description="Key for leg 1")
    trade_0_api_secret: SecretStr | None = Field(default=None)
    trade_1_api_key: SecretStr | None = Field(default=None, description="Key for leg 2")
    trade_1_api_secret: SecretStr | None = Field(default=None)
    trade_2_api_key: SecretStr | None = Field(default=None, description="Key for leg 3")
    trade_2_api_secret: SecretStr | None = Field(default=None)
    utility_api_key: SecretStr | None = Field(
        default=None,
        description="Key used for balances, cancels and open-order queries",
    )
    utility_api_secret: SecretStr | None = Field(default=None)

    # =========================================================================
    # Triangle
    # =========================================================================

    pair_ab: str = Field(default=DEFAULT_PAIR_AB, description="First pair, A_B")
    pair_bc: str = Field(default=DEFAULT_PAIR_BC, description="Second pair, B_C")
    pair_ac: str = Field(default=DEFAULT_PAIR_AC, description="Closing pair, A_C")

    profit_threshold: float = Field(
        default=DEFAULT_PROFIT_THRESHOLD,
        gt=1.0,
        le=2.0,
        description="Cycle yield above which a triangle is executed",
    )

    balance_fraction: float = Field(
        default=DEFAULT_BALANCE_FRACTION,
        gt=0.0,
        le=1.0,
        description="Share of the available balance committed per leg",
    )

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    rate_limit_calls: int = Field(default=DEFAULT_RATE_LIMIT_CALLS, ge=1, le=100)
    rate_limit_interval: float = Field(default=DEFAULT_RATE_LIMIT_INTERVAL, gt=0.0)
    ticker_min_interval_ms: int = Field(
        default=DEFAULT_TICKER_MIN_INTERVAL_MS,
        ge=0,
        le=60_000,
        description="Minimum spacing between ticker fetches",
    )

    # =========================================================================
    # Execution
    # =========================================================================

    fill_timeout_s: float = Field(default=DEFAULT_FILL_TIMEOUT_S, gt=0.0, le=300.0)
    fill_poll_interval_s: float = Field(default=DEFAULT_FILL_POLL_INTERVAL_S, gt=0.0)
    retry_backoff_s: float = Field(default=DEFAULT_RETRY_BACKOFF_S, ge=0.0)
    max_retry_rounds: int = Field(default=DEFAULT_MAX_RETRY_ROUNDS, ge=1, le=1000)

    max_trades: int = Field(
        default=0,
        ge=0,
        description="Stop after this many triangles (0 = unlimited)",
    )

    # =========================================================================
    # Operation Mode
    # =========================================================================

    dry_run: bool = Field(
        default=True,
        description="Fill orders against a paper exchange instead of sending them",
    )

    paper_balances: dict[str, float] = Field(
        default_factory=lambda: {"BTC": 0.1, "ETH": 1.0, "BCH": 5.0},
        description="Starting balances for the paper exchange",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_dir: Path | None = Field(
        default=None,
        description="Directory for info.log and ledger.jsonl (console only if unset)",
    )

    alert_webhook_url: str | None = Field(
        default=None,
        description="Webhook receiving operator alerts for unresolved orders",
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("pair_ab", "pair_bc", "pair_ac", mode="after")
    @classmethod
    def validate_pair(cls, v: str) -> str:
        """Pairs must look like QUOTE_BASE."""
        parts = v.split("_")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid pair name: {v!r}")
        return v.upper()

    @model_validator(mode="after")
    def validate_triangle(self) -> "Settings":
        """Check the pairs close a cycle and live mode has credentials."""
        a, b = self.pair_ab.split("_")
        b2, c = self.pair_bc.split("_")
        a2, c2 = self.pair_ac.split("_")
        if b != b2 or a != a2 or c != c2:
            raise ValueError(
                f"Pairs {self.pair_ab}, {self.pair_bc}, {self.pair_ac} do not form a triangle"
            )

        if not self.dry_run:
            missing = [
                name
                for name in ACCOUNT_NAMES
                if not self.credentials_for(name)
            ]
            if missing:
                raise ValueError(f"Live trading requires credentials for: {', '.join(missing)}")
        return self

    # =========================================================================
    # Computed Properties
    # =========================================================================

    def credentials_for(self, account: str) -> tuple[SecretStr, SecretStr] | None:
        """Get (key, secret) for a sub-account, or None if either is unset."""
        key = getattr(self, f"{account}_api_key")
        secret = getattr(self, f"{account}_api_secret")
        if key is None or secret is None:
            return None
        if not key.get_secret_value() or not secret.get_secret_value():
            return None
        return key, secret

    @property
    def assets(self) -> tuple[str, str, str]:
        """Assets A, B and C of the triangle."""
        a, b = self.pair_ab.split("_")
        c = self.pair_bc.split("_")[1]
        return a, b, c

    @property
    def ticker_min_interval(self) -> float:
        """Ticker spacing in seconds."""
        return self.ticker_min_interval_ms / 1000.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Clear with `get_settings.cache_clear()` after changing the environment.
    """
    return Settings()
