"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process
    - Invalid settings surface as ConfigurationError before the first pass runs
    - Amount settings are Decimal, never float

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings; signing_credential has none
"""

import os
import socket
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fee_distributor.core.errors import ConfigurationError


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = (
        "postgresql+asyncpg://distributor:distributor@db:5432/distributor"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosting platforms provide postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = Field(default=5, ge=1)
    database_max_overflow: int = Field(default=5, ge=0)

    # Transfer network
    network_endpoint: str = "http://localhost:8899"
    network_timeout_seconds: float = Field(default=10.0, gt=0)
    signing_credential: str = ""

    # Payout policy
    batch_size: int = Field(default=10, ge=1, le=64)
    fee_rate: Decimal = Field(default=Decimal("0.002"), gt=0, le=1)
    fee_adjustment: Decimal = Field(default=Decimal("0.99"), gt=0, le=1)
    min_payable: Decimal = Field(default=Decimal("0.001"), gt=0)
    amount_decimals: int = Field(default=9, ge=0, le=18)

    # Retry / timing
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    confirm_timeout_seconds: float = Field(default=60.0, gt=0)
    pass_period_seconds: float = Field(default=30.0, gt=0)

    # Single-flight across instances
    worker_id: str = Field(default_factory=_default_worker_id)
    lease_name: str = "fee-distribution"
    lease_ttl_seconds: float = Field(default=120.0, gt=0)
    scheduler_enabled: bool = True

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("network_endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("network_endpoint must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("log_format")
    @classmethod
    def known_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v


def load_settings(**overrides) -> Settings:
    """Build Settings, mapping pydantic validation failures to ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        first = e.errors()[0]
        setting = ".".join(str(loc) for loc in first["loc"]) or "settings"
        raise ConfigurationError(
            f"Invalid setting '{setting}': {first['msg']}", setting,
        ) from e


@lru_cache
def get_settings() -> Settings:
    return load_settings()
