"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup; a setting out of range makes the app fail fast with a
clear error message.

Usage:
    from talent_escrow.config import get_settings
    settings = get_settings()
    print(settings.platform_fee_rate_percent)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the talent escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://talent_escrow:talent_escrow_dev"
        "@localhost:5432/talent_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis (shared rate-limit counters) ---
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_requests: int = Field(default=60, gt=0)
    rate_limit_window_seconds: int = Field(default=60, gt=0)

    # --- Offers ---
    platform_fee_rate_percent: Decimal = Field(default=Decimal("15"), ge=0, le=100)
    offer_expiration_hours: int = Field(default=48, gt=0)
    max_counter_depth: int = Field(default=5, ge=0)
    decline_competing_offers_on_accept: bool = True
    default_currency: str = "USD"

    # --- Expiration sweep ---
    expiration_sweep_interval_seconds: int = Field(default=60, gt=0)
    expiration_sweep_batch_size: int = Field(default=500, gt=0)

    # --- Payment provider ---
    payment_provider_mode: Literal["simulated", "http"] = "simulated"
    payment_provider_base_url: str = "https://api.payments.example.com/v1"
    payment_provider_api_key: str = ""
    payment_webhook_secret: str = "whsec_development_only"
    webhook_signature_tolerance_seconds: int = 300
    provider_retry_max: int = Field(default=3, ge=1)
    provider_timeout_ms: int = Field(default=10_000, gt=0)
    provider_backoff_initial_seconds: float = 0.5
    provider_backoff_max_seconds: float = 8.0
    operator_alert_recipients: list[str] = Field(default_factory=lambda: ["operations"])

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def offer_expiration_seconds(self) -> int:
        return self.offer_expiration_hours * 3600

    @property
    def provider_timeout_seconds(self) -> float:
        return self.provider_timeout_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
