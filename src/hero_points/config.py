"""
Application configuration using Pydantic Settings.
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables prefixed with ``HP_``."""

    # Logging
    LOG_LEVEL: str = "INFO"
    AUDIT_LOG_PATH: str = "logs/hp_audit.log"

    # Storage; the in-memory store is used when no URI is configured
    MONGO_URI: str = ""
    MONGO_DB: str = "hero_points"

    # User auth (bearer JWT issued by the identity provider)
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = ""

    # Scheduled job auth
    CRON_SECRET: str = ""

    # Economics
    CHARITY_SHARE: Decimal = Decimal("0.5")
    PLATFORM_FEE_RATE: Decimal = Decimal("0.15")
    DEFAULT_AD_ECPM_CENTS: int = 50
    AD_REWARD_HP: int = 5
    REFRESH_COST_HP: int = 10

    # Rate-limit policy
    REWARDED_VIDEO_MAX: int = 5
    REWARDED_VIDEO_WINDOW_SECONDS: int = 3600
    REFRESH_QUOTE_MAX: int = 10
    REFRESH_QUOTE_WINDOW_SECONDS: int = 60

    # Store / processor credentials
    IAP_APPLE_SHARED_SECRET: str = ""
    IAP_GOOGLE_SERVICE_ACCOUNT: str = ""
    STRIPE_SECRET: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_prefix="HP_", env_file=".env", case_sensitive=True, extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
