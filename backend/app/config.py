"""Configuration settings for the gigsettle backend."""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings

from gigsettle.commerce.config import (
    DEFAULT_CHAIN_ID,
    DEPOSIT_WINDOW_DAYS,
    GRACE_PERIOD_HOURS,
    MINIMUM_WITHDRAWAL,
    WITHDRAWAL_FEE_RATE,
    CommerceConfig,
)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    database_path: str = "gigsettle.db"

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week

    # Scheduler endpoints authenticate with this key in the x-api-key header
    cron_api_key: str | None = None
    # Users allowed to process withdrawals
    admin_user_ids: list[str] = []

    # Settlement
    grace_period_hours: int = GRACE_PERIOD_HOURS
    deposit_window_days: int = DEPOSIT_WINDOW_DAYS
    withdrawal_fee_rate: Decimal = WITHDRAWAL_FEE_RATE
    minimum_withdrawal: Decimal = MINIMUM_WITHDRAWAL
    chain_id: int = DEFAULT_CHAIN_ID
    escrow_contract_address: str | None = None
    notification_webhook_url: str | None = None

    # App
    debug: bool = False
    rate_limit_enabled: bool = True
    # Only these sources may set X-Forwarded-For
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def commerce_config(self) -> CommerceConfig:
        """Engine configuration derived from these settings."""
        return CommerceConfig(
            grace_period_hours=self.grace_period_hours,
            deposit_window_days=self.deposit_window_days,
            withdrawal_fee_rate=self.withdrawal_fee_rate,
            minimum_withdrawal=self.minimum_withdrawal,
            chain_id=self.chain_id,
            escrow_contract_address=self.escrow_contract_address,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
