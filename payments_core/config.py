"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentsConfig(BaseSettings):
    """Money-movement core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="PAYMENTS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_type: str = "memory"  # memory or postgresql
    database_url: Optional[str] = None
    database_pool_size: int = 10

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    default_currency: str = "USD"
    min_transaction_amount: Decimal = Decimal("0.01")
    max_transaction_amount: Decimal = Decimal("100000.00")
    max_daily_transaction_limit: Decimal = Decimal("100000.00")
    max_monthly_transaction_limit: Decimal = Decimal("3000000.00")

    # External transfer fees, by transfer speed
    external_fee_standard: Decimal = Decimal("2.50")
    external_fee_express: Decimal = Decimal("5.00")
    external_fee_instant: Decimal = Decimal("10.00")

    # Step-up verification
    verification_code_length: int = 6
    verification_code_ttl_minutes: int = 10
    verification_max_attempts: int = 3

    # Recurring transaction scheduler
    scheduler_poll_interval_seconds: float = 60.0
    scheduler_max_concurrency: int = 10
    scheduler_apply_retry_backoff: bool = True

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance, read by entry points only
config = PaymentsConfig()


def get_config() -> PaymentsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PaymentsConfig:
    """Reload configuration from environment"""
    global config
    config = PaymentsConfig()
    return config
