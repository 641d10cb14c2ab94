"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Retail ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///retail_ledger.db"  # memory:// for in-memory
    storage_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 1
    password_min_length: int = 6

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    currency: str = "INR"
    savings_minimum_balance: str = "500.00"
    default_low_balance_threshold: str = "1000.00"
    low_balance_alert_cooldown_hours: int = 24

    # Lockout configuration
    login_max_attempts: int = 3
    login_lockout_minutes: int = 15
    login_otp_expiry_minutes: int = 10
    pin_max_attempts: int = 3
    pin_lockout_minutes: int = 15
    password_reset_otp_expiry_minutes: int = 10

    # Outbound email (empty = log only)
    webhook_email_url: str = ""
    webhook_timeout_seconds: float = 5.0

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def savings_floor(self) -> Decimal:
        return Decimal(self.savings_minimum_balance)

    @property
    def low_balance_cooldown(self) -> timedelta:
        return timedelta(hours=self.low_balance_alert_cooldown_hours)


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config(overrides: Optional[dict] = None) -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig(**(overrides or {}))
    return config
