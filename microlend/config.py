"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrolendConfig(BaseSettings):
    """Microlend settlement service configuration"""

    # Storage configuration
    database_path: str = "microlend.db"
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    debug: bool = False  # Exposes exception details in 500 responses

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Card processor (Stripe) configuration
    stripe_secret_key: str = ""  # Empty = rail disabled
    stripe_base_url: str = "https://api.stripe.com"

    # Payout network (PayPal) configuration
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_environment: str = "sandbox"  # sandbox or live
    paypal_auto_payout_repayments: bool = True

    rail_timeout: float = 10.0
    frontend_url: str = "http://localhost:3000"

    # Email configuration
    smtp_host: str = ""  # Empty = log emails instead of sending
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "no-reply@microlend.local"

    # Overdue sweep configuration
    sweep_enabled: bool = False
    sweep_hour_utc: int = 0
    reminder_policy: str = "repeat"  # repeat or once_per_tier

    # Settlement policy
    manual_funding_at_initiation: bool = True
    require_verified_accounts: bool = False  # account verification happens outside this service
    overpayment_tolerance: str = "1.00"
    manual_confirmation_retries: int = 3

    # Fee defaults when a loan has no lender term
    default_fee_per_10_short: str = "1.0"
    default_fee_per_10_long: str = "2.0"

    class Config:
        env_prefix = "MICROLEND_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrolendConfig()


def get_config() -> MicrolendConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrolendConfig:
    """Reload configuration from environment"""
    global config
    config = MicrolendConfig()
    return config
