"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class EduPayConfig(BaseSettings):
    """EduPay program payments configuration"""

    # Database configuration
    database_url: str = "sqlite:///edupay.db"  # Default SQLite
    database_timeout: float = 30.0  # Seconds a writer waits for another connection's lock

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Payment gateway (Paystack) configuration
    paystack_base_url: str = "https://api.paystack.co"
    paystack_secret_key: str = ""
    paystack_timeout: float = 10.0
    paystack_callback_url: str = "http://localhost:3000/api/payments/verify"
    currency_code: str = "NGN"
    payment_method: str = "paystack"

    # Administration
    admin_emails: List[str] = []  # EDUPAY_ADMIN_EMAILS='["a@x.com","b@x.com"]'

    # Email (SMTP) configuration
    smtp_host: str = ""  # Empty = email channel logs instead of sending
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "EduPay <no-reply@edupay.local>"

    # Webhook notifications
    notification_webhook_url: str = ""  # Empty = disabled
    notification_timeout: int = 10

    # Business rules configuration
    freeze_reason: str = "Missed payment deadline"
    recent_payments_limit: int = 20
    sweep_batch_size: int = 0  # Max ledgers per sweep run, 0 = no limit

    # Feature flags
    enable_notifications: bool = True

    class Config:
        env_prefix = "EDUPAY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EduPayConfig()


def get_config() -> EduPayConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EduPayConfig:
    """Reload configuration from environment"""
    global config
    config = EduPayConfig()
    return config
