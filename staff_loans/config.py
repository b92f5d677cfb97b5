"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class StaffLoansConfig(BaseSettings):
    """Staff loans engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///staff_loans.db"  # "memory://" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency_minor_units: int = 2  # Decimal places of the currency minor unit
    max_emi_to_take_home_ratio: str = "0.5"  # EMI cap as a share of take-home salary
    take_home_estimate_ratio: str = "0.7"  # Take-home estimate when payroll gives none

    # Repayment configuration
    repayment_max_retries: int = 3  # Retries after losing a loan version race
    batch_max_workers: int = 4  # Parallel employees per payroll cycle batch

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = log-only notifications
    notification_timeout: float = 5.0
    notifications_async: bool = True  # Dispatch on a background thread pool

    # Feature flags
    enable_audit_logging: bool = True
    enable_notifications: bool = True

    class Config:
        env_prefix = "STAFF_LOANS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = StaffLoansConfig()


def get_config() -> StaffLoansConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> StaffLoansConfig:
    """Reload configuration from environment"""
    global config
    config = StaffLoansConfig()
    return config
