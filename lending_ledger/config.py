"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class LedgerConfig(BaseSettings):
    """Lending ledger configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///ledger.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Batch and retry configuration
    batch_chunk_size: int = 500  # Max writes per atomic storage batch
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.1
    sequence_retry_attempts: int = 3  # Re-plans after a version conflict
    lock_timeout_seconds: float = 10.0

    # Business rules configuration
    invoice_prefix: str = "INV"
    receivable_excluded_categories: List[str] = ["PRINCIPAL_RECOVERY"]
    expense_excluded_categories: List[str] = ["LOAN_REPAYMENT"]

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
