"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/ledger.db
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Money
    decimal_places: int = 2  # Smallest currency unit
    
    # Schedule policy when no term is supplied for a fixed_fees loan
    default_installment_policy: str = "ceil_division"  # ceil_division or fixed
    installment_divisor: str = "100"  # ceil(loan_amount / divisor)
    default_installment_count: int = 12  # used by the "fixed" policy
    
    # Rates above this value are percentages (5.0 -> 0.05)
    rate_percent_threshold: str = "1"
    
    # Moratory interest
    accrue_on_payment: bool = True
    
    # Concurrency
    lock_timeout_seconds: float = 5.0
    
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
