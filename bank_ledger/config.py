"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from decimal import Decimal
from typing import Dict


class LedgerConfig(BaseSettings):
    """Bank ledger configuration"""

    # Database configuration: memory://, sqlite:// or sqlite:///path.db
    database_url: str = "sqlite:///bank_ledger.db"

    # Currency configuration
    default_currency: str = "EUR"
    exchange_rates: Dict[str, Decimal] = {}  # {"USD/EUR": 0.92}; reverse rates are derived

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

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
