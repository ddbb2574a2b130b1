"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


# Static FX factors of the correspondent network (source/target -> factor)
DEFAULT_FX_RATES: Dict[str, str] = {
    "USD/AUD": "1.34",
    "AUD/USD": "0.74",
    "USD/EUR": "0.90",
    "EUR/USD": "1.10",
    "AUD/EUR": "0.67",
    "EUR/AUD": "1.48",
}


class SettlementConfig(BaseSettings):
    """Nostro/vostro settlement service configuration"""

    # Store configuration
    store_backend: str = "memory"  # memory or sqlite
    database_path: str = "nostrovostro.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    auditor_id: str = "AUDITOR"  # Sees every journal entry
    fx_rates: Dict[str, str] = DEFAULT_FX_RATES
    amount_precision: int = 2  # Max decimal places of an instruction amount

    # Concurrency configuration
    settlement_max_retries: int = 3
    settlement_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 2.0

    # Bootstrap configuration
    seed_on_startup: bool = True

    class Config:
        env_prefix = "NOSTROVOSTRO_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = SettlementConfig()


def get_config() -> SettlementConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SettlementConfig:
    """Reload configuration from environment"""
    global config
    config = SettlementConfig()
    return config
