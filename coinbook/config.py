"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CoinbookConfig(BaseSettings):
    """Coinbook engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///coinbook.db"  # memory://, sqlite:///path or postgresql://...

    # Default coin, seeded with internal key 1
    default_coin_name: str = "Universal Coin"
    default_coin_symbol: str = "μ"

    # Search pagination
    page_size: int = 10

    # Level required for an action with no permission row (0 = Owner)
    default_permission_level: int = 0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "COINBOOK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CoinbookConfig()


def get_config() -> CoinbookConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CoinbookConfig:
    """Reload configuration from environment"""
    global config
    config = CoinbookConfig()
    return config
