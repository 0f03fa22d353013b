"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class BankingConfig(BaseSettings):
    """Personal banking service configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="BANKING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )
    
    # Database configuration
    database_url: str = "sqlite:///banking.db"  # memory://, sqlite:///path or postgresql://...
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Identity configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True  # When False the X-Identity-Id header is trusted
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    currency_code: str = "INR"
    min_initial_deposit: str = "500.00"
    max_amount: str = "999999999999.99"  # Upper bound for any single amount
    max_interest_rate: str = "100"  # Annual percent
    max_term_months: int = 600  # Loan terms and fixed-deposit tenures
    identifier_retry_attempts: int = 5
    default_transaction_limit: int = 10
    
    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = BankingConfig()


def get_config() -> BankingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankingConfig:
    """Reload configuration from environment"""
    global config
    config = BankingConfig()
    return config
