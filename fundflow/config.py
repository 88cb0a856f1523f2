"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FundflowConfig(BaseSettings):
    """Fundflow transfer core configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/file.db
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Transfer execution
    max_transfer_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    retry_backoff_multiplier: float = 2.0
    lock_timeout_seconds: float = 5.0
    
    # Audit trail
    enable_audit_logging: bool = True
    audit_queue_size: int = 10000
    audit_shutdown_timeout_seconds: float = 5.0
    
    # Orphaned pending transfers older than this are reconciled
    reconciliation_grace_seconds: int = 300
    
    # History queries
    history_default_limit: int = 50
    history_max_limit: int = 500
    
    class Config:
        env_prefix = "FUNDFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FundflowConfig()


def get_config() -> FundflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FundflowConfig:
    """Reload configuration from environment"""
    global config
    config = FundflowConfig()
    return config
