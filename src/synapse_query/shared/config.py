"""
Shared Configuration - Engine Settings and Environment Management
Centralized configuration management for Synapse Query.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Queue and pending-operation defaults
- Logging and metrics switches
"""
from typing import Any
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Runtime environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log renderer selection."""
    JSON = "json"
    CONSOLE = "console"


class EngineSettings(BaseSettings):
    """Main engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="SYNAPSE_QUERY_",
        env_file=".env",
        extra="ignore",
    )

    environment: Environment = Field(Environment.DEVELOPMENT)

    # Queue controller defaults
    default_concurrency: int = Field(3, description="Permits per queue controller")

    # Pending-operation slots are force-cleared after this many seconds
    pending_timeout_seconds: float = Field(30.0)

    # Observability
    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: LogFormat = Field(LogFormat.CONSOLE)
    metrics_enabled: bool = Field(True)

    @field_validator("default_concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        if v < 1:
            raise ValueError("Concurrency must be at least 1")
        return v

    @field_validator("pending_timeout_seconds")
    @classmethod
    def validate_pending_timeout(cls, v):
        if v <= 0:
            raise ValueError("Pending timeout must be positive")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING


# Global settings instance
settings = EngineSettings()


def get_settings() -> EngineSettings:
    """
    Get engine settings.

    Returns the module-level instance so every controller sees the same values.
    """
    return settings


def reload_settings(**overrides: Any) -> EngineSettings:
    """Rebuild the global settings, applying explicit overrides on top of the environment."""
    global settings
    settings = EngineSettings(**overrides)
    return settings
