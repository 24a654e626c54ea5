"""
Client Settings
===============

Streaming client settings and environment configuration using Pydantic Settings.
Supports development, testing, and production environments.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StreamSettings(BaseSettings):
    """Streaming client settings with environment variable support."""

    # Application Configuration
    app_name: str = Field(default="Copilot Stream Client", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(
        default="development", description="Environment: development, testing, production"
    )
    log_level: str = Field(default="INFO", description="Logging level")

    # Endpoint Configuration
    base_url: Optional[str] = Field(
        default=None, description="Origin that root-relative endpoint paths are resolved against"
    )
    endpoint_url: Optional[str] = Field(
        default=None, description="Default SSE endpoint URL for new connections"
    )
    connect_timeout_seconds: float = Field(
        default=10.0, description="Timeout for establishing the HTTP stream"
    )
    read_timeout_seconds: Optional[float] = Field(
        default=None, description="Idle read timeout on the stream (None disables it)"
    )

    # Reconnection Configuration
    max_retries: int = Field(default=5, description="Maximum reconnection attempts")
    initial_retry_delay_ms: int = Field(
        default=1000, description="Delay before the first reconnection attempt in milliseconds"
    )
    backoff_multiplier: float = Field(
        default=2.0, description="Growth factor applied to the retry delay per attempt"
    )

    # Retry Utility Configuration
    utility_max_attempts: int = Field(default=3, description="Attempts for retry_with_backoff")
    utility_backoff_multiplier: float = Field(
        default=1.5, description="Backoff multiplier for retry_with_backoff"
    )
    utility_max_delay_ms: int = Field(
        default=8000, description="Delay ceiling for retry_with_backoff in milliseconds"
    )

    # Event Classification Configuration
    tool_call_history_limit: int = Field(
        default=50, description="Completed tool calls kept in history"
    )

    # Rate Limit Configuration
    default_rate_limit: int = Field(
        default=30, description="Requests per minute assumed until the backend reports one"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "testing", "production"}
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("max_retries", "utility_max_attempts")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Retry counts cannot be negative."""
        if v < 0:
            raise ValueError("Retry counts must be >= 0")
        return v

    @field_validator("backoff_multiplier", "utility_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Backoff must never shrink the delay."""
        if v < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        return v

    @field_validator("tool_call_history_limit", "default_rate_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, env_prefix="COPILOT_STREAM_"
    )


# Global settings instance - will be initialized when needed
settings = None


def get_settings() -> StreamSettings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = StreamSettings()
    return settings


def reload_settings() -> StreamSettings:
    """Reload settings from environment."""
    global settings
    settings = StreamSettings()
    return settings
