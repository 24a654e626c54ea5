"""
SSE Models
==========

Pydantic models for the client side of the Server-Sent Events channel.
Defines connection phases and state, error descriptors, per-connection
options and raw SSE messages.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import json

from pydantic import BaseModel, Field, field_validator, ConfigDict

from copilot_stream.config.settings import StreamSettings


class ConnectionPhase(str, Enum):
    """Lifecycle phase of the managed SSE connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED_ERROR = "closed-error"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionErrorCode(str, Enum):
    """Error codes carried by ConnectionErrorInfo."""

    TRANSPORT_ERROR = "transport_error"
    CONNECT_FAILED = "connect_failed"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


class ConnectionErrorInfo(BaseModel):
    """Error descriptor handed to on_error and kept as ConnectionState.last_error."""

    code: ConnectionErrorCode = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    attempt: int = Field(default=0, description="Reconnection attempt when the error happened")
    recoverable: bool = Field(True, description="Whether the manager will retry")
    status: Optional[int] = Field(None, description="HTTP status if the server answered")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp"
    )

    model_config = ConfigDict(frozen=True)


class ConnectionState(BaseModel):
    """Connection state owned by the connection manager; replaced on every transition."""

    phase: ConnectionPhase = Field(default=ConnectionPhase.IDLE, description="Lifecycle phase")
    attempt: int = Field(default=0, ge=0, description="Reconnection attempts since last open")
    countdown_seconds: int = Field(default=0, ge=0, description="Seconds until the next retry")
    last_error: Optional[ConnectionErrorInfo] = Field(None, description="Most recent error")

    model_config = ConfigDict(frozen=True)

    @property
    def is_connected(self) -> bool:
        return self.phase == ConnectionPhase.OPEN

    @property
    def is_reconnecting(self) -> bool:
        """True while waiting for a retry or while a retry attempt is opening."""
        if self.phase == ConnectionPhase.RECONNECTING:
            return True
        return self.phase == ConnectionPhase.CONNECTING and self.attempt > 0

    @property
    def is_failed(self) -> bool:
        return self.phase == ConnectionPhase.FAILED


class ConnectionOptions(BaseModel):
    """Per-manager configuration: one endpoint, one retry policy, fixed headers."""

    url: str = Field(..., description="SSE endpoint URL")
    max_retries: int = Field(default=5, description="Maximum reconnection attempts")
    initial_retry_delay: float = Field(
        default=1000, description="Delay before the first retry in milliseconds"
    )
    backoff_multiplier: float = Field(default=2.0, description="Retry delay growth factor")
    disable_reconnect: bool = Field(
        default=False, description="Treat every transport failure as terminal"
    )
    headers: Dict[str, str] = Field(
        default_factory=dict, description="Pre-resolved auth and context headers"
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an absolute http(s) URL or a root-relative path."""
        v = v.strip()
        if not v:
            raise ValueError("Endpoint URL cannot be empty")
        if not v.startswith(("http://", "https://", "/")):
            raise ValueError(f"Endpoint URL must be http(s) or start with '/': {v!r}")
        return v

    @property
    def is_relative(self) -> bool:
        return self.url.startswith("/")

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("initial_retry_delay")
    @classmethod
    def validate_initial_retry_delay(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("initial_retry_delay must be > 0")
        return v

    @field_validator("backoff_multiplier")
    @classmethod
    def validate_backoff_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        return v

    @classmethod
    def from_settings(
        cls, settings: StreamSettings, url: Optional[str] = None, **overrides: Any
    ) -> "ConnectionOptions":
        """Build options from settings; explicit keyword overrides win."""
        values: Dict[str, Any] = {
            "url": url if url is not None else (settings.endpoint_url or ""),
            "max_retries": settings.max_retries,
            "initial_retry_delay": settings.initial_retry_delay_ms,
            "backoff_multiplier": settings.backoff_multiplier,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class SSEMessage(BaseModel):
    """One dispatched Server-Sent Events message."""

    event: str = Field(default="message", description="Event name (defaults to 'message')")
    data: str = Field(default="", description="Concatenated data lines")
    id: Optional[str] = Field(None, description="Last event ID")
    retry: Optional[int] = Field(None, description="Server-suggested reconnection time in ms")

    model_config = ConfigDict(frozen=True)

    def parsed_data(self) -> Any:
        """Decode ``data`` as JSON, returning the raw string when it is not JSON."""
        try:
            return json.loads(self.data)
        except (json.JSONDecodeError, ValueError):
            return self.data
