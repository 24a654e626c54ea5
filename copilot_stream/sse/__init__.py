"""
Server-Sent Events (SSE) Infrastructure
======================================

Client side of the SSE channel to the agent backend.

Components:
- Connection Manager: Owns the stream, retries with exponential backoff
- State Machine: Pure transition function behind the connection manager
- Transport: aiohttp streaming request, one per connection attempt
- Events: SSE wire decoding and event classification
- Scheduler: Cancellable timers on the event loop or a virtual clock
- Models: Pydantic models for connection state and raw messages
"""

from .connection_manager import ConfigurationError, SSEConnectionManager
from .events import SSEDecoder, classify_message, format_sse_event
from .models import (
    ConnectionErrorCode,
    ConnectionErrorInfo,
    ConnectionOptions,
    ConnectionPhase,
    ConnectionState,
    SSEMessage,
)
from .scheduler import LoopScheduler, VirtualScheduler
from .transport import AiohttpSSETransport, TransportError, create_transport_factory

__all__ = [
    "SSEConnectionManager",
    "ConfigurationError",
    "SSEDecoder",
    "classify_message",
    "format_sse_event",
    "ConnectionErrorCode",
    "ConnectionErrorInfo",
    "ConnectionOptions",
    "ConnectionPhase",
    "ConnectionState",
    "SSEMessage",
    "LoopScheduler",
    "VirtualScheduler",
    "AiohttpSSETransport",
    "TransportError",
    "create_transport_factory",
]
