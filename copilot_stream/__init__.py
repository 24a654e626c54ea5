"""
Copilot Stream
==============

Resilient Server-Sent Events client for a conversational-agent backend.

This package provides:
- Connection management with exponential-backoff reconnection
- SSE decoding and classification into typed agent events
- Derived state for tool calls, runs, errors and state snapshots
- Rate-limit tracking from response headers and inline events
"""

from .client import CopilotStreamClient

__version__ = "1.0.0"

__all__ = ["CopilotStreamClient", "__version__"]
