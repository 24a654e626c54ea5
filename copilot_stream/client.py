"""
Copilot Stream Client
=====================

High-level client composing the connection manager, the SSE decoder, the
event classifier and the rate-limit tracker.

Transport messages flow one way: transport -> SSEConnectionManager ->
SSEMessage -> AgentEventClassifier -> derived state + callbacks. Control
flows the other way through connect()/disconnect()/close().

Example:
    async with CopilotStreamClient("https://agents.example.com/api/copilot",
                                   on_tool_call_start=show_tool) as client:
        await client.wait_connected(timeout=10)
        ...
"""

from typing import Any, Callable, Dict, Mapping, Optional, Union
import asyncio

from copilot_stream.config.logging import get_logger, setup_logging
from copilot_stream.config.settings import StreamSettings, get_settings
from copilot_stream.core.classifier import AgentEventClassifier
from copilot_stream.core.rate_limit import RateLimitTracker
from copilot_stream.models.schemas import AgentEvent, ClassifierSnapshot, RateLimitInfo
from copilot_stream.sse.connection_manager import SSEConnectionManager
from copilot_stream.sse.models import (
    ConnectionOptions,
    ConnectionPhase,
    ConnectionState,
    SSEMessage,
)
from copilot_stream.sse.scheduler import LoopScheduler, Scheduler
from copilot_stream.sse.transport import TransportFactory

logger = get_logger(__name__)

_TERMINAL_PHASES = (ConnectionPhase.FAILED, ConnectionPhase.CLOSED_ERROR, ConnectionPhase.IDLE)


class CopilotStreamClient:
    """
    One agent stream with classified events.

    ``on_error`` receives both connection errors (ConnectionErrorInfo) and
    backend run errors (RunError).
    """

    def __init__(
        self,
        url: Union[ConnectionOptions, str, None] = None,
        *,
        settings: Optional[StreamSettings] = None,
        headers: Optional[Mapping[str, str]] = None,
        transport_factory: Optional[TransportFactory] = None,
        scheduler: Optional[Scheduler] = None,
        configure_logging: bool = False,
        on_connect: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[Any], Any]] = None,
        on_reconnecting: Optional[Callable[[int, int], Any]] = None,
        on_reconnected: Optional[Callable[[], Any]] = None,
        on_max_retries_exceeded: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
        on_message: Optional[Callable[[SSEMessage], Any]] = None,
        on_event: Optional[Callable[[AgentEvent], Any]] = None,
        on_tool_call_start: Optional[Callable[..., Any]] = None,
        on_tool_call_end: Optional[Callable[..., Any]] = None,
        on_thinking_start: Optional[Callable[[], Any]] = None,
        on_thinking_end: Optional[Callable[[], Any]] = None,
        on_run_start: Optional[Callable[[str], Any]] = None,
        on_run_end: Optional[Callable[[Optional[str]], Any]] = None,
        on_state_snapshot: Optional[Callable[..., Any]] = None,
        on_rate_limit: Optional[Callable[[RateLimitInfo], Any]] = None,
        on_limit_exceeded: Optional[Callable[[int], Any]] = None,
        on_limit_restored: Optional[Callable[[], Any]] = None,
        **option_overrides: Any,
    ) -> None:
        self.settings = settings or get_settings()
        if configure_logging:
            setup_logging(self.settings)

        self.logger: Any = logger.bind(component="copilot_stream_client")
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._on_message = on_message
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._state_changed: Optional[asyncio.Event] = None

        self.rate_limit = RateLimitTracker(
            default_limit=self.settings.default_rate_limit,
            scheduler=self._scheduler,
            on_limit_exceeded=on_limit_exceeded,
            on_limit_restored=on_limit_restored,
        )
        self.classifier = AgentEventClassifier(
            rate_limit=self.rate_limit,
            settings=self.settings,
            on_tool_call_start=on_tool_call_start,
            on_tool_call_end=on_tool_call_end,
            on_thinking_start=on_thinking_start,
            on_thinking_end=on_thinking_end,
            on_run_start=on_run_start,
            on_run_end=on_run_end,
            on_error=on_error,
            on_state_snapshot=on_state_snapshot,
            on_rate_limit=on_rate_limit,
        )

        if headers:
            option_overrides["headers"] = dict(headers)
        self.manager = SSEConnectionManager(
            url,
            transport_factory=transport_factory,
            scheduler=self._scheduler,
            settings=self.settings,
            on_connect=on_connect,
            on_disconnect=on_disconnect,
            on_error=on_error,
            on_message=self._handle_message,
            on_reconnecting=on_reconnecting,
            on_reconnected=on_reconnected,
            on_max_retries_exceeded=on_max_retries_exceeded,
            on_response=self._handle_response,
            on_state_change=self._handle_state_change,
            **option_overrides,
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self.manager.connect()

    def disconnect(self) -> None:
        self.manager.disconnect()

    def close(self) -> None:
        """Teardown: stop the stream, cancel every timer."""
        self.manager.close()
        self.rate_limit.close()

    def reset(self) -> None:
        """Clear classified state for a new conversation; the connection is untouched."""
        self.classifier.reset()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the stream is open.

        Returns:
            True once open; False if the connection ends up failed, closed
            with an error or idle before opening
        """
        if self._state_changed is None:
            self._state_changed = asyncio.Event()
        changed = self._state_changed

        async def _wait() -> bool:
            while True:
                if self.manager.is_connected:
                    return True
                if self.manager.phase in _TERMINAL_PHASES:
                    return False
                changed.clear()
                await changed.wait()

        if timeout is None:
            return await _wait()
        return await asyncio.wait_for(_wait(), timeout)

    async def __aenter__(self) -> "CopilotStreamClient":
        self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    @property
    def is_connected(self) -> bool:
        return self.manager.is_connected

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        return self.rate_limit.info

    def snapshot(self) -> ClassifierSnapshot:
        return self.classifier.snapshot()

    # ------------------------------------------------------------------
    # Manager callbacks
    # ------------------------------------------------------------------

    def _handle_message(self, message: SSEMessage) -> None:
        event = self.classifier.process_message(message)
        self._notify("on_message", self._on_message, message)
        self._notify("on_event", self._on_event, event)

    def _handle_response(self, status: int, headers: Dict[str, str]) -> None:
        self.classifier.update_rate_limit_from_headers(headers)
        if status == 429:
            self.logger.warning(
                "Stream request rate limited", reset_seconds=self.rate_limit.info.reset_seconds
            )

    def _handle_state_change(self, state: ConnectionState) -> None:
        if self._state_changed is not None:
            self._state_changed.set()
        self._notify("on_state_change", self._on_state_change, state)

    def _notify(self, name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.warning(
                "Client callback raised", callback=name, error_type=type(e).__name__, error=str(e)
            )
