"""
SSE Connection Manager
=====================

Owns one logical Server-Sent Events stream to a configured endpoint.
Drives the connection state machine: opens and closes transports, schedules
the exponential-backoff retry and its countdown, and fires lifecycle
callbacks. Failures are reported through state and callbacks, never raised
to the caller.
"""

from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urljoin

from pydantic import ValidationError

from copilot_stream.config.logging import get_logger
from copilot_stream.config.settings import StreamSettings, get_settings

from .models import (
    ConnectionErrorCode,
    ConnectionErrorInfo,
    ConnectionOptions,
    ConnectionPhase,
    ConnectionState,
    SSEMessage,
)
from .scheduler import LoopScheduler, Scheduler, TimerHandle
from .state_machine import ConnectionSignal, Effect, EffectKind, RetryPolicy, transition
from .transport import Transport, TransportError, TransportFactory, create_transport_factory

logger = get_logger(__name__)


class ConfigurationError(Exception):
    """Exception raised when a manager is built with a missing or invalid endpoint/options."""

    pass


class SSEConnectionManager:
    """
    Manages a single SSE connection with automatic reconnection.

    Handles:
    - Connection lifecycle (connect, disconnect, teardown)
    - Exponential backoff with a bounded retry budget
    - Countdown ticks for "reconnecting in N s" displays
    - Lifecycle callbacks, isolated from the manager's own control flow

    All methods and callbacks run on the event loop thread. ``connect()``
    must be called with a running loop unless a custom scheduler and
    transport factory are injected.
    """

    def __init__(
        self,
        options: Union[ConnectionOptions, str, None] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[StreamSettings] = None,
        on_connect: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[ConnectionErrorInfo], Any]] = None,
        on_message: Optional[Callable[[SSEMessage], Any]] = None,
        on_reconnecting: Optional[Callable[[int, int], Any]] = None,
        on_reconnected: Optional[Callable[[], Any]] = None,
        on_max_retries_exceeded: Optional[Callable[[], Any]] = None,
        on_response: Optional[Callable[[int, Dict[str, str]], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
        **option_overrides: Any,
    ) -> None:
        """
        Initialize connection manager.

        Args:
            options: ConnectionOptions, an endpoint URL, or None to use
                ``settings.endpoint_url``
            transport_factory: Builds one transport per attempt (defaults to aiohttp)
            scheduler: Timer source (defaults to the asyncio loop)
            settings: Settings for defaults and URL resolution
            **option_overrides: ConnectionOptions fields overriding ``options``

        Raises:
            ConfigurationError: If the endpoint is missing or options are invalid
        """
        self.settings = settings or get_settings()
        self.options = self._resolve_options(options, option_overrides)
        self.url = self._resolve_url(self.options)
        self.policy = RetryPolicy.from_options(self.options)

        self.logger: Any = logger.bind(component="sse_connection_manager", url=self.url)

        self._transport_factory = transport_factory or create_transport_factory(self.settings)
        self._scheduler: Scheduler = scheduler or LoopScheduler()

        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_error = on_error
        self._on_message = on_message
        self._on_reconnecting = on_reconnecting
        self._on_reconnected = on_reconnected
        self._on_max_retries_exceeded = on_max_retries_exceeded
        self._on_response = on_response
        self._on_state_change = on_state_change

        self._state = ConnectionState()
        self._transport: Optional[Transport] = None
        self._transport_id = 0
        self._retry_timer: Optional[TimerHandle] = None
        self._tick_timer: Optional[TimerHandle] = None
        self._should_reconnect = True
        self._closed = False
        # Bumped by connect()/disconnect(); effects and timers from an older epoch are dropped
        self._epoch = 0

    def _resolve_options(
        self, options: Union[ConnectionOptions, str, None], overrides: Dict[str, Any]
    ) -> ConnectionOptions:
        try:
            if isinstance(options, ConnectionOptions):
                if not overrides:
                    return options
                return ConnectionOptions(**{**options.model_dump(), **overrides})
            return ConnectionOptions.from_settings(self.settings, url=options, **overrides)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid connection options: {e}") from e

    def _resolve_url(self, options: ConnectionOptions) -> str:
        if not options.is_relative:
            return options.url
        if not self.settings.base_url:
            raise ConfigurationError(
                f"Endpoint {options.url!r} is relative but no base_url is configured"
            )
        return urljoin(self.settings.base_url, options.url)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def is_reconnecting(self) -> bool:
        return self._state.is_reconnecting

    @property
    def reconnect_attempt(self) -> int:
        return self._state.attempt

    @property
    def countdown_seconds(self) -> int:
        return self._state.countdown_seconds

    @property
    def last_error(self) -> Optional[ConnectionErrorInfo]:
        return self._state.last_error

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Open the stream, tearing down any existing transport first.

        Resets the retry budget. Idempotent: calling it while connected
        replaces the current transport with a fresh one.
        """
        if self._closed:
            raise RuntimeError("Connection manager has been closed")

        self._should_reconnect = True
        self._epoch += 1
        self.logger.info("Connecting", max_retries=self.policy.max_retries)
        self._dispatch(ConnectionSignal.CONNECT)

    def disconnect(self) -> None:
        """
        Close the stream and stop all automatic retries.

        Synchronously cancels the retry and countdown timers and closes the
        transport, so no callback fires after this returns.
        """
        self._should_reconnect = False
        self._epoch += 1
        if self._state.phase == ConnectionPhase.IDLE:
            return
        self.logger.info("Disconnecting", phase=self._state.phase.value)
        self._dispatch(ConnectionSignal.DISCONNECT)
        self._dispatch(ConnectionSignal.TRANSPORT_CLOSED)

    def close(self) -> None:
        """Teardown: disconnect and refuse further connects."""
        self.disconnect()
        self._closed = True

    # ------------------------------------------------------------------
    # State machine plumbing
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        signal: ConnectionSignal,
        error: Optional[ConnectionErrorInfo] = None,
    ) -> None:
        retryable = self._should_reconnect and not self.options.disable_reconnect
        previous = self._state
        result = transition(previous, signal, self.policy, error=error, retryable=retryable)
        self._state = result.state

        epoch = self._epoch
        if result.state != previous:
            self.logger.debug(
                "Connection state changed",
                signal=signal.value,
                phase=result.state.phase.value,
                attempt=result.state.attempt,
                countdown=result.state.countdown_seconds,
            )
            self._notify("on_state_change", self._on_state_change, result.state)

        for effect in result.effects:
            if self._epoch != epoch:
                break
            self._run_effect(effect)

    def _run_effect(self, effect: Effect) -> None:
        kind = effect.kind

        if kind == EffectKind.CANCEL_TIMERS:
            self._cancel_timers()
        elif kind == EffectKind.CLOSE_TRANSPORT:
            self._close_transport()
        elif kind == EffectKind.OPEN_TRANSPORT:
            self._open_transport()
        elif kind == EffectKind.SCHEDULE_RETRY:
            self._retry_timer = self._schedule(effect.delay_ms / 1000, ConnectionSignal.RETRY_DUE)
        elif kind == EffectKind.SCHEDULE_TICK:
            self._tick_timer = self._schedule(1.0, ConnectionSignal.COUNTDOWN_TICK)
        elif kind == EffectKind.NOTIFY_CONNECT:
            self.logger.info("Connection opened")
            self._notify("on_connect", self._on_connect)
        elif kind == EffectKind.NOTIFY_RECONNECTED:
            self._notify("on_reconnected", self._on_reconnected)
        elif kind == EffectKind.NOTIFY_DISCONNECT:
            self._notify("on_disconnect", self._on_disconnect)
        elif kind == EffectKind.NOTIFY_ERROR:
            self._notify("on_error", self._on_error, effect.error)
        elif kind == EffectKind.NOTIFY_RECONNECTING:
            self.logger.warning(
                "Connection lost, reconnecting",
                attempt=effect.attempt,
                max_retries=self.policy.max_retries,
                countdown=self._state.countdown_seconds,
            )
            self._notify(
                "on_reconnecting", self._on_reconnecting, effect.attempt, self.policy.max_retries
            )
        elif kind == EffectKind.NOTIFY_MAX_RETRIES:
            self.logger.error("Maximum reconnection attempts exceeded", attempts=self._state.attempt)
            self._notify("on_max_retries_exceeded", self._on_max_retries_exceeded)

    def _schedule(self, delay: float, signal: ConnectionSignal) -> TimerHandle:
        epoch = self._epoch

        def fire() -> None:
            if self._epoch != epoch:
                return
            self._dispatch(signal)

        return self._scheduler.call_later(delay, fire)

    def _cancel_timers(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self._tick_timer is not None:
            self._tick_timer.cancel()
            self._tick_timer = None

    def _close_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        self._transport = None
        # Invalidate callbacks still bound to the old transport
        self._transport_id += 1
        transport.close()

    def _open_transport(self) -> None:
        self._transport_id += 1
        transport_id = self._transport_id

        def is_current() -> bool:
            return transport_id == self._transport_id

        def handle_open() -> None:
            if is_current():
                self._dispatch(ConnectionSignal.TRANSPORT_OPEN)

        def handle_message(message: SSEMessage) -> None:
            if is_current():
                self._notify("on_message", self._on_message, message)

        def handle_error(error: TransportError) -> None:
            if is_current():
                self._dispatch(
                    ConnectionSignal.TRANSPORT_ERROR,
                    ConnectionErrorInfo(
                        code=ConnectionErrorCode.TRANSPORT_ERROR,
                        message=error.message,
                        attempt=self._state.attempt,
                        status=error.status,
                    ),
                )

        def handle_response(status: int, headers: Dict[str, str]) -> None:
            if is_current():
                self._notify("on_response", self._on_response, status, headers)

        try:
            transport = self._transport_factory(
                self.url,
                dict(self.options.headers),
                on_open=handle_open,
                on_message=handle_message,
                on_error=handle_error,
                on_response=handle_response,
            )
            self._transport = transport
            transport.start()
        except Exception as e:
            self.logger.error("Failed to open transport", error_type=type(e).__name__, error=str(e))
            failed = self._transport
            self._transport = None
            if failed is not None:
                failed.close()
            if is_current():
                self._dispatch(
                    ConnectionSignal.TRANSPORT_ERROR,
                    ConnectionErrorInfo(
                        code=ConnectionErrorCode.CONNECT_FAILED,
                        message=str(e) or type(e).__name__,
                        attempt=self._state.attempt,
                    ),
                )

    def _notify(self, name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Invoke a user callback; its exceptions are logged, never propagated."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.warning(
                "Connection callback raised",
                callback=name,
                error_type=type(e).__name__,
                error=str(e),
            )
