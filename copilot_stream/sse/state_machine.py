"""
Connection State Machine
========================

Pure transition function for the SSE connection lifecycle.

``transition(state, signal, policy)`` maps the current ConnectionState and an
incoming signal to the next state plus an ordered list of effects. It never
touches timers, transports or callbacks itself; SSEConnectionManager executes
the effects. Effects that schedule timers come before notifications so a
callback that calls disconnect() can still cancel them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional
import math

from copilot_stream.core.backoff import compute_backoff_delay
from .models import ConnectionErrorCode, ConnectionErrorInfo, ConnectionPhase, ConnectionState


class ConnectionSignal(str, Enum):
    """Inputs to the state machine."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    TRANSPORT_CLOSED = "transport_closed"
    TRANSPORT_OPEN = "transport_open"
    TRANSPORT_ERROR = "transport_error"
    RETRY_DUE = "retry_due"
    COUNTDOWN_TICK = "countdown_tick"


class EffectKind(str, Enum):
    """Side effects requested by a transition."""

    CANCEL_TIMERS = "cancel_timers"
    CLOSE_TRANSPORT = "close_transport"
    OPEN_TRANSPORT = "open_transport"
    SCHEDULE_RETRY = "schedule_retry"
    SCHEDULE_TICK = "schedule_tick"
    NOTIFY_CONNECT = "notify_connect"
    NOTIFY_RECONNECTED = "notify_reconnected"
    NOTIFY_DISCONNECT = "notify_disconnect"
    NOTIFY_ERROR = "notify_error"
    NOTIFY_RECONNECTING = "notify_reconnecting"
    NOTIFY_MAX_RETRIES = "notify_max_retries"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    delay_ms: int = 0
    attempt: int = 0
    error: Optional[ConnectionErrorInfo] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters the transition function needs."""

    max_retries: int = 5
    initial_retry_delay: float = 1000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_options(cls, options: Any) -> "RetryPolicy":
        return cls(
            max_retries=options.max_retries,
            initial_retry_delay=options.initial_retry_delay,
            backoff_multiplier=options.backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> int:
        """Delay in ms before the retry that follows ``attempt`` previous retries."""
        return compute_backoff_delay(self.initial_retry_delay, self.backoff_multiplier, attempt)


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    effects: List[Effect] = field(default_factory=list)

    @property
    def kinds(self) -> List[EffectKind]:
        return [effect.kind for effect in self.effects]


# Phases in which a transport exists and its failure is meaningful
_TRANSPORT_PHASES = (ConnectionPhase.CONNECTING, ConnectionPhase.OPEN)


def transition(
    state: ConnectionState,
    signal: ConnectionSignal,
    policy: RetryPolicy,
    error: Optional[ConnectionErrorInfo] = None,
    retryable: bool = True,
) -> Transition:
    """
    Compute the next connection state.

    Args:
        state: Current state
        signal: Incoming signal
        policy: Retry policy
        error: Error descriptor for TRANSPORT_ERROR
        retryable: False when auto-reconnect is off (disable_reconnect or a
            caller-initiated close) so the failure is terminal

    Returns:
        Transition with the new state and the effects to run, in order.
        Signals that do not apply to the current phase return the state
        unchanged with no effects.
    """
    if signal == ConnectionSignal.CONNECT:
        return Transition(
            ConnectionState(phase=ConnectionPhase.CONNECTING, attempt=0),
            [
                Effect(EffectKind.CANCEL_TIMERS),
                Effect(EffectKind.CLOSE_TRANSPORT),
                Effect(EffectKind.OPEN_TRANSPORT),
            ],
        )

    if signal == ConnectionSignal.DISCONNECT:
        return Transition(
            ConnectionState(phase=ConnectionPhase.CLOSING, attempt=0),
            [Effect(EffectKind.CANCEL_TIMERS), Effect(EffectKind.CLOSE_TRANSPORT)],
        )

    if signal == ConnectionSignal.TRANSPORT_CLOSED:
        if state.phase != ConnectionPhase.CLOSING:
            return Transition(state)
        return Transition(ConnectionState(phase=ConnectionPhase.IDLE, attempt=0))

    if signal == ConnectionSignal.TRANSPORT_OPEN:
        if state.phase != ConnectionPhase.CONNECTING:
            return Transition(state)
        effects = [Effect(EffectKind.CANCEL_TIMERS), Effect(EffectKind.NOTIFY_CONNECT)]
        if state.attempt > 0:
            effects.append(Effect(EffectKind.NOTIFY_RECONNECTED))
        return Transition(ConnectionState(phase=ConnectionPhase.OPEN, attempt=0), effects)

    if signal == ConnectionSignal.TRANSPORT_ERROR:
        if state.phase not in _TRANSPORT_PHASES:
            return Transition(state)
        return _on_transport_error(state, policy, error, retryable)

    if signal == ConnectionSignal.RETRY_DUE:
        if state.phase != ConnectionPhase.RECONNECTING:
            return Transition(state)
        return Transition(
            state.model_copy(update={"phase": ConnectionPhase.CONNECTING, "countdown_seconds": 0}),
            [
                Effect(EffectKind.CANCEL_TIMERS),
                Effect(EffectKind.CLOSE_TRANSPORT),
                Effect(EffectKind.OPEN_TRANSPORT),
            ],
        )

    if signal == ConnectionSignal.COUNTDOWN_TICK:
        if state.phase != ConnectionPhase.RECONNECTING or state.countdown_seconds <= 0:
            return Transition(state)
        remaining = state.countdown_seconds - 1
        effects = [Effect(EffectKind.SCHEDULE_TICK)] if remaining > 0 else []
        return Transition(state.model_copy(update={"countdown_seconds": remaining}), effects)

    raise ValueError(f"Unknown connection signal: {signal!r}")


def _on_transport_error(
    state: ConnectionState,
    policy: RetryPolicy,
    error: Optional[ConnectionErrorInfo],
    retryable: bool,
) -> Transition:
    if error is None:
        error = ConnectionErrorInfo(
            code=ConnectionErrorCode.TRANSPORT_ERROR,
            message="Transport reported an error",
            attempt=state.attempt,
        )
    error = error.model_copy(update={"attempt": state.attempt, "recoverable": retryable})

    closed = ConnectionState(
        phase=ConnectionPhase.CLOSED_ERROR, attempt=state.attempt, last_error=error
    )
    notify = [
        Effect(EffectKind.NOTIFY_DISCONNECT),
        Effect(EffectKind.NOTIFY_ERROR, error=error),
    ]

    if not retryable:
        return Transition(closed, [Effect(EffectKind.CLOSE_TRANSPORT)] + notify)

    if state.attempt >= policy.max_retries:
        terminal = ConnectionErrorInfo(
            code=ConnectionErrorCode.MAX_RETRIES_EXCEEDED,
            message=f"Could not reconnect after {policy.max_retries} attempts",
            attempt=state.attempt,
            recoverable=False,
            status=error.status,
        )
        return Transition(
            ConnectionState(phase=ConnectionPhase.FAILED, attempt=state.attempt, last_error=terminal),
            [Effect(EffectKind.CLOSE_TRANSPORT)]
            + notify
            + [
                Effect(EffectKind.NOTIFY_ERROR, error=terminal),
                Effect(EffectKind.NOTIFY_MAX_RETRIES),
            ],
        )

    delay_ms = policy.delay_for(state.attempt)
    next_attempt = state.attempt + 1
    reconnecting = ConnectionState(
        phase=ConnectionPhase.RECONNECTING,
        attempt=next_attempt,
        countdown_seconds=math.ceil(delay_ms / 1000),
        last_error=error,
    )
    return Transition(
        reconnecting,
        [
            Effect(EffectKind.CLOSE_TRANSPORT),
            Effect(EffectKind.SCHEDULE_RETRY, delay_ms=delay_ms),
            Effect(EffectKind.SCHEDULE_TICK),
        ]
        + notify
        + [Effect(EffectKind.NOTIFY_RECONNECTING, attempt=next_attempt)],
    )
