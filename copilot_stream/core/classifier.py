"""
Agent Event Classifier
======================

Turns the inbound AgentEvent stream into derived state (active tool calls,
tool call history, run context, last error, last state snapshot, rate limit)
and typed callbacks. Events are applied strictly in arrival order. A
malformed or unknown event is counted and logged, never raised.
"""

from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import uuid

from pydantic import ValidationError

from copilot_stream.config.logging import get_logger, is_development_logging
from copilot_stream.config.settings import StreamSettings, get_settings
from copilot_stream.models.schemas import (
    AgentEvent,
    AgentEventType,
    ClassifierSnapshot,
    RateLimitInfo,
    RateLimitPayload,
    RunContext,
    RunError,
    RunErrorPayload,
    RunFinishedPayload,
    RunStartedPayload,
    StateSnapshot,
    StateSnapshotPayload,
    ToolCallEndPayload,
    ToolCallRecord,
    ToolCallStartPayload,
    ToolCallStatus,
)
from copilot_stream.sse.events import classify_message, coerce_event
from copilot_stream.sse.models import SSEMessage
from copilot_stream.sse.scheduler import Scheduler
from .rate_limit import RateLimitTracker

logger = get_logger(__name__)

THINKING_MESSAGE = "Analyzing your request..."

TOOL_CALL_MESSAGES: Dict[str, str] = {
    "search_docs": "Searching documentation...",
    "search_database": "Searching the database...",
    "analyze_data": "Analyzing data...",
    "generate_code": "Generating code...",
    "execute_query": "Running query...",
}

# Recognised but carry no derived state
_PASSIVE_TYPES = frozenset(
    {
        AgentEventType.TEXT_MESSAGE_START,
        AgentEventType.TEXT_MESSAGE_CONTENT,
        AgentEventType.TEXT_MESSAGE_END,
        AgentEventType.STEP_STARTED,
        AgentEventType.STEP_FINISHED,
    }
)


def tool_call_message(tool_name: Optional[str]) -> str:
    """Friendly progress label for a tool name."""
    if not tool_name:
        return ""
    return TOOL_CALL_MESSAGES.get(tool_name, f"Running {tool_name}...")


class AgentEventClassifier:
    """
    Applies AgentEvents to derived state and dispatches typed callbacks.

    The classifier is the only writer of its state; readers get immutable
    records through properties or ``snapshot()``.
    """

    def __init__(
        self,
        *,
        history_limit: Optional[int] = None,
        rate_limit: Optional[RateLimitTracker] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[StreamSettings] = None,
        id_factory: Optional[Callable[[], str]] = None,
        on_tool_call_start: Optional[Callable[[ToolCallRecord], Any]] = None,
        on_tool_call_end: Optional[Callable[[ToolCallRecord], Any]] = None,
        on_thinking_start: Optional[Callable[[], Any]] = None,
        on_thinking_end: Optional[Callable[[], Any]] = None,
        on_run_start: Optional[Callable[[str], Any]] = None,
        on_run_end: Optional[Callable[[Optional[str]], Any]] = None,
        on_error: Optional[Callable[[RunError], Any]] = None,
        on_state_snapshot: Optional[Callable[[StateSnapshot], Any]] = None,
        on_rate_limit: Optional[Callable[[RateLimitInfo], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.history_limit = (
            history_limit if history_limit is not None else self.settings.tool_call_history_limit
        )
        if self.history_limit <= 0:
            raise ValueError("history_limit must be positive")

        self.rate_limit = rate_limit or RateLimitTracker(
            default_limit=self.settings.default_rate_limit, scheduler=scheduler
        )
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:12])

        self._on_tool_call_start = on_tool_call_start
        self._on_tool_call_end = on_tool_call_end
        self._on_thinking_start = on_thinking_start
        self._on_thinking_end = on_thinking_end
        self._on_run_start = on_run_start
        self._on_run_end = on_run_end
        self._on_error = on_error
        self._on_state_snapshot = on_state_snapshot
        self._on_rate_limit = on_rate_limit

        self.logger: Any = logger.bind(component="agent_event_classifier")
        self._reset_state()

    def _reset_state(self) -> None:
        self._event_count = 0
        self._run = RunContext()
        self._active: "OrderedDict[str, ToolCallRecord]" = OrderedDict()
        self._history: List[ToolCallRecord] = []
        self._last_error: Optional[RunError] = None
        self._last_snapshot: Optional[StateSnapshot] = None

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    @property
    def event_count(self) -> int:
        return self._event_count

    @property
    def run(self) -> RunContext:
        return self._run

    @property
    def run_id(self) -> Optional[str]:
        return self._run.run_id

    @property
    def is_running(self) -> bool:
        return self._run.is_running

    @property
    def is_thinking(self) -> bool:
        return self._run.is_thinking

    @property
    def thinking_message(self) -> str:
        return THINKING_MESSAGE if self._run.is_thinking else ""

    @property
    def last_error(self) -> Optional[RunError]:
        return self._last_error

    @property
    def last_state_snapshot(self) -> Optional[StateSnapshot]:
        return self._last_snapshot

    @property
    def active_tool_calls(self) -> List[ToolCallRecord]:
        """Running tool calls in start order (a copy)."""
        return list(self._active.values())

    @property
    def tool_call_history(self) -> List[ToolCallRecord]:
        """Completed tool calls, most recent first (a copy)."""
        return list(self._history)

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        return self.rate_limit.info

    def get_tool_call(self, tool_call_id: str) -> Optional[ToolCallRecord]:
        """Look up a tool call in the active set, then in history."""
        record = self._active.get(tool_call_id)
        if record is not None:
            return record
        for record in self._history:
            if record.id == tool_call_id:
                return record
        return None

    def snapshot(self) -> ClassifierSnapshot:
        return ClassifierSnapshot(
            run=self._run,
            active_tool_calls=self.active_tool_calls,
            tool_call_history=self.tool_call_history,
            last_error=self._last_error,
            last_state_snapshot=self._last_snapshot,
            rate_limit=self.rate_limit.info,
            event_count=self._event_count,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_event(self, event: Union[AgentEvent, Dict[str, Any]]) -> None:
        """
        Apply one event.

        Always increments ``event_count``. Unknown types and payloads that do
        not match their type's shape are logged and otherwise ignored.
        """
        self._event_count += 1
        try:
            agent_event = coerce_event(event)
            self._dispatch(agent_event)
        except ValidationError as e:
            self._log_dropped("Malformed event payload", event, error_count=e.error_count())
        except Exception as e:
            self._log_dropped(
                "Event handling failed", event, error_type=type(e).__name__, error=str(e)
            )

    def process_events(self, events: Iterable[Union[AgentEvent, Dict[str, Any]]]) -> None:
        """Apply events one by one in the given order."""
        for event in events:
            self.process_event(event)

    def process_message(self, message: SSEMessage) -> AgentEvent:
        """Classify a raw SSE message and apply it."""
        event = classify_message(message)
        self.process_event(event)
        return event

    def update_rate_limit_from_headers(self, headers: Dict[str, str]) -> None:
        if self.rate_limit.update_from_headers(headers):
            self._notify("on_rate_limit", self._on_rate_limit, self.rate_limit.info)

    def reset(self) -> None:
        """Clear all derived state (new conversation or session)."""
        self._reset_state()
        self.rate_limit.reset()
        self.logger.debug("Classifier state reset")

    def _dispatch(self, event: AgentEvent) -> None:
        event_type = event.type
        if not isinstance(event_type, AgentEventType):
            self._log_dropped("Unknown event type", event)
            return

        if event_type == AgentEventType.TOOL_CALL_START:
            self._handle_tool_call_start(event)
        elif event_type == AgentEventType.TOOL_CALL_END:
            self._handle_tool_call_end(event)
        elif event_type == AgentEventType.THINKING_START:
            self._run = self._run.model_copy(update={"is_thinking": True})
            self._notify("on_thinking_start", self._on_thinking_start)
        elif event_type == AgentEventType.THINKING_END:
            self._run = self._run.model_copy(update={"is_thinking": False})
            self._notify("on_thinking_end", self._on_thinking_end)
        elif event_type == AgentEventType.RUN_STARTED:
            self._handle_run_started(event)
        elif event_type == AgentEventType.RUN_FINISHED:
            self._handle_run_finished(event)
        elif event_type == AgentEventType.RUN_ERROR:
            self._handle_run_error(event)
        elif event_type == AgentEventType.STATE_SNAPSHOT:
            self._handle_state_snapshot(event)
        elif event_type == AgentEventType.RATE_LIMIT:
            payload = RateLimitPayload.model_validate(event.data)
            self.rate_limit.update_from_event(payload)
            self._notify("on_rate_limit", self._on_rate_limit, self.rate_limit.info)
        elif event_type in _PASSIVE_TYPES:
            event.payload()

    def _handle_tool_call_start(self, event: AgentEvent) -> None:
        payload = ToolCallStartPayload.model_validate(event.data)

        record = ToolCallRecord(
            id=payload.tool_call_id,
            name=payload.tool_call_name,
            arguments=payload.arguments,
            status=ToolCallStatus.RUNNING,
            started_at=event.timestamp,
        )
        # A repeated id replaces the running record and moves it to the end
        self._active.pop(record.id, None)
        self._active[record.id] = record
        self.logger.debug("Tool call started", tool_call_id=record.id, tool=record.name)
        self._notify("on_tool_call_start", self._on_tool_call_start, record)

    def _handle_tool_call_end(self, event: AgentEvent) -> None:
        payload = ToolCallEndPayload.model_validate(event.data)

        running = self._active.pop(payload.tool_call_id, None)
        if running is None:
            self._log_dropped("Tool call end without matching start", event)
            return

        failed = payload.error is not None
        record = running.model_copy(
            update={
                "status": ToolCallStatus.ERROR if failed else ToolCallStatus.COMPLETED,
                "result": payload.result,
                "error": payload.error,
                "completed_at": event.timestamp,
            }
        )
        self._history.insert(0, record)
        del self._history[self.history_limit :]

        self.logger.debug(
            "Tool call finished",
            tool_call_id=record.id,
            status=record.status.value,
            duration_seconds=record.duration_seconds,
        )
        self._notify("on_tool_call_end", self._on_tool_call_end, record)

    def _handle_run_started(self, event: AgentEvent) -> None:
        payload = RunStartedPayload.model_validate(event.data)

        run_id = payload.run_id or f"run-{self._id_factory()}"
        self._run = RunContext(run_id=run_id, is_running=True, is_thinking=self._run.is_thinking)
        self._last_error = None
        self.logger.info("Run started", run_id=run_id)
        self._notify("on_run_start", self._on_run_start, run_id)

    def _handle_run_finished(self, event: AgentEvent) -> None:
        payload = RunFinishedPayload.model_validate(event.data)

        run_id = self._run.run_id or payload.run_id
        self._run = RunContext()
        self.logger.info("Run finished", run_id=run_id)
        self._notify("on_run_end", self._on_run_end, run_id)

    def _handle_run_error(self, event: AgentEvent) -> None:
        payload = RunErrorPayload.model_validate(event.data)

        error = RunError(
            code=payload.code,
            message=payload.message,
            details=payload.details,
            timestamp=event.timestamp,
            recoverable=payload.recoverable,
        )
        self._last_error = error
        # The run id is kept so a later RUN_FINISHED still reports it
        self._run = self._run.model_copy(update={"is_running": False, "is_thinking": False})
        self.logger.warning(
            "Run error",
            run_id=self._run.run_id,
            code=error.code,
            message=error.message,
            recoverable=error.recoverable,
        )
        self._notify("on_error", self._on_error, error)

    def _handle_state_snapshot(self, event: AgentEvent) -> None:
        payload = StateSnapshotPayload.model_validate(event.data)

        snapshot = StateSnapshot(
            id=payload.snapshot_id or event.correlation_id or str(uuid.uuid4()),
            data=payload.snapshot if payload.snapshot is not None else dict(event.data),
            timestamp=event.timestamp,
        )
        self._last_snapshot = snapshot
        self.logger.debug("State snapshot received", snapshot_id=snapshot.id)
        self._notify("on_state_snapshot", self._on_state_snapshot, snapshot)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_dropped(self, reason: str, event: Any, **fields: Any) -> None:
        """Development-only log line for events that change nothing."""
        if not is_development_logging(self.settings):
            return
        type_name = event.type_name if isinstance(event, AgentEvent) else type(event).__name__
        if isinstance(event, dict):
            type_name = str(event.get("type"))
        self.logger.warning(reason, event_type=type_name, **fields)

    def _notify(self, name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.warning(
                "Classifier callback raised", callback=name, error_type=type(e).__name__, error=str(e)
            )
