"""
Pydantic Models and Schemas
===========================

Agent event vocabulary, per-type payload models and the derived state the
event classifier maintains (tool calls, run context, errors, snapshots,
rate limits).
"""

from typing import Optional, List, Dict, Any, Union, Type
from datetime import datetime, timezone
from enum import Enum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class AgentEventType(str, Enum):
    """Closed vocabulary of protocol events pushed by the agent backend."""

    # Tool calls
    TOOL_CALL_START = "TOOL_CALL_START"
    TOOL_CALL_END = "TOOL_CALL_END"

    # Thinking phase
    THINKING_START = "THINKING_START"
    THINKING_END = "THINKING_END"

    # Run lifecycle
    RUN_STARTED = "RUN_STARTED"
    RUN_FINISHED = "RUN_FINISHED"
    RUN_ERROR = "RUN_ERROR"

    # State
    STATE_SNAPSHOT = "STATE_SNAPSHOT"

    # Streaming text
    TEXT_MESSAGE_START = "TEXT_MESSAGE_START"
    TEXT_MESSAGE_CONTENT = "TEXT_MESSAGE_CONTENT"
    TEXT_MESSAGE_END = "TEXT_MESSAGE_END"

    # Steps
    STEP_STARTED = "STEP_STARTED"
    STEP_FINISHED = "STEP_FINISHED"

    # Transport-level signal
    RATE_LIMIT = "rate_limit"


class ToolCallStatus(str, Enum):
    """Tool call lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


# Payload models (one shape per event type)
class EventPayload(BaseModel):
    """Base for per-type payloads; accepts camelCase wire names and ignores extras."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class EmptyPayload(EventPayload):
    """Payload for events that carry no data (thinking start/end)."""


class ToolCallStartPayload(EventPayload):
    tool_call_id: str = Field(..., alias="toolCallId", min_length=1)
    tool_call_name: str = Field(
        ...,
        validation_alias=AliasChoices("toolCallName", "tool_call_name", "toolName", "name"),
        min_length=1,
    )
    arguments: Any = Field(
        default=None, validation_alias=AliasChoices("args", "arguments", "delta")
    )
    parent_message_id: Optional[str] = Field(None, alias="parentMessageId")


def error_text(value: Any) -> Optional[str]:
    """Flatten a wire error (plain string or ``{message, code}`` object) to its text."""
    if value is None:
        return None
    if isinstance(value, dict):
        message = value.get("message")
        if message is not None:
            return str(message)
        code = value.get("code")
        return str(code) if code is not None else "Unknown error"
    return str(value)


class ToolCallEndPayload(EventPayload):
    tool_call_id: str = Field(..., alias="toolCallId", min_length=1)
    result: Any = None
    error: Optional[str] = None

    @field_validator("error", mode="before")
    @classmethod
    def flatten_error(cls, v: Any) -> Optional[str]:
        return error_text(v)


class RunStartedPayload(EventPayload):
    run_id: Optional[str] = Field(None, alias="runId")
    thread_id: Optional[str] = Field(None, alias="threadId")


class RunFinishedPayload(EventPayload):
    run_id: Optional[str] = Field(None, alias="runId")
    thread_id: Optional[str] = Field(None, alias="threadId")


class RunErrorPayload(EventPayload):
    """
    RUN_ERROR body. Fields may sit at the top level or inside a nested
    ``error`` object; the nested object wins. Null fields take the defaults.
    """

    code: str = "UNKNOWN"
    message: str = "Unknown error"
    details: Optional[Any] = None
    recoverable: bool = False

    @model_validator(mode="before")
    @classmethod
    def lift_nested_error(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        values = dict(data)
        nested = values.pop("error", None)
        if isinstance(nested, dict):
            for key in ("code", "message", "details", "recoverable"):
                if nested.get(key) is not None:
                    values[key] = nested[key]
        elif isinstance(nested, str) and values.get("message") is None:
            values["message"] = nested
        for key in ("code", "message", "recoverable"):
            if values.get(key) is None:
                values.pop(key, None)
        return values


class StateSnapshotPayload(EventPayload):
    snapshot: Any = None
    snapshot_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("snapshotId", "snapshot_id", "id")
    )


class TextMessageStartPayload(EventPayload):
    message_id: Optional[str] = Field(None, alias="messageId")
    role: Optional[str] = None


class TextMessageContentPayload(EventPayload):
    message_id: Optional[str] = Field(None, alias="messageId")
    delta: str = ""


class TextMessageEndPayload(EventPayload):
    message_id: Optional[str] = Field(None, alias="messageId")


class StepPayload(EventPayload):
    step_name: Optional[str] = Field(None, alias="stepName")


class RateLimitPayload(EventPayload):
    limit: Optional[int] = Field(None, ge=0)
    remaining: Optional[int] = Field(None, ge=0)
    reset_seconds: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("reset_seconds", "resetSeconds", "reset")
    )


PAYLOAD_MODELS: Dict[AgentEventType, Type[EventPayload]] = {
    AgentEventType.TOOL_CALL_START: ToolCallStartPayload,
    AgentEventType.TOOL_CALL_END: ToolCallEndPayload,
    AgentEventType.THINKING_START: EmptyPayload,
    AgentEventType.THINKING_END: EmptyPayload,
    AgentEventType.RUN_STARTED: RunStartedPayload,
    AgentEventType.RUN_FINISHED: RunFinishedPayload,
    AgentEventType.RUN_ERROR: RunErrorPayload,
    AgentEventType.STATE_SNAPSHOT: StateSnapshotPayload,
    AgentEventType.TEXT_MESSAGE_START: TextMessageStartPayload,
    AgentEventType.TEXT_MESSAGE_CONTENT: TextMessageContentPayload,
    AgentEventType.TEXT_MESSAGE_END: TextMessageEndPayload,
    AgentEventType.STEP_STARTED: StepPayload,
    AgentEventType.STEP_FINISHED: StepPayload,
    AgentEventType.RATE_LIMIT: RateLimitPayload,
}


class AgentEvent(BaseModel):
    """
    Immutable event produced per inbound message.

    ``type`` is an AgentEventType for recognised events and the raw type
    string otherwise; ``data`` is the wire payload, read through ``payload()``
    which validates it against the model registered for ``type``.
    """

    type: Union[AgentEventType, str] = Field(..., union_mode="left_to_right")
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    correlation_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_known(self) -> bool:
        return isinstance(self.type, AgentEventType)

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, AgentEventType) else str(self.type)

    def payload(self) -> EventPayload:
        """
        Validate ``data`` against the payload model for this event's type.

        Raises:
            KeyError: The type is not part of the vocabulary
            pydantic.ValidationError: The data does not match the payload shape
        """
        if not isinstance(self.type, AgentEventType):
            raise KeyError(self.type)
        return PAYLOAD_MODELS[self.type].model_validate(self.data)


# Derived state
class ToolCallRecord(BaseModel):
    """Tool call tracked from its start event to its matching end event."""

    id: str
    name: str
    arguments: Any = None
    status: ToolCallStatus = ToolCallStatus.RUNNING
    result: Any = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class RunContext(BaseModel):
    """The single active run, if any."""

    run_id: Optional[str] = None
    is_running: bool = False
    is_thinking: bool = False

    model_config = ConfigDict(frozen=True)


class RunError(BaseModel):
    """Protocol error reported by the backend through RUN_ERROR."""

    code: str
    message: str
    details: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utc_now)
    recoverable: bool = False

    model_config = ConfigDict(frozen=True)


class StateSnapshot(BaseModel):
    """Point-in-time backend conversational state."""

    id: str
    data: Any = None
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class RateLimitInfo(BaseModel):
    """Rate limit status derived from response headers or inline events."""

    limit: int = 30
    remaining: int = 30
    reset_seconds: int = 0
    reset_at: Optional[datetime] = None
    is_limited: bool = False
    last_updated: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class ClassifierSnapshot(BaseModel):
    """Read-only view of everything the classifier derives."""

    run: RunContext
    active_tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    tool_call_history: List[ToolCallRecord] = Field(default_factory=list)
    last_error: Optional[RunError] = None
    last_state_snapshot: Optional[StateSnapshot] = None
    rate_limit: RateLimitInfo = Field(default_factory=RateLimitInfo)
    event_count: int = 0

    model_config = ConfigDict(frozen=True)
