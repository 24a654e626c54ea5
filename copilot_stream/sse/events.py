"""
SSE Events
==========

Server-Sent Events wire handling and event classification.
Decodes the text/event-stream framing into SSEMessage objects and tags each
message with a protocol event type from the agent vocabulary.
"""

from typing import Optional, Dict, Any, List, Union
from datetime import datetime, timezone
import json

from pydantic import TypeAdapter, ValidationError

from copilot_stream.models.schemas import AgentEvent, AgentEventType
from .models import SSEMessage

_DATETIME_ADAPTER = TypeAdapter(datetime)


# Alternate spellings seen on the wire, normalised to the closed vocabulary
_TYPE_ALIASES: Dict[str, AgentEventType] = {
    "RUN_START": AgentEventType.RUN_STARTED,
    "RUN_END": AgentEventType.RUN_FINISHED,
    "STEP_START": AgentEventType.STEP_STARTED,
    "STEP_END": AgentEventType.STEP_FINISHED,
    "MESSAGE_START": AgentEventType.TEXT_MESSAGE_START,
    "MESSAGE_END": AgentEventType.TEXT_MESSAGE_END,
    "TEXT_DELTA": AgentEventType.TEXT_MESSAGE_CONTENT,
    "RATE_LIMIT": AgentEventType.RATE_LIMIT,
}


def format_sse_event(
    event_type: str,
    data: Union[Dict[str, Any], str],
    event_id: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> str:
    """
    Format data for Server-Sent Events protocol.

    Args:
        event_type: Event type identifier
        data: Event data dictionary (JSON encoded) or pre-encoded string
        event_id: Optional event ID for client-side event tracking
        retry_after: Optional retry interval in milliseconds

    Returns:
        Formatted SSE message string
    """
    lines: List[str] = []

    if event_id:
        lines.append(f"id: {event_id}")

    lines.append(f"event: {event_type}")

    if retry_after:
        lines.append(f"retry: {retry_after}")

    data_text = data if isinstance(data, str) else json.dumps(data, default=str, separators=(",", ":"))
    for data_line in data_text.split("\n"):
        lines.append(f"data: {data_line}")

    # SSE protocol requires double newline at end
    lines.append("")
    lines.append("")

    return "\n".join(lines)


def parse_sse_block(block: str) -> Optional[SSEMessage]:
    """
    Parse a single SSE event block (the text between blank lines).

    Comment lines (leading ':') and unknown fields are ignored. Multiple
    ``data`` lines are joined with newlines. Returns None for blocks that
    carry no data, which the protocol says must not be dispatched.
    """
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    retry: Optional[int] = None
    data_lines: List[str] = []

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue

        if ":" in line:
            field, value = line.split(":", 1)
            if value.startswith(" "):
                value = value[1:]
        else:
            field, value = line, ""

        if field == "data":
            data_lines.append(value)
        elif field == "event":
            event_name = value
        elif field == "id":
            event_id = value
        elif field == "retry":
            if value.isdigit():
                retry = int(value)

    if not data_lines:
        return None

    return SSEMessage(
        event=event_name or "message",
        data="\n".join(data_lines),
        id=event_id,
        retry=retry,
    )


class SSEDecoder:
    """Incremental text/event-stream decoder fed with arbitrary text chunks."""

    def __init__(self) -> None:
        self._buffer = ""
        self._skip_lf = False

    def feed(self, chunk: str) -> List[SSEMessage]:
        """Add a chunk and return every message it completes, in order."""
        # A CRLF pair may be split across chunks
        if self._skip_lf and chunk.startswith("\n"):
            chunk = chunk[1:]
        self._skip_lf = chunk.endswith("\r")

        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        messages: List[SSEMessage] = []

        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            message = parse_sse_block(block)
            if message is not None:
                messages.append(message)

        return messages

    def reset(self) -> None:
        """Drop any incomplete trailing block (the protocol discards it at EOF)."""
        self._buffer = ""
        self._skip_lf = False

    @property
    def pending(self) -> str:
        return self._buffer


def normalize_event_type(name: Optional[str]) -> Union[AgentEventType, str]:
    """Map a wire event name to the vocabulary; unknown names are returned unchanged."""
    if not name:
        return "unknown"
    try:
        return AgentEventType(name)
    except ValueError:
        pass
    key = name.strip().upper().replace("-", "_").replace(".", "_")
    try:
        return AgentEventType(key)
    except ValueError:
        return _TYPE_ALIASES.get(key, name)


def classify_message(message: SSEMessage, received_at: Optional[datetime] = None) -> AgentEvent:
    """
    Tag a raw SSE message with its protocol event type.

    The type comes from the JSON body's ``type`` field when present, else from
    the SSE ``event:`` name. Bodies that are not JSON objects are kept under
    ``raw`` so nothing is lost. A body ``timestamp`` is used unless
    ``received_at`` is given. Never raises.
    """
    timestamp = received_at or datetime.now(timezone.utc)
    body = message.parsed_data()

    if isinstance(body, dict):
        if received_at is None and body.get("timestamp") is not None:
            timestamp = parse_timestamp(body["timestamp"])
        data = {k: v for k, v in body.items() if k not in ("type", "timestamp")}
        type_name = body.get("type") if isinstance(body.get("type"), str) else None
        if type_name is None and message.event != "message":
            type_name = message.event
        correlation_id = message.id or _string_or_none(body.get("correlationId"))
    else:
        data = {"raw": body}
        type_name = message.event if message.event != "message" else None
        correlation_id = message.id

    return AgentEvent(
        type=normalize_event_type(type_name),
        data=data,
        timestamp=timestamp,
        correlation_id=correlation_id,
    )


def coerce_event(event: Union[AgentEvent, Dict[str, Any], Any]) -> AgentEvent:
    """Accept an AgentEvent or a decoded wire dict; anything else becomes an unknown event."""
    if isinstance(event, AgentEvent):
        return event
    if isinstance(event, dict):
        type_value = event.get("type")
        data = event.get("data")
        if not isinstance(data, dict):
            data = {k: v for k, v in event.items() if k not in ("type", "timestamp", "correlationId")}
        return AgentEvent(
            type=normalize_event_type(type_value if isinstance(type_value, str) else None),
            data=data,
            timestamp=parse_timestamp(event.get("timestamp")),
            correlation_id=_string_or_none(event.get("correlationId")),
        )
    return AgentEvent(type="unknown", data={"raw": repr(event)})


def parse_timestamp(value: Any) -> datetime:
    """
    Backend timestamp as an aware datetime.

    Accepts ISO 8601 strings and Unix epochs in seconds or milliseconds.
    Missing or unparseable values fall back to the current time; naive
    values are taken as UTC.
    """
    if value is None or isinstance(value, bool):
        return datetime.now(timezone.utc)
    try:
        parsed = _DATETIME_ADAPTER.validate_python(value)
    except ValidationError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
