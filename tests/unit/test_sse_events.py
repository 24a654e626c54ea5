"""
SSE Event Tests
===============

Wire decoding and message classification.
"""

from datetime import datetime, timezone
import json

import pytest

from copilot_stream.models.schemas import AgentEvent, AgentEventType
from copilot_stream.sse.events import (
    SSEDecoder,
    classify_message,
    coerce_event,
    format_sse_event,
    normalize_event_type,
    parse_sse_block,
    parse_timestamp,
)
from copilot_stream.sse.models import SSEMessage


class TestParseSSEBlock:
    def test_full_block(self):
        message = parse_sse_block('id: 7\nevent: TOOL_CALL_START\nretry: 3000\ndata: {"a": 1}')

        assert message.id == "7"
        assert message.event == "TOOL_CALL_START"
        assert message.retry == 3000
        assert message.parsed_data() == {"a": 1}

    def test_multiline_data_joined(self):
        message = parse_sse_block("data: first\ndata: second")

        assert message.data == "first\nsecond"
        assert message.event == "message"

    def test_comments_and_unknown_fields_ignored(self):
        message = parse_sse_block(": keep-alive\nfoo: bar\ndata: x")

        assert message.data == "x"

    def test_block_without_data_is_dropped(self):
        assert parse_sse_block(": ping") is None
        assert parse_sse_block("event: noop") is None

    def test_value_without_space(self):
        assert parse_sse_block("data:tight").data == "tight"

    def test_invalid_retry_ignored(self):
        assert parse_sse_block("retry: soon\ndata: x").retry is None


class TestSSEDecoder:
    def test_messages_split_across_chunks(self):
        decoder = SSEDecoder()

        assert decoder.feed('event: RUN_STARTED\ndata: {"runId"') == []
        messages = decoder.feed(': "r1"}\n\ndata: second\n\n')

        assert [m.event for m in messages] == ["RUN_STARTED", "message"]
        assert messages[0].parsed_data() == {"runId": "r1"}
        assert decoder.pending == ""

    def test_crlf_line_endings(self):
        decoder = SSEDecoder()

        messages = decoder.feed("data: a\r\n\r\ndata: b\r\n\r\n")

        assert [m.data for m in messages] == ["a", "b"]

    def test_crlf_split_between_chunks(self):
        decoder = SSEDecoder()

        assert decoder.feed("data: a\r") == []
        messages = decoder.feed("\n\r")

        assert [m.data for m in messages] == ["a"]
        assert decoder.feed("\ndata: b\r\n\r\n")[0].data == "b"

    def test_reset_drops_partial_block(self):
        decoder = SSEDecoder()
        decoder.feed("data: incomplete")

        decoder.reset()

        assert decoder.pending == ""
        assert decoder.feed("data: next\n\n")[0].data == "next"

    def test_formatted_event_decodes(self):
        frame = format_sse_event("STATE_SNAPSHOT", {"snapshot": {"k": "v"}}, event_id="e-1")

        messages = SSEDecoder().feed(frame)

        assert len(messages) == 1
        assert messages[0].id == "e-1"
        assert messages[0].event == "STATE_SNAPSHOT"
        assert messages[0].parsed_data() == {"snapshot": {"k": "v"}}


class TestFormatSSEEvent:
    def test_frame_layout(self):
        frame = format_sse_event("ping", {"n": 1}, event_id="9", retry_after=500)

        assert frame == 'id: 9\nevent: ping\nretry: 500\ndata: {"n":1}\n\n'

    def test_multiline_string_data(self):
        frame = format_sse_event("note", "line one\nline two")

        assert "data: line one\ndata: line two\n\n" in frame


class TestNormalizeEventType:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("TOOL_CALL_START", AgentEventType.TOOL_CALL_START),
            ("tool-call-end", AgentEventType.TOOL_CALL_END),
            ("RUN_START", AgentEventType.RUN_STARTED),
            ("TEXT_DELTA", AgentEventType.TEXT_MESSAGE_CONTENT),
            ("rate_limit", AgentEventType.RATE_LIMIT),
        ],
    )
    def test_known_names(self, name, expected):
        assert normalize_event_type(name) == expected

    def test_unknown_name_passes_through(self):
        assert normalize_event_type("CUSTOM_WIDGET") == "CUSTOM_WIDGET"

    def test_missing_name(self):
        assert normalize_event_type(None) == "unknown"
        assert normalize_event_type("") == "unknown"


class TestClassifyMessage:
    def test_type_from_body(self):
        message = SSEMessage(data=json.dumps({"type": "TOOL_CALL_START", "toolCallId": "t1"}))

        event = classify_message(message)

        assert event.type == AgentEventType.TOOL_CALL_START
        assert event.data == {"toolCallId": "t1"}
        assert event.is_known

    def test_type_from_event_name(self):
        message = SSEMessage(event="RUN_FINISHED", data=json.dumps({"runId": "r1"}), id="42")

        event = classify_message(message)

        assert event.type == AgentEventType.RUN_FINISHED
        assert event.correlation_id == "42"

    def test_correlation_id_from_body(self):
        message = SSEMessage(data=json.dumps({"type": "THINKING_START", "correlationId": "c-1"}))

        assert classify_message(message).correlation_id == "c-1"

    def test_non_json_body_kept_raw(self):
        event = classify_message(SSEMessage(event="TEXT_DELTA", data="plain text"))

        assert event.type == AgentEventType.TEXT_MESSAGE_CONTENT
        assert event.data == {"raw": "plain text"}

    def test_unknown_type_is_preserved(self):
        event = classify_message(SSEMessage(data=json.dumps({"type": "NEW_THING"})))

        assert event.type == "NEW_THING"
        assert not event.is_known
        assert event.type_name == "NEW_THING"

    def test_received_at_used_as_timestamp(self):
        received = datetime(2024, 1, 1, tzinfo=timezone.utc)

        event = classify_message(SSEMessage(data="{}"), received_at=received)

        assert event.timestamp == received
        assert event.type == "unknown"

    def test_body_timestamp_used(self):
        body = {"type": "RUN_STARTED", "runId": "r-1", "timestamp": 1740830400000}

        event = classify_message(SSEMessage(data=json.dumps(body)))

        assert event.timestamp == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert event.data == {"runId": "r-1"}


class TestCoerceEvent:
    def test_agent_event_passthrough(self):
        event = AgentEvent(type=AgentEventType.THINKING_END)

        assert coerce_event(event) is event

    def test_dict_with_nested_data(self):
        event = coerce_event({"type": "RUN_STARTED", "data": {"runId": "r-9"}})

        assert event.type == AgentEventType.RUN_STARTED
        assert event.data == {"runId": "r-9"}

    def test_flat_dict(self):
        event = coerce_event({"type": "RUN_STARTED", "runId": "r-9", "correlationId": "c"})

        assert event.data == {"runId": "r-9"}
        assert event.correlation_id == "c"

    def test_garbage_becomes_unknown(self):
        event = coerce_event(42)

        assert event.type == "unknown"
        assert event.data == {"raw": "42"}

    def test_backend_timestamp_kept(self):
        event = coerce_event({"type": "RUN_STARTED", "timestamp": "2025-03-01T12:00:00Z"})

        assert event.timestamp == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert "timestamp" not in event.data


class TestParseTimestamp:
    @pytest.mark.parametrize(
        "value",
        ["2025-03-01T12:00:00Z", "2025-03-01T12:00:00", 1740830400, 1740830400000],
    )
    def test_accepted_forms(self, value):
        assert parse_timestamp(value) == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "yesterday", {"at": 1}, True])
    def test_fallback_to_now(self, value):
        before = datetime.now(timezone.utc)

        parsed = parse_timestamp(value)

        assert before <= parsed <= datetime.now(timezone.utc)
