import pytest

from commentary_bus.models import (
    InterruptBody,
    Origin,
    Subtype,
    TextBody,
    ToolResultBody,
    ToolUseBody,
)
from commentary_bus.services.classifier import classify, decode, origin_for, parse_timestamp


class TestClassify:
    def test_assistant_text(self):
        record = {"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}
        assert classify(record) == Subtype.ASSISTANT_TEXT

    def test_assistant_tool_use(self):
        record = {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {"command": "ls"}}]},
        }
        assert classify(record) == Subtype.ASSISTANT_TOOL_USE

    def test_assistant_top_level_tool_name(self):
        assert classify({"type": "assistant", "tool_name": "Read"}) == Subtype.ASSISTANT_TOOL_USE

    def test_user_string_content(self):
        assert classify({"type": "user", "message": {"content": "hello"}}) == Subtype.USER_TEXT

    def test_user_tool_result(self):
        record = {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "x", "content": "ok"}]},
        }
        assert classify(record) == Subtype.USER_TOOL_RESULT

    def test_user_interrupt_case_insensitive(self):
        record = {
            "type": "user",
            "message": {"content": [{"type": "text", "text": "[REQUEST INTERRUPTED BY USER]"}]},
        }
        assert classify(record) == Subtype.USER_INTERRUPT

    def test_user_text_blocks(self):
        record = {"type": "user", "message": {"content": [{"type": "text", "text": "do it"}]}}
        assert classify(record) == Subtype.USER_TEXT

    def test_user_empty_array_defaults_to_text(self):
        assert classify({"type": "user", "message": {"content": []}}) == Subtype.USER_TEXT

    def test_user_without_message(self):
        assert classify({"type": "user"}) == Subtype.USER_TEXT

    def test_event_key_is_accepted(self):
        assert classify({"event": "session_start"}) == Subtype.SESSION_START

    @pytest.mark.parametrize("kind", ["session_start", "session_end", "error"])
    def test_passthrough_types(self, kind):
        assert classify({"type": kind}).value == kind

    def test_other_literal_is_unknown(self):
        assert classify({"type": "summary"}) == Subtype.UNKNOWN

    @pytest.mark.parametrize(
        "record",
        [{}, {"type": 5}, {"type": ""}, {"type": None}, [], "text", None, 42, {"message": {"content": "x"}}],
    )
    def test_total_for_odd_input(self, record):
        assert classify(record) == Subtype.UNKNOWN

    def test_malformed_content_blocks_do_not_raise(self):
        record = {"type": "user", "message": {"content": [None, 3, "x", {"type": "text", "text": 7}]}}
        assert classify(record) == Subtype.USER_TEXT

    def test_deterministic(self):
        record = {"type": "assistant", "message": {"content": [{"type": "text", "text": "a"}]}}
        assert classify(record) == classify(record)


class TestOrigin:
    def test_origin_table(self):
        assert origin_for(Subtype.ASSISTANT_TEXT) == Origin.ASSISTANT
        assert origin_for(Subtype.ASSISTANT_TOOL_USE) == Origin.ASSISTANT
        assert origin_for(Subtype.USER_TEXT) == Origin.HUMAN
        assert origin_for(Subtype.USER_TOOL_RESULT) == Origin.TOOL
        assert origin_for(Subtype.USER_INTERRUPT) == Origin.SYSTEM
        assert origin_for(Subtype.UNKNOWN) == Origin.SYSTEM

    def test_every_subtype_has_origin(self):
        for subtype in Subtype:
            assert isinstance(origin_for(subtype), Origin)


class TestTimestamp:
    def test_numeric_ts(self):
        assert parse_timestamp({"ts": 1700000000000}, 0) == 1700000000000.0

    def test_iso_timestamp(self):
        assert parse_timestamp({"timestamp": "1970-01-01T00:00:01Z"}, 0) == 1000.0

    def test_default_when_missing(self):
        assert parse_timestamp({"type": "user"}, 123.0) == 123.0

    def test_default_when_unparseable(self):
        assert parse_timestamp({"timestamp": "yesterday"}, 9.0) == 9.0

    def test_bool_is_not_a_timestamp(self):
        assert parse_timestamp({"ts": True}, 4.0) == 4.0


class TestDecode:
    def test_tool_use_body(self):
        record = {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "name": "Grep", "input": {"pattern": "x"}}]},
        }
        event = decode(record, "/tmp/a.jsonl", 1.0)
        assert isinstance(event.body, ToolUseBody)
        assert event.body.tool_name == "Grep"
        assert event.body.tool_input == {"pattern": "x"}
        assert event.shape == "array"
        assert event.source_file == "/tmp/a.jsonl"

    def test_text_body_keeps_block_order(self):
        record = {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]},
        }
        assert decode(record).body == TextBody(blocks=("one", "two"))

    def test_tool_result_body_carries_metadata(self):
        record = {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "content": "done", "is_error": True}]},
            "toolUseResult": {"type": "create", "filePath": "/x"},
        }
        body = decode(record).body
        assert isinstance(body, ToolResultBody)
        assert body.is_error is True
        assert body.metadata == {"type": "create", "filePath": "/x"}

    def test_interrupt_body(self):
        record = {
            "type": "user",
            "message": {"content": [{"type": "text", "text": "[Request interrupted by user]"}]},
        }
        assert decode(record).body == InterruptBody(text="[Request interrupted by user]")

    def test_ingestion_time_used_without_timestamp(self):
        assert decode({"type": "user", "message": {"content": "x"}}, ingested_at=55.0).timestamp == 55.0

    def test_non_dict_record(self):
        event = decode(["not", "a", "dict"], ingested_at=1.0)
        assert event.subtype == Subtype.UNKNOWN
        assert event.raw == {}


class TestTimestampTotality:
    @pytest.mark.parametrize("value", [10**400, -(10**400), float("nan"), float("inf"), float("-inf")])
    def test_non_finite_falls_back(self, value):
        assert parse_timestamp({"ts": value}, 42.0) == 42.0

    def test_falls_through_to_second_key(self):
        assert parse_timestamp({"timestamp": 10**400, "ts": 7}, 0) == 7.0

    @pytest.mark.parametrize("value", [10**400, float("nan"), float("inf")])
    def test_decode_total_for_extreme_timestamps(self, value):
        event = decode({"type": "user", "message": {"content": "hello world"}, "ts": value}, ingested_at=5.0)
        assert event.subtype == Subtype.USER_TEXT
        assert event.timestamp == 5.0
