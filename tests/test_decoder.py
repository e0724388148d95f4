"""
Tests for the backend output decoder.
"""

import json

from llm_gateway.backend.decoder import EventDecoder, parse_usage
from llm_gateway.errors import ProcessFailedError
from llm_gateway.types import ErrorEvent, Result, Started, StopReason, TextDelta, ToolUse, UsageReport


def line(obj) -> bytes:
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode()


INIT = {"type": "system", "subtype": "init", "session_id": "sess-1", "model": "claude-sonnet-4-5-20250929"}
RESULT = {
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "result": "Hi there",
    "session_id": "sess-1",
    "usage": {"input_tokens": 5, "output_tokens": 2},
}


def delta(text):
    return {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
    }


class TestLineDecoding:
    """Test mapping of individual NDJSON records."""

    def test_init_starts_once(self):
        decoder = EventDecoder()

        events = decoder.feed(line(INIT) + line(INIT))

        assert events == [Started(session_id="sess-1", model="claude-sonnet-4-5-20250929")]
        assert decoder.session_id == "sess-1"

    def test_stream_deltas(self):
        decoder = EventDecoder()

        events = decoder.feed(line(INIT) + line(delta("Hi")) + line(delta(" there")))

        assert events[1:] == [TextDelta("Hi"), TextDelta(" there")]

    def test_unwrapped_delta(self):
        decoder = EventDecoder()
        bare = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "x"}}

        events = decoder.feed(line(bare))

        assert events == [Started(), TextDelta("x")]

    def test_assistant_text_ignored_after_partial_deltas(self):
        decoder = EventDecoder()
        assistant = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi there"}]}}

        events = decoder.feed(line(INIT) + line(delta("Hi there")) + line(assistant))

        assert [e for e in events if isinstance(e, TextDelta)] == [TextDelta("Hi there")]

    def test_assistant_text_used_without_partial_deltas(self):
        decoder = EventDecoder()
        assistant = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Whole"}]}}

        events = decoder.feed(line(assistant))

        assert events == [Started(), TextDelta("Whole")]

    def test_tool_use_deduplicated(self):
        decoder = EventDecoder()
        block = {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}}
        assistant = {"type": "assistant", "message": {"content": [block]}}

        events = decoder.feed(line(INIT) + line(assistant) + line(assistant))

        tools = [e for e in events if isinstance(e, ToolUse)]
        assert tools == [ToolUse(id="toolu_1", name="Bash", input={"command": "ls"})]
        assert tools[0].arguments == '{"command": "ls"}'

    def test_result_success(self):
        decoder = EventDecoder()

        events = decoder.feed(line(INIT) + line(RESULT))

        assert events[1:] == [
            UsageReport(input_tokens=5, output_tokens=2),
            Result(content="Hi there", stop_reason=StopReason.END_TURN, session_id="sess-1"),
        ]
        assert decoder.terminated

    def test_result_uses_remembered_stop_reason(self):
        decoder = EventDecoder()
        stop = {"type": "stream_event", "event": {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}}}
        result = {key: value for key, value in RESULT.items() if key != "usage"}

        events = decoder.feed(line(stop) + line(result))

        assert events[-1].stop_reason == StopReason.MAX_TOKENS

    def test_result_error(self):
        decoder = EventDecoder()
        result = {"type": "result", "subtype": "error_during_execution", "is_error": True, "result": "boom"}

        events = decoder.feed(line(result))

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert isinstance(events[0].error, ProcessFailedError)
        assert "boom" in events[0].message

    def test_unknown_and_blank_lines_ignored(self):
        decoder = EventDecoder()

        events = decoder.feed(b"\n   \n" + line({"type": "user", "message": {}}) + line({"type": "mystery"}))

        assert events == []
        assert decoder.decode_errors == []

    def test_lines_after_terminal_ignored(self):
        decoder = EventDecoder()

        decoder.feed(line(RESULT))
        assert decoder.feed(line(delta("late"))) == []


class TestIncrementalInput:
    """Test buffering across read boundaries."""

    def test_line_split_across_chunks(self):
        decoder = EventDecoder()
        data = line(INIT) + line(delta("Hi"))

        events = []
        for i in range(0, len(data), 7):
            events.extend(decoder.feed(data[i:i + 7]))

        assert events == [Started(session_id="sess-1", model="claude-sonnet-4-5-20250929"), TextDelta("Hi")]

    def test_multibyte_character_split(self):
        decoder = EventDecoder()
        data = line(delta("héllo ✓"))
        split = data.index("✓".encode()) + 1

        events = decoder.feed(data[:split]) + decoder.feed(data[split:])

        assert events[-1] == TextDelta("héllo ✓")
        assert decoder.decode_errors == []

    def test_finish_flushes_unterminated_line(self):
        decoder = EventDecoder()

        assert decoder.feed(json.dumps(RESULT).encode()) == []
        events = decoder.finish()

        assert isinstance(events[-1], Result)


class TestDecodeErrors:
    """Test skip-and-continue with escalation."""

    def test_bad_line_skipped(self):
        decoder = EventDecoder()

        events = decoder.feed(b"not json\n" + line(delta("ok")))

        assert events == [Started(), TextDelta("ok")]
        assert len(decoder.decode_errors) == 1
        assert decoder.decode_errors[0].line == "not json"

    def test_non_object_json_is_an_error(self):
        decoder = EventDecoder()

        decoder.feed(b"[1, 2, 3]\n")

        assert len(decoder.decode_errors) == 1

    def test_escalates_after_threshold(self):
        decoder = EventDecoder(max_errors=3)

        events = decoder.feed(b"bad\nbad\nbad\n" + line(delta("never")))

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert isinstance(events[0].error, ProcessFailedError)
        assert decoder.terminated

    def test_oversized_line_escalates(self):
        decoder = EventDecoder(max_line_bytes=64)

        events = decoder.feed(b"x" * 100)

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert "64" in events[0].message


class TestParseUsage:
    def test_top_level_usage(self):
        usage = parse_usage({"usage": {"input_tokens": 3, "output_tokens": 4, "cache_read_input_tokens": 9}})

        assert usage == UsageReport(input_tokens=3, output_tokens=4, cache_read_input_tokens=9)

    def test_model_usage_summed(self):
        record = {
            "modelUsage": {
                "claude-opus-4": {"inputTokens": 10, "outputTokens": 2, "cacheReadInputTokens": 1},
                "claude-haiku-4": {"input_tokens": 1, "output_tokens": 1, "cache_write_tokens": 5},
            }
        }

        usage = parse_usage(record)

        assert usage == UsageReport(
            input_tokens=11,
            output_tokens=3,
            cache_creation_input_tokens=5,
            cache_read_input_tokens=1,
        )

    def test_absent(self):
        assert parse_usage({}) is None
