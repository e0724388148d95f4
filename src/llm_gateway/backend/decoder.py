"""
Incremental decoder for the backend's NDJSON output.

The backend writes one JSON object per line:
- system (subtype init): session id and model for the run
- stream_event: partial message events (content_block_delta, message_delta, ...)
- assistant: a completed assistant message (text and tool_use blocks)
- result: the terminal record with final text, usage and error flag

``EventDecoder.feed`` accepts raw bytes as they arrive and returns the
BackendEvents completed by them, so translation never waits for the end of
the stream. This is the only module that knows the backend's output format.
"""

from __future__ import annotations

import json
from typing import Any

from ..errors import DecodeError, ProcessFailedError
from ..logging import StructuredLogger, get_logger, truncate_for_log
from ..types import (
    BackendEvent,
    ErrorEvent,
    Result,
    Started,
    StopReason,
    TextDelta,
    ToolUse,
    UsageReport,
)

# modelUsage entries use camelCase in current backend releases, snake_case in older ones.
_USAGE_KEYS = {
    "input_tokens": ("input_tokens", "inputTokens"),
    "output_tokens": ("output_tokens", "outputTokens"),
    "cache_creation_input_tokens": (
        "cache_creation_input_tokens",
        "cacheCreationInputTokens",
        "cache_write_tokens",
    ),
    "cache_read_input_tokens": (
        "cache_read_input_tokens",
        "cacheReadInputTokens",
        "cache_read_tokens",
    ),
}


def _usage_value(data: dict[str, Any], field: str) -> int:
    for key in _USAGE_KEYS[field]:
        value = data.get(key)
        if isinstance(value, (int, float)):
            return int(value)
    return 0


def parse_usage(record: dict[str, Any]) -> UsageReport | None:
    """Usage from a result record: top-level ``usage`` first, else summed ``modelUsage``."""
    usage = record.get("usage")
    if isinstance(usage, dict) and usage:
        return UsageReport(**{f: _usage_value(usage, f) for f in _USAGE_KEYS})

    model_usage = record.get("modelUsage")
    if isinstance(model_usage, dict) and model_usage:
        totals = dict.fromkeys(_USAGE_KEYS, 0)
        for entry in model_usage.values():
            if isinstance(entry, dict):
                for f in _USAGE_KEYS:
                    totals[f] += _usage_value(entry, f)
        return UsageReport(**totals)

    return None


class EventDecoder:
    """
    Turns the backend's stdout bytes into an ordered BackendEvent sequence.

    One instance serves exactly one request. Undecodable lines are logged and
    skipped; after ``max_errors`` of them, or when a single line grows past
    ``max_line_bytes``, the decoder escalates to a terminal ErrorEvent.
    """

    def __init__(
        self,
        *,
        max_errors: int = 10,
        max_line_bytes: int = 16 * 1024 * 1024,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.max_errors = max_errors
        self.max_line_bytes = max_line_bytes
        self._log = logger or get_logger()
        self._buffer = bytearray()

        self.decode_errors: list[DecodeError] = []
        self.session_id: str | None = None
        self.model: str | None = None
        self.terminated = False

        self._started = False
        self._partial_mode = False
        self._stop_reason: str | None = None
        self._seen_tool_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Byte-level input
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> list[BackendEvent]:
        """Consume a chunk of stdout and return the events of every completed line."""
        if self.terminated:
            return []

        self._buffer.extend(data)
        events: list[BackendEvent] = []

        while not self.terminated:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            events.extend(self.decode_line(line))

        if not self.terminated and len(self._buffer) > self.max_line_bytes:
            self._buffer.clear()
            events.append(self._escalate(f"Backend output line exceeded {self.max_line_bytes} bytes"))

        return events

    def finish(self) -> list[BackendEvent]:
        """Flush a trailing line that was not newline-terminated."""
        if self.terminated or not self._buffer:
            self._buffer.clear()
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        return self.decode_line(line)

    # ------------------------------------------------------------------
    # Line-level decoding
    # ------------------------------------------------------------------

    def decode_line(self, raw: bytes) -> list[BackendEvent]:
        """Decode one complete line independently of every other line."""
        if self.terminated:
            return []

        try:
            text = raw.decode("utf-8").strip()
        except UnicodeDecodeError as exc:
            return self._decode_failed(raw.decode("utf-8", errors="replace"), f"invalid UTF-8: {exc}")

        if not text:
            return []

        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            return self._decode_failed(text, f"invalid JSON: {exc.msg}")

        if not isinstance(message, dict):
            return self._decode_failed(text, "expected a JSON object")

        return self._dispatch(message)

    def _dispatch(self, message: dict[str, Any]) -> list[BackendEvent]:
        msg_type = message.get("type")

        if msg_type == "system":
            return self._on_system(message)
        if msg_type == "stream_event":
            event = message.get("event")
            return self._on_stream_event(event) if isinstance(event, dict) else []
        if msg_type in ("content_block_delta", "message_delta", "message_start"):
            # Older releases wrote partial events unwrapped.
            return self._on_stream_event(message)
        if msg_type == "assistant":
            return self._on_assistant(message)
        if msg_type == "result":
            return self._on_result(message)

        # user (tool results), keep-alives and future record types carry nothing to forward.
        return []

    def _on_system(self, message: dict[str, Any]) -> list[BackendEvent]:
        if message.get("subtype", "init") != "init":
            return []
        session_id = message.get("session_id")
        if isinstance(session_id, str):
            self.session_id = session_id
        model = message.get("model")
        if isinstance(model, str):
            self.model = model
        return self._ensure_started()

    def _on_stream_event(self, event: dict[str, Any]) -> list[BackendEvent]:
        self._partial_mode = True
        event_type = event.get("type")

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            text = delta.get("text") if isinstance(delta, dict) else None
            if isinstance(text, str) and text:
                return [*self._ensure_started(), TextDelta(text)]
            return []

        if event_type == "message_delta":
            delta = event.get("delta") or {}
            stop_reason = delta.get("stop_reason") if isinstance(delta, dict) else None
            if isinstance(stop_reason, str):
                self._stop_reason = stop_reason
            return []

        if event_type == "message_start":
            inner = event.get("message") or {}
            model = inner.get("model") if isinstance(inner, dict) else None
            if isinstance(model, str):
                self.model = model
            return []

        return []

    def _on_assistant(self, message: dict[str, Any]) -> list[BackendEvent]:
        inner = message.get("message")
        if not isinstance(inner, dict):
            return []

        model = inner.get("model")
        if isinstance(model, str):
            self.model = model

        stop_reason = inner.get("stop_reason")
        if isinstance(stop_reason, str):
            self._stop_reason = stop_reason

        events: list[BackendEvent] = []
        blocks = inner.get("content")
        if not isinstance(blocks, list):
            return events

        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and not self._partial_mode:
                # Partial deltas already carried this text when streaming is on.
                text = block.get("text")
                if isinstance(text, str) and text:
                    events.append(TextDelta(text))
            elif block_type == "tool_use":
                tool_id = str(block.get("id") or "")
                if tool_id and tool_id in self._seen_tool_ids:
                    continue
                self._seen_tool_ids.add(tool_id)
                tool_input = block.get("input")
                events.append(
                    ToolUse(
                        id=tool_id,
                        name=str(block.get("name") or ""),
                        input=tool_input if isinstance(tool_input, dict) else {},
                    )
                )

        if events:
            events[:0] = self._ensure_started()
        return events

    def _on_result(self, message: dict[str, Any]) -> list[BackendEvent]:
        session_id = message.get("session_id")
        if isinstance(session_id, str):
            self.session_id = session_id

        subtype = str(message.get("subtype") or "success")
        content = message.get("result")
        self.terminated = True

        if message.get("is_error") or subtype.startswith("error"):
            detail = content if isinstance(content, str) and content else subtype
            error = ProcessFailedError(f"Backend reported an error: {detail}")
            return [ErrorEvent(message=error.message, error=error)]

        events: list[BackendEvent] = list(self._ensure_started())
        usage = parse_usage(message)
        if usage is not None:
            events.append(usage)

        stop_reason = message.get("stop_reason")
        if not isinstance(stop_reason, str):
            stop_reason = self._stop_reason
        events.append(
            Result(
                content=content if isinstance(content, str) else None,
                stop_reason=StopReason.parse(stop_reason),
                session_id=self.session_id,
            )
        )
        return events

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_started(self) -> list[BackendEvent]:
        if self._started:
            return []
        self._started = True
        return [Started(session_id=self.session_id, model=self.model)]

    def _decode_failed(self, line: str, reason: str) -> list[BackendEvent]:
        error = DecodeError(f"Could not decode backend output ({reason})", line=truncate_for_log(line))
        self.decode_errors.append(error)
        self._log.warning(
            "Skipping undecodable backend line",
            reason=reason,
            line=error.line,
            decode_errors=len(self.decode_errors),
        )
        if len(self.decode_errors) >= self.max_errors:
            return [self._escalate(f"Backend output could not be decoded ({len(self.decode_errors)} bad lines)")]
        return []

    def _escalate(self, message: str) -> ErrorEvent:
        self.terminated = True
        error = ProcessFailedError(message)
        self._log.error("Giving up on backend output", reason=message)
        return ErrorEvent(message=message, error=error)


__all__ = ["EventDecoder", "parse_usage"]
