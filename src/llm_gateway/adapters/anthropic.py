"""
Anthropic Messages adapter.

Inbound: ``/v1/messages`` bodies become a ChatRequest.
Outbound: a NormalizedResponse becomes a ``message`` object, and the live
BackendEvent sequence becomes the block-lifecycle event stream
(message_start, content_block_*, message_delta, message_stop).
"""

from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import GatewaySettings
from ..errors import GatewayError, InvalidRequestError, ProcessFailedError, ProcessTimeoutError, UnknownModelError
from ..models import ModelProfile, canonical_for_backend_model, resolve_model
from ..types import (
    BackendEvent,
    ChatRequest,
    Done,
    ErrorEvent,
    NormalizedResponse,
    Result,
    Role,
    Started,
    TextBlock,
    TextDelta,
    ToolUse,
    Turn,
    Usage,
    UsageReport,
)
from .base import clamp_max_tokens, dropped_params, extract_text, require_object, sse_frame, validation_error

# =============================================================================
# Request schema
# =============================================================================


class AnthropicMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant"]
    content: Union[str, list[Any]]


class RequestMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None


class MessagesRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[AnthropicMessage] = Field(min_length=1)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    system: Union[str, list[Any], None] = None
    stream: Optional[bool] = False
    metadata: Optional[RequestMetadata] = None


def parse_request(body: Any, settings: GatewaySettings) -> ChatRequest:
    """
    Normalize a Messages body.

    The top-level ``system`` field is the system instruction. Consecutive
    messages of the same role are merged into one turn.
    """
    data = require_object(body)
    try:
        request = MessagesRequest.model_validate(data)
    except ValidationError as exc:
        raise validation_error(exc) from None

    model = resolve_model(request.model)

    turns: list[Turn] = []
    for index, message in enumerate(request.messages):
        parts = extract_text(message.content, param=f"messages.{index}.content")
        if not parts:
            continue
        role = Role(message.role)
        if turns and turns[-1].role == role:
            turns[-1].parts.extend(["\n\n", *parts])
        else:
            turns.append(Turn(role=role, parts=parts))

    if not any(turn.text.strip() for turn in turns):
        raise InvalidRequestError("messages must contain at least one text content block", param="messages")

    system = "".join(extract_text(request.system, param="system")) or None
    continuity_key = request.metadata.user_id if request.metadata else None

    return ChatRequest(
        turns=turns,
        model=model,
        max_tokens=clamp_max_tokens(request.max_tokens, model),
        stream=bool(request.stream),
        system=system,
        continuity_key=continuity_key or None,
        dropped_params=dropped_params(data),
    )


# =============================================================================
# Non-streaming rendering
# =============================================================================


def tool_use_dict(tool: ToolUse) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool.id, "name": tool.name, "input": tool.input}


def render_response(response: NormalizedResponse) -> dict[str, Any]:
    """Project a NormalizedResponse onto a ``message`` object."""
    content: list[dict[str, Any]] = []
    for block in response.blocks:
        if isinstance(block, TextBlock):
            content.append({"type": "text", "text": block.text})
        else:
            content.append(tool_use_dict(block))
    if not content:
        content.append({"type": "text", "text": ""})

    return {
        "id": f"msg_{response.request_id}",
        "type": "message",
        "role": "assistant",
        "content": content,
        "model": response.model,
        "stop_reason": response.stop_reason.value,
        "stop_sequence": None,
        "usage": response.usage.to_dict(),
    }


# =============================================================================
# Streaming rendering
# =============================================================================


class AnthropicStreamTransducer:
    """
    BackendEvent -> Messages stream events, one event at a time.

    Local state is the index and kind of the open content block. Blocks are
    opened by the content that fills them; a stream that ends before any
    content still gets one empty text block, matching the non-streaming body.
    """

    def __init__(self, request_id: str, model: type[ModelProfile]) -> None:
        self.request_id = request_id
        self.model = model
        self.finished = False

        self._message_started = False
        self._open_block: str | None = None
        self._next_index = 0
        self._text_sent = False
        self._usage = Usage()

    def _frame(self, event_type: str, payload: dict[str, Any]) -> str:
        return sse_frame({"type": event_type, **payload}, event=event_type)

    def _start_message(self) -> list[str]:
        if self._message_started:
            return []
        self._message_started = True
        return [
            self._frame(
                "message_start",
                {
                    "message": {
                        "id": f"msg_{self.request_id}",
                        "type": "message",
                        "role": "assistant",
                        "content": [],
                        "model": self.model.key,
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": Usage().to_dict(),
                    }
                },
            ),
            self._frame("ping", {}),
        ]

    def _open(self, block: dict[str, Any], kind: str) -> list[str]:
        frames = self._close()
        frames.append(self._frame("content_block_start", {"index": self._next_index, "content_block": block}))
        self._open_block = kind
        return frames

    def _open_text(self) -> list[str]:
        if self._open_block == "text":
            return []
        return self._open({"type": "text", "text": ""}, "text")

    def _close(self) -> list[str]:
        if self._open_block is None:
            return []
        frame = self._frame("content_block_stop", {"index": self._next_index})
        self._open_block = None
        self._next_index += 1
        return [frame]

    def _placeholder_block(self) -> list[str]:
        """An empty text block when nothing has been opened yet."""
        if self._next_index or self._open_block is not None:
            return []
        return self._open_text()

    def _text(self, text: str) -> list[str]:
        self._text_sent = True
        frames = [*self._start_message(), *self._open_text()]
        frames.append(
            self._frame(
                "content_block_delta",
                {"index": self._next_index, "delta": {"type": "text_delta", "text": text}},
            )
        )
        return frames

    def feed(self, event: BackendEvent) -> list[str]:
        if self.finished:
            return []

        if isinstance(event, Started):
            self.model = canonical_for_backend_model(event.model, self.model)
            return self._start_message()

        if isinstance(event, TextDelta):
            return self._text(event.text)

        if isinstance(event, ToolUse):
            frames = self._start_message()
            frames += self._open({**tool_use_dict(event), "input": {}}, "tool_use")
            frames.append(
                self._frame(
                    "content_block_delta",
                    {"index": self._next_index, "delta": {"type": "input_json_delta", "partial_json": event.arguments}},
                )
            )
            frames += self._close()
            return frames

        if isinstance(event, UsageReport):
            self._usage = Usage.from_report(event)
            return []

        if isinstance(event, Result):
            return self._complete(event)

        if isinstance(event, ErrorEvent):
            return self._fail(event.error or ProcessFailedError(event.message))

        if isinstance(event, Done):
            return self.finish()

        return []

    def _complete(self, result: Result) -> list[str]:
        frames = self._start_message()
        if result.content and not self._text_sent:
            frames += self._text(result.content)
        frames += self._placeholder_block()
        frames += self._close()
        frames.append(
            self._frame(
                "message_delta",
                {
                    "delta": {"stop_reason": result.stop_reason.value, "stop_sequence": None},
                    "usage": self._usage.to_dict(),
                },
            )
        )
        frames.append(self._frame("message_stop", {}))
        self.finished = True
        return frames

    def _fail(self, error: Exception) -> list[str]:
        self.finished = True
        frames = self._placeholder_block() if self._message_started else []
        frames += self._close()
        _, body = error_response(error)
        frames.append(sse_frame(body, event="error"))
        frames.append(self._frame("message_stop", {}))
        return frames

    def fail(self, error: Exception) -> list[str]:
        """Close the stream with ``error`` unless it already ended."""
        if self.finished:
            return []
        return self._fail(error)

    def finish(self) -> list[str]:
        """Closing events for a stream that ended without a terminal event."""
        return self.fail(ProcessFailedError("Backend stream ended without a result"))


# =============================================================================
# Errors
# =============================================================================


def error_response(exc: Exception) -> tuple[int, dict[str, Any]]:
    """Status code and ``{"type": "error", "error": {...}}`` body for ``exc``."""
    if isinstance(exc, UnknownModelError):
        return 404, _error_body("not_found_error", exc.message)
    if isinstance(exc, InvalidRequestError):
        return 400, _error_body("invalid_request_error", exc.message)
    if isinstance(exc, ProcessTimeoutError):
        return 504, _error_body("timeout_error", exc.message)
    if isinstance(exc, GatewayError):
        return exc.http_status, _error_body("api_error", exc.message)
    return 500, _error_body("api_error", "Internal server error")


def _error_body(error_type: str, message: str) -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


__all__ = [
    "AnthropicMessage",
    "MessagesRequest",
    "parse_request",
    "render_response",
    "AnthropicStreamTransducer",
    "error_response",
]
