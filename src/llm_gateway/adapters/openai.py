"""
OpenAI Chat Completions adapter.

Inbound: ``/v1/chat/completions`` bodies become a ChatRequest.
Outbound: a NormalizedResponse becomes a ``chat.completion`` object, and the
live BackendEvent sequence becomes ``chat.completion.chunk`` frames closed
by ``data: [DONE]``.
"""

from __future__ import annotations

import time
from typing import Any, Optional, Union

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
    StopReason,
    TextDelta,
    ToolUse,
    Turn,
    Usage,
    UsageReport,
)
from .base import clamp_max_tokens, dropped_params, extract_text, require_object, sse_frame, validation_error

DONE_FRAME = "data: [DONE]\n\n"

FINISH_REASONS = {
    StopReason.END_TURN: "stop",
    StopReason.STOP_SEQUENCE: "stop",
    StopReason.MAX_TOKENS: "length",
    StopReason.TOOL_USE: "tool_calls",
}

SYSTEM_ROLES = ("system", "developer")


# =============================================================================
# Request schema
# =============================================================================


class OpenAIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, list[Any], None] = None
    name: Optional[str] = None


class StreamOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    include_usage: bool = False


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: list[OpenAIMessage] = Field(min_length=1)
    stream: Optional[bool] = False
    stream_options: Optional[StreamOptions] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    max_completion_tokens: Optional[int] = Field(default=None, ge=1)
    user: Optional[str] = None


def parse_request(body: Any, settings: GatewaySettings) -> ChatRequest:
    """
    Normalize a Chat Completions body.

    System and developer messages join into the system instruction; user and
    assistant turns keep their order; any other role (``tool``, ``function``)
    is sent as user text.
    """
    data = require_object(body)
    try:
        request = ChatCompletionRequest.model_validate(data)
    except ValidationError as exc:
        raise validation_error(exc) from None

    model = resolve_model(request.model or settings.default_model)

    system_parts: list[str] = []
    turns: list[Turn] = []
    for index, message in enumerate(request.messages):
        parts = extract_text(message.content, param=f"messages.{index}.content")
        if message.role in SYSTEM_ROLES:
            system_parts.append("".join(parts))
            continue
        if not parts:
            continue
        role = Role.ASSISTANT if message.role == "assistant" else Role.USER
        turns.append(Turn(role=role, parts=parts))

    if not any(turn.text.strip() for turn in turns):
        raise InvalidRequestError("messages must contain at least one user or assistant message with text", param="messages")

    system = "\n\n".join(part for part in system_parts if part) or None
    max_tokens = request.max_completion_tokens or request.max_tokens

    return ChatRequest(
        turns=turns,
        model=model,
        max_tokens=clamp_max_tokens(max_tokens, model),
        stream=bool(request.stream),
        system=system,
        continuity_key=request.user or None,
        include_usage=bool(request.stream_options and request.stream_options.include_usage),
        dropped_params=dropped_params(data),
    )


# =============================================================================
# Non-streaming rendering
# =============================================================================


def finish_reason(stop_reason: StopReason) -> str:
    return FINISH_REASONS.get(stop_reason, "stop")


def usage_dict(usage: Usage) -> dict[str, Any]:
    return {
        "prompt_tokens": usage.input_tokens,
        "completion_tokens": usage.output_tokens,
        "total_tokens": usage.total_tokens,
        "prompt_tokens_details": {"cached_tokens": usage.cache_read_input_tokens},
    }


def tool_call_dict(tool: ToolUse, index: int | None = None) -> dict[str, Any]:
    call: dict[str, Any] = {
        "id": tool.id,
        "type": "function",
        "function": {"name": tool.name, "arguments": tool.arguments},
    }
    if index is not None:
        call = {"index": index, **call}
    return call


def render_response(response: NormalizedResponse, created: int | None = None) -> dict[str, Any]:
    """Project a NormalizedResponse onto a ``chat.completion`` object."""
    message: dict[str, Any] = {"role": "assistant", "content": response.text}
    tool_uses = response.tool_uses
    if tool_uses:
        message["content"] = response.text or None
        message["tool_calls"] = [tool_call_dict(tool) for tool in tool_uses]

    return {
        "id": f"chatcmpl-{response.request_id}",
        "object": "chat.completion",
        "created": created or int(time.time()),
        "model": response.model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason(response.stop_reason),
            }
        ],
        "usage": usage_dict(response.usage),
    }


# =============================================================================
# Streaming rendering
# =============================================================================


class OpenAIStreamTransducer:
    """
    BackendEvent -> ``chat.completion.chunk`` frames, one event at a time.

    The first chunk with content carries the assistant role; tool uses are
    sent as ``tool_calls`` deltas; the Result produces the ``finish_reason``
    chunk, an optional usage chunk and the ``[DONE]`` sentinel. An ErrorEvent
    produces an error frame and the sentinel instead.
    """

    def __init__(self, request_id: str, model: type[ModelProfile], include_usage: bool = False) -> None:
        self.request_id = request_id
        self.model = model
        self.include_usage = include_usage
        self.created = int(time.time())
        self.finished = False

        self._role_sent = False
        self._text_sent = False
        self._tool_index = 0
        self._usage = Usage()

    @property
    def model_id(self) -> str:
        return self.model.key

    def _chunk(self, delta: dict[str, Any], finish: str | None = None) -> str:
        if not self._role_sent:
            delta = {"role": "assistant", **delta}
            self._role_sent = True
        return sse_frame(
            {
                "id": f"chatcmpl-{self.request_id}",
                "object": "chat.completion.chunk",
                "created": self.created,
                "model": self.model_id,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
            }
        )

    def feed(self, event: BackendEvent) -> list[str]:
        if self.finished:
            return []

        if isinstance(event, Started):
            self.model = canonical_for_backend_model(event.model, self.model)
            return []

        if isinstance(event, TextDelta):
            self._text_sent = True
            return [self._chunk({"content": event.text})]

        if isinstance(event, ToolUse):
            frame = self._chunk({"tool_calls": [tool_call_dict(event, self._tool_index)]})
            self._tool_index += 1
            return [frame]

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
        frames: list[str] = []
        if result.content and not self._text_sent:
            frames.append(self._chunk({"content": result.content}))
        frames.append(self._chunk({}, finish=finish_reason(result.stop_reason)))
        if self.include_usage:
            frames.append(
                sse_frame(
                    {
                        "id": f"chatcmpl-{self.request_id}",
                        "object": "chat.completion.chunk",
                        "created": self.created,
                        "model": self.model_id,
                        "choices": [],
                        "usage": usage_dict(self._usage),
                    }
                )
            )
        frames.append(DONE_FRAME)
        self.finished = True
        return frames

    def _fail(self, error: Exception) -> list[str]:
        self.finished = True
        _, body = error_response(error)
        return [sse_frame(body), DONE_FRAME]

    def fail(self, error: Exception) -> list[str]:
        """Close the stream with ``error`` unless it already ended."""
        if self.finished:
            return []
        return self._fail(error)

    def finish(self) -> list[str]:
        """Closing frames for a stream that ended without a terminal event."""
        return self.fail(ProcessFailedError("Backend stream ended without a result"))


# =============================================================================
# Errors
# =============================================================================


def error_response(exc: Exception) -> tuple[int, dict[str, Any]]:
    """Status code and ``{"error": {...}}`` body for ``exc``."""
    if isinstance(exc, UnknownModelError):
        return 404, _error_body(exc.message, "invalid_request_error", "model_not_found")
    if isinstance(exc, InvalidRequestError):
        body = _error_body(exc.message, "invalid_request_error", "invalid_request")
        if exc.param:
            body["error"]["param"] = exc.param
        return 400, body
    if isinstance(exc, ProcessTimeoutError):
        return 504, _error_body(exc.message, "server_error", "timeout")
    if isinstance(exc, GatewayError):
        return exc.http_status, _error_body(exc.message, "server_error", exc.code.name.lower())
    return 500, _error_body("Internal server error", "server_error", "internal_error")


def _error_body(message: str, error_type: str, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


__all__ = [
    "DONE_FRAME",
    "FINISH_REASONS",
    "OpenAIMessage",
    "ChatCompletionRequest",
    "parse_request",
    "finish_reason",
    "render_response",
    "OpenAIStreamTransducer",
    "error_response",
]
