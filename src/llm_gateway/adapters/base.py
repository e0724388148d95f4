"""
Helpers shared by both protocol adapters.

- SSE frame formatting
- Event accumulation into a NormalizedResponse
- Text extraction and parameter translation for inbound bodies
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, Iterable
from typing import Any

from pydantic import ValidationError

from ..errors import GatewayError, InvalidRequestError, ProcessFailedError
from ..logging import get_logger
from ..models import ModelProfile, canonical_for_backend_model
from ..types import (
    BackendEvent,
    ErrorEvent,
    NormalizedResponse,
    Result,
    Started,
    TextBlock,
    TextDelta,
    ToolUse,
    Usage,
    UsageReport,
)

KEEPALIVE_FRAME = ": keep-alive\n\n"

# Sampling knobs the backend has no way to honour. Accepted and ignored.
SAMPLING_PARAMS = (
    "temperature",
    "top_p",
    "top_k",
    "stop",
    "stop_sequences",
    "n",
    "presence_penalty",
    "frequency_penalty",
    "logit_bias",
    "logprobs",
    "top_logprobs",
    "seed",
    "response_format",
)


def sse_frame(data: dict[str, Any] | str, event: str | None = None) -> str:
    """Format one Server-Sent Event frame."""
    data_str = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    if event:
        return f"event: {event}\ndata: {data_str}\n\n"
    return f"data: {data_str}\n\n"


def extract_text(content: Any, *, param: str) -> list[str]:
    """
    Text parts of a message content value.

    Accepts a string, a list of typed parts/blocks (only ``text`` ones are
    kept) or None. Anything else is an InvalidRequestError.
    """
    if content is None:
        return []
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if not isinstance(text, str):
                    raise InvalidRequestError(f"{param}: text parts must carry a string 'text'", param=param)
                parts.append(text)
        return parts
    raise InvalidRequestError(f"{param} must be a string or a list of content parts", param=param)


def clamp_max_tokens(value: int | None, model: type[ModelProfile]) -> int | None:
    if value is None:
        return None
    return min(value, model.max_output)


def dropped_params(body: dict[str, Any]) -> tuple[str, ...]:
    """Names of sampling parameters present in ``body``, logged and ignored."""
    dropped = tuple(name for name in SAMPLING_PARAMS if body.get(name) is not None)
    if dropped:
        get_logger().debug("Ignoring unsupported sampling parameters", params=list(dropped))
    return dropped


def validation_error(exc: ValidationError) -> InvalidRequestError:
    """Turn the first pydantic error into a caller-facing InvalidRequestError."""
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid request body")
    return InvalidRequestError(f"{loc}: {message}" if loc else message, param=loc or None, cause=exc)


def require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


# =============================================================================
# Accumulation
# =============================================================================


class ResponseAccumulator:
    """
    Folds a BackendEvent sequence into one NormalizedResponse.

    Consecutive text deltas merge into one text block; tool uses become their
    own blocks in arrival order. When the backend streamed no text but its
    Result carries content, that content becomes the text.
    """

    def __init__(self, request_id: str, model: type[ModelProfile]) -> None:
        self.request_id = request_id
        self.model = model
        self.blocks: list[TextBlock | ToolUse] = []
        self.usage = Usage()
        self.session_id: str | None = None
        self.backend_model: str | None = None
        self.result: Result | None = None
        self.error: GatewayError | None = None

    def feed(self, event: BackendEvent) -> None:
        if isinstance(event, Started):
            self.session_id = event.session_id or self.session_id
            self.backend_model = event.model or self.backend_model
        elif isinstance(event, TextDelta):
            if self.blocks and isinstance(self.blocks[-1], TextBlock):
                self.blocks[-1].text += event.text
            else:
                self.blocks.append(TextBlock(event.text))
        elif isinstance(event, ToolUse):
            self.blocks.append(event)
        elif isinstance(event, UsageReport):
            self.usage = Usage.from_report(event)
        elif isinstance(event, Result):
            self.result = event
            self.session_id = event.session_id or self.session_id
            if event.content and not any(isinstance(b, TextBlock) for b in self.blocks):
                self.blocks.append(TextBlock(event.content))
        elif isinstance(event, ErrorEvent):
            self.error = event.error or ProcessFailedError(event.message)

    def build(self) -> NormalizedResponse:
        """The accumulated response; raises the backend's error if the run failed."""
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise ProcessFailedError("Backend output ended without a result")
        return NormalizedResponse(
            request_id=self.request_id,
            model=canonical_for_backend_model(self.backend_model, self.model).key,
            blocks=self.blocks,
            stop_reason=self.result.stop_reason,
            usage=self.usage,
            session_id=self.session_id,
        )


def accumulate_events(
    events: Iterable[BackendEvent],
    request_id: str,
    model: type[ModelProfile],
) -> NormalizedResponse:
    accumulator = ResponseAccumulator(request_id, model)
    for event in events:
        accumulator.feed(event)
    return accumulator.build()


async def accumulate_stream(
    events: AsyncIterable[BackendEvent],
    request_id: str,
    model: type[ModelProfile],
) -> NormalizedResponse:
    accumulator = ResponseAccumulator(request_id, model)
    async for event in events:
        accumulator.feed(event)
    return accumulator.build()


__all__ = [
    "KEEPALIVE_FRAME",
    "SAMPLING_PARAMS",
    "sse_frame",
    "extract_text",
    "clamp_max_tokens",
    "dropped_params",
    "validation_error",
    "require_object",
    "ResponseAccumulator",
    "accumulate_events",
    "accumulate_stream",
]
