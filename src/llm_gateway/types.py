"""
Core types shared by the adapters, the backend runner and the orchestrator.

These types give both wire protocols one normalized view of a request, of
the backend's output events and of the final response.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from .errors import GatewayError
    from .models import ModelProfile


class Role(str, Enum):
    """Conversation roles the backend prompt distinguishes."""

    USER = "user"
    ASSISTANT = "assistant"


class Protocol(str, Enum):
    """Wire protocols the gateway speaks."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class StopReason(str, Enum):
    """Stop conditions in the backend's own vocabulary."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    STOP_SEQUENCE = "stop_sequence"

    @classmethod
    def parse(cls, value: str | None) -> StopReason:
        try:
            return cls(value)
        except ValueError:
            return cls.END_TURN


@dataclass
class Turn:
    """One conversation turn with its text parts in order."""

    role: Role
    parts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass
class ChatRequest:
    """A protocol-agnostic chat request."""

    turns: list[Turn]
    model: type[ModelProfile]
    max_tokens: int | None = None
    stream: bool = False
    system: str | None = None
    continuity_key: str | None = None
    include_usage: bool = False
    dropped_params: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackendInvocation:
    """Everything needed to start one backend process. argv is never shell-interpreted."""

    argv: tuple[str, ...]
    stdin: bytes
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    resume_session_id: str | None = None


# =============================================================================
# Backend events
# =============================================================================


@dataclass(frozen=True)
class Started:
    session_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def arguments(self) -> str:
        return json.dumps(self.input)


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


@dataclass(frozen=True)
class Result:
    content: str | None = None
    stop_reason: StopReason = StopReason.END_TURN
    session_id: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    error: GatewayError | None = None


@dataclass(frozen=True)
class Done:
    pass


BackendEvent = Union[Started, TextDelta, ToolUse, UsageReport, Result, ErrorEvent, Done]
TERMINAL_EVENTS = (Result, ErrorEvent)


# =============================================================================
# Normalized response
# =============================================================================


@dataclass
class Usage:
    """Token usage statistics."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_report(cls, report: UsageReport) -> Usage:
        return cls(
            input_tokens=report.input_tokens,
            output_tokens=report.output_tokens,
            cache_creation_input_tokens=report.cache_creation_input_tokens,
            cache_read_input_tokens=report.cache_read_input_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


@dataclass
class TextBlock:
    text: str = ""


ContentBlock = Union[TextBlock, ToolUse]


@dataclass
class NormalizedResponse:
    """
    Result of one backend run, independent of the wire protocol.

    Both non-streaming renderings are projections of this object, and the
    flattened streaming renderings are content-equivalent to it.
    """

    request_id: str
    model: str
    blocks: list[ContentBlock] = field(default_factory=list)
    stop_reason: StopReason = StopReason.END_TURN
    usage: Usage = field(default_factory=Usage)
    session_id: str | None = None

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.blocks if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUse]:
        return [block for block in self.blocks if isinstance(block, ToolUse)]


__all__ = [
    "Role",
    "Protocol",
    "StopReason",
    "Turn",
    "ChatRequest",
    "BackendInvocation",
    "Started",
    "TextDelta",
    "ToolUse",
    "UsageReport",
    "Result",
    "ErrorEvent",
    "Done",
    "BackendEvent",
    "TERMINAL_EVENTS",
    "Usage",
    "TextBlock",
    "ContentBlock",
    "NormalizedResponse",
]
