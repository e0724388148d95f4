"""Wire-protocol adapters: request parsing, response rendering, stream transducers, error bodies."""

from . import anthropic, openai
from .base import KEEPALIVE_FRAME, ResponseAccumulator, accumulate_events, accumulate_stream, sse_frame

__all__ = [
    "anthropic",
    "openai",
    "KEEPALIVE_FRAME",
    "ResponseAccumulator",
    "accumulate_events",
    "accumulate_stream",
    "sse_frame",
]
