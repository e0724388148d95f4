"""
Top-level package for llm-gateway.

Serves the OpenAI Chat Completions and Anthropic Messages protocols on top
of the ``claude`` command-line program, one subprocess per request.
"""

from .app import VERSION, create_app
from .config import GatewaySettings, load_env
from .errors import (
    GatewayError,
    InvalidRequestError,
    ProcessFailedError,
    ProcessSpawnError,
    ProcessTimeoutError,
    SessionStoreError,
    UnknownModelError,
)
from .gateway import Gateway, JSONResult, StreamResult
from .models import ClaudeHaiku4, ClaudeOpus4, ClaudeSonnet4, ModelProfile, resolve_model
from .sessions import SessionStore
from .types import Protocol

__version__ = VERSION

__all__ = [
    "create_app",
    "Gateway",
    "JSONResult",
    "StreamResult",
    "GatewaySettings",
    "load_env",
    "SessionStore",
    "Protocol",
    "ModelProfile",
    "ClaudeOpus4",
    "ClaudeSonnet4",
    "ClaudeHaiku4",
    "resolve_model",
    "GatewayError",
    "InvalidRequestError",
    "UnknownModelError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProcessFailedError",
    "SessionStoreError",
]
