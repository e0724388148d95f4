"""
Error taxonomy for llm-gateway.

This module provides a hierarchical exception system with:
- Error codes for programmatic handling
- HTTP status classification (client vs backend failures)
- Structured context for debugging
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the gateway."""

    # Request errors (1xxx)
    INVALID_REQUEST = "ERR_1000"
    UNKNOWN_MODEL = "ERR_1001"

    # Backend process errors (2xxx)
    PROCESS_ERROR = "ERR_2000"
    PROCESS_SPAWN_FAILED = "ERR_2001"
    PROCESS_TIMEOUT = "ERR_2002"
    PROCESS_FAILED = "ERR_2003"
    DECODE_ERROR = "ERR_2004"

    # Session store errors (3xxx)
    SESSION_STORE_ERROR = "ERR_3000"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "ERR_9000"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    request_id: str | None = None
    model: str | None = None
    protocol: str | None = None
    pid: int | None = None
    exit_code: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "model": self.model,
            "protocol": self.protocol,
            "pid": self.pid,
            "exit_code": self.exit_code,
            **self.extra,
        }


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        http_status: Status used when the error is rendered as a response
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        http_status: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.request_id:
            parts.append(f"(request_id={self.context.request_id})")
        return " ".join(parts)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.http_status < 500

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "http_status": self.http_status,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Request Errors
# =============================================================================


class InvalidRequestError(GatewayError):
    """Request body is malformed or violates the protocol's schema."""

    code = ErrorCode.INVALID_REQUEST
    http_status = 400

    def __init__(
        self,
        message: str = "Invalid request",
        *,
        param: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.param = param


class UnknownModelError(GatewayError):
    """Requested model does not resolve to any canonical model."""

    code = ErrorCode.UNKNOWN_MODEL
    http_status = 404

    def __init__(
        self,
        message: str = "Model not found",
        *,
        model: str | None = None,
        **kwargs,
    ):
        if model is not None:
            message = f"The model '{model}' does not exist or is not supported"
        super().__init__(message, **kwargs)
        self.model = model


# =============================================================================
# Backend Process Errors
# =============================================================================


class ProcessError(GatewayError):
    """Base class for failures of the backend process."""

    code = ErrorCode.PROCESS_ERROR
    http_status = 500


class ProcessSpawnError(ProcessError):
    """The backend executable could not be started."""

    code = ErrorCode.PROCESS_SPAWN_FAILED

    def __init__(self, message: str = "Backend process could not be started", **kwargs):
        super().__init__(message, **kwargs)


class ProcessTimeoutError(ProcessError):
    """The backend exceeded its wall-clock or inactivity ceiling."""

    code = ErrorCode.PROCESS_TIMEOUT
    http_status = 504

    def __init__(
        self,
        message: str = "Backend process timed out",
        *,
        timeout: float | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ProcessFailedError(ProcessError):
    """The backend ended without producing a terminal event, or reported failure."""

    code = ErrorCode.PROCESS_FAILED

    def __init__(
        self,
        message: str = "Backend process failed",
        *,
        exit_code: int | None = None,
        stderr_tail: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        if exit_code is not None:
            self.context.exit_code = exit_code


class DecodeError(ProcessError):
    """One line of backend output could not be decoded."""

    code = ErrorCode.DECODE_ERROR

    def __init__(
        self,
        message: str = "Could not decode backend output",
        *,
        line: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.line = line


# =============================================================================
# Session Store Errors
# =============================================================================


class SessionStoreError(GatewayError):
    """The session backing file could not be read or written. Never fatal."""

    code = ErrorCode.SESSION_STORE_ERROR


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "GatewayError",
    "InvalidRequestError",
    "UnknownModelError",
    "ProcessError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProcessFailedError",
    "DecodeError",
    "SessionStoreError",
]
