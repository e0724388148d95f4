"""
Structured Logging for llm-gateway.

This module provides:
- Structured JSON or text logging with consistent fields
- Per-request bound loggers for trace correlation
- Request/response log records and timing helpers
- A dictConfig for uvicorn that matches the gateway's format
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

# =============================================================================
# Log Record Types
# =============================================================================


@dataclass
class LogContext:
    """Context information attached to log records."""

    request_id: str | None = None
    protocol: str | None = None
    model: str | None = None
    operation: str | None = None
    pid: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in asdict(self).items() if v is not None and k != "extra"}
        d.update(self.extra)
        return d

    def with_update(self, **kwargs) -> LogContext:
        """Create a new context with updated values."""
        return LogContext(
            request_id=kwargs.pop("request_id", self.request_id),
            protocol=kwargs.pop("protocol", self.protocol),
            model=kwargs.pop("model", self.model),
            operation=kwargs.pop("operation", self.operation),
            pid=kwargs.pop("pid", self.pid),
            extra={**self.extra, **kwargs.pop("extra", {}), **kwargs},
        )


@dataclass
class RequestLog:
    """Log record for an incoming chat request."""

    request_id: str
    protocol: str
    model: str
    stream: bool

    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    message_count: int = 0
    max_tokens: int | None = None
    resumed: bool = False
    dropped_params: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and v != []}


@dataclass
class ResponseLog:
    """Log record for a finished chat request."""

    request_id: str
    protocol: str
    model: str

    success: bool = True
    status_code: int | None = None
    error: str | None = None

    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    duration_ms: float | None = None

    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger:
    """
    Logger with structured output and immutable bound context.

    Requests run concurrently on one event loop, so context is never mutated
    in place; ``bind`` returns a child logger that shares the stdlib logger.

    Example:
        ```python
        logger = get_logger()
        log = logger.bind(request_id="req_1a2b", protocol="openai")
        log.info("Spawning backend", argv=["claude", "--print"])
        ```
    """

    def __init__(
        self,
        name: str = "llm_gateway",
        level: str | None = None,
        json_output: bool = False,
        context: LogContext | None = None,
    ):
        self.name = name
        self.json_output = json_output
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(getattr(logging, level.upper()))
        self._context = context or LogContext()

    @property
    def context(self) -> LogContext:
        return self._context

    def bind(self, **kwargs) -> StructuredLogger:
        """Return a child logger with extra context fields."""
        return StructuredLogger(
            self.name,
            json_output=self.json_output,
            context=self._context.with_update(**kwargs),
        )

    def _log(
        self,
        level: int,
        message: str,
        event_type: str | None = None,
        data: dict[str, Any] | None = None,
        exc_info: bool = False,
    ) -> None:
        """Internal logging method."""
        if not self._logger.isEnabledFor(level):
            return

        record_data = {
            "message": message,
            **self._context.to_dict(),
        }

        if event_type:
            record_data["event_type"] = event_type

        if data:
            record_data.update(data)

        if self.json_output:
            self._logger.log(level, json.dumps(record_data, default=str), exc_info=exc_info)
        else:
            extras = " ".join(f"{k}={v}" for k, v in record_data.items() if k != "message")
            self._logger.log(level, f"{message} {extras}".rstrip(), exc_info=exc_info)

    def debug(self, message: str, **kwargs) -> None:
        self._log(logging.DEBUG, message, data=kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log(logging.INFO, message, data=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log(logging.WARNING, message, data=kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log(logging.ERROR, message, data=kwargs)

    def exception(self, message: str, **kwargs) -> None:
        self._log(logging.ERROR, message, data=kwargs, exc_info=True)

    # Typed logging methods

    def log_request(self, request: RequestLog) -> None:
        """Log an incoming chat request."""
        self._log(
            logging.INFO,
            f"{request.protocol} request model={request.model} streaming={request.stream}",
            event_type="request",
            data=request.to_dict(),
        )

    def log_response(self, response: ResponseLog) -> None:
        """Log a finished chat request."""
        level = logging.INFO if response.success else logging.WARNING
        message = "Request complete" if response.success else "Request failed"
        if response.duration_ms is not None:
            message += f" after {response.duration_ms / 1000:.2f}s"
        self._log(level, message, event_type="response", data=response.to_dict())

    def log_error(
        self,
        error: Exception,
        message: str | None = None,
        **kwargs,
    ) -> None:
        """Log an error with context."""
        error_data = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            **kwargs,
        }

        if hasattr(error, "code"):
            error_data["error_code"] = str(error.code.value)
        if hasattr(error, "http_status"):
            error_data["http_status"] = error.http_status

        self._log(
            logging.ERROR,
            message or f"Error: {error}",
            event_type="error",
            data=error_data,
        )


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }

        # Parse JSON message if present
        try:
            message_data = json.loads(record.getMessage())
            if isinstance(message_data, dict):
                log_data.update(message_data)
            else:
                log_data["message"] = record.getMessage()
        except (json.JSONDecodeError, TypeError):
            log_data["message"] = record.getMessage()

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        color = self.LEVEL_COLORS.get(record.levelname, "") if self.use_color else ""
        reset = self.RESET if color else ""

        line = f"{timestamp} {color}{record.levelname:8}{reset} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Utilities
# =============================================================================


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return uuid.uuid4().hex[:8]


def truncate_for_log(text: str, max_length: int = 200) -> str:
    """Truncate text for logging."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"... ({len(text)} chars total)"


@dataclass
class Timer:
    """Simple timer for measuring durations."""

    start_time: float = field(default_factory=time.perf_counter)
    end_time: float | None = None

    def stop(self) -> float:
        """Stop the timer and return duration in milliseconds."""
        self.end_time = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# =============================================================================
# Global Logger
# =============================================================================

_default_logger: StructuredLogger | None = None


def get_logger(name: str = "llm_gateway") -> StructuredLogger:
    """Get or create the structured logger."""
    global _default_logger
    if _default_logger is None or _default_logger.name != name:
        _default_logger = StructuredLogger(name)
    return _default_logger


def configure_logging(level: str = "INFO", json_output: bool = False) -> StructuredLogger:
    """Attach a stderr handler with the chosen format and reset the default logger."""
    global _default_logger
    stdlib_logger = logging.getLogger("llm_gateway")
    stdlib_logger.setLevel(getattr(logging, level.upper()))
    for handler in list(stdlib_logger.handlers):
        stdlib_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else TextFormatter(use_color=sys.stderr.isatty()))
    stdlib_logger.addHandler(handler)
    stdlib_logger.propagate = False
    _default_logger = StructuredLogger("llm_gateway", json_output=json_output)
    return _default_logger


def uvicorn_log_config(level: str = "INFO", json_output: bool = False) -> dict[str, Any]:
    """dictConfig for uvicorn's own loggers, formatted like the gateway's."""
    formatter = (
        {"()": "llm_gateway.logging.JSONFormatter"}
        if json_output
        else {"()": "llm_gateway.logging.TextFormatter", "use_color": False}
    )
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            name: {"handlers": ["console"], "level": level.upper(), "propagate": False}
            for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
        },
        "formatters": {"default": formatter},
    }


__all__ = [
    "LogContext",
    "RequestLog",
    "ResponseLog",
    "StructuredLogger",
    "JSONFormatter",
    "TextFormatter",
    "Timer",
    "generate_request_id",
    "truncate_for_log",
    "get_logger",
    "configure_logging",
    "uvicorn_log_config",
]
