"""
Configuration for llm-gateway.

This module provides typed configuration with:
- Dataclass-based settings with validation
- Environment variable loading (GATEWAY_ prefix)
- .env file support
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import find_dotenv, load_dotenv

LogFormat = Literal["text", "json"]

DEFAULT_SESSION_FILE = Path.home() / ".claude-code-cli-sessions.json"


@dataclass
class GatewaySettings:
    """Settings consumed by the gateway core and its HTTP front end."""

    # Listening socket
    host: str = "127.0.0.1"
    port: int = 8080

    # Backend process
    cwd: str = "."
    backend_command: tuple[str, ...] = ("claude",)
    permission_mode: str = "bypassPermissions"
    default_model: str = "claude-opus-4"

    # Limits
    request_timeout: Optional[float] = None
    inactivity_timeout: float = 30 * 60
    kill_grace_period: float = 5.0
    keepalive_interval: float = 15.0
    max_decode_errors: int = 10
    max_line_bytes: int = 16 * 1024 * 1024
    stderr_tail_lines: int = 50

    # Conversational state
    session_file: Path = field(default_factory=lambda: DEFAULT_SESSION_FILE)

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = "text"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if isinstance(self.session_file, str):
            self.session_file = Path(self.session_file).expanduser()
        if isinstance(self.backend_command, str):
            self.backend_command = tuple(shlex.split(self.backend_command))
        self.backend_command = tuple(self.backend_command)
        if not self.backend_command:
            raise ValueError("backend_command cannot be empty")
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.inactivity_timeout <= 0:
            raise ValueError("inactivity_timeout must be positive")
        if self.kill_grace_period < 0:
            raise ValueError("kill_grace_period cannot be negative")
        if self.keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")
        if self.max_decode_errors < 1:
            raise ValueError("max_decode_errors must be at least 1")
        self.log_level = self.log_level.upper()
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.log_level}")
        if self.log_format not in ("text", "json"):
            raise ValueError(f"Invalid log format: {self.log_format}")

    @property
    def resolved_cwd(self) -> str:
        """Absolute working directory for spawned processes."""
        path = Path(self.cwd).expanduser()
        try:
            return str(path.resolve(strict=True))
        except OSError:
            return str(path)

    @classmethod
    def from_env(cls, prefix: str = "GATEWAY_") -> GatewaySettings:
        """
        Load settings from environment variables.

        Example:
            GATEWAY_PORT=8080
            GATEWAY_CWD=/srv/workspace
            GATEWAY_BACKEND_COMMAND="claude"
            GATEWAY_REQUEST_TIMEOUT=600
        """
        values: dict[str, Any] = {}

        if host := os.getenv(f"{prefix}HOST"):
            values["host"] = host
        if port := os.getenv(f"{prefix}PORT"):
            values["port"] = int(port)
        if cwd := os.getenv(f"{prefix}CWD"):
            values["cwd"] = cwd
        if command := os.getenv(f"{prefix}BACKEND_COMMAND"):
            values["backend_command"] = command
        if mode := os.getenv(f"{prefix}PERMISSION_MODE"):
            values["permission_mode"] = mode
        if model := os.getenv(f"{prefix}DEFAULT_MODEL"):
            values["default_model"] = model

        if timeout := os.getenv(f"{prefix}REQUEST_TIMEOUT"):
            values["request_timeout"] = float(timeout)
        if inactivity := os.getenv(f"{prefix}INACTIVITY_TIMEOUT"):
            values["inactivity_timeout"] = float(inactivity)
        if grace := os.getenv(f"{prefix}KILL_GRACE_PERIOD"):
            values["kill_grace_period"] = float(grace)
        if keepalive := os.getenv(f"{prefix}KEEPALIVE_INTERVAL"):
            values["keepalive_interval"] = float(keepalive)
        if max_errors := os.getenv(f"{prefix}MAX_DECODE_ERRORS"):
            values["max_decode_errors"] = int(max_errors)

        if session_file := os.getenv(f"{prefix}SESSION_FILE"):
            values["session_file"] = session_file

        if level := os.getenv(f"{prefix}LOG_LEVEL"):
            values["log_level"] = level
        if log_format := os.getenv(f"{prefix}LOG_FORMAT"):
            values["log_format"] = log_format.lower()

        return cls(**values)

    def with_overrides(self, **kwargs: Any) -> GatewaySettings:
        """Return a copy with the non-None keyword values applied."""
        changes = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **changes)


def load_env(path: Optional[str] = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = ["GatewaySettings", "LogFormat", "DEFAULT_SESSION_FILE", "load_env"]
