"""
Command-line entry point.

Usage:
    llm-gateway [PORT] [--cwd DIR] [--host HOST] [--session-file PATH]
    python -m llm_gateway 8080 --cwd ~/projects/app
"""

from __future__ import annotations

import argparse
import errno
import socket
import subprocess
import sys
from typing import Optional, Sequence

import uvicorn

from .app import VERSION, create_app
from .backend.runner import NOT_FOUND_HINT
from .config import GatewaySettings, load_env
from .logging import StructuredLogger, configure_logging, uvicorn_log_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-gateway",
        description="OpenAI and Anthropic compatible API gateway for the claude CLI.",
    )
    parser.add_argument("port", nargs="?", type=int, default=None, help="Port to listen on (default 8080)")
    parser.add_argument("--cwd", default=None, help="Working directory for backend processes (default .)")
    parser.add_argument("--host", default=None, help="Interface to bind (default 127.0.0.1)")
    parser.add_argument("--session-file", default=None, help="Path of the continuity-key session map")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper)
    parser.add_argument("--log-format", default=None, choices=["text", "json"])
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def check_backend(settings: GatewaySettings, log: StructuredLogger) -> bool:
    """Run ``<backend> --version``; False if the executable cannot be started."""
    command = [*settings.backend_command, "--version"]
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=30)
    except FileNotFoundError:
        log.error(f"{settings.backend_command[0]} CLI not found. {NOT_FOUND_HINT}")
        return False
    except (OSError, subprocess.TimeoutExpired) as exc:
        log.error(f"Could not run {settings.backend_command[0]} --version: {exc}")
        return False

    version = completed.stdout.strip() or completed.stderr.strip()
    log.info(f"Found {settings.backend_command[0]} CLI: {version}")
    return True


def port_available(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                return False
            raise
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_env()

    try:
        settings = GatewaySettings.from_env().with_overrides(
            port=args.port,
            cwd=args.cwd,
            host=args.host,
            session_file=args.session_file,
            log_level=args.log_level,
            log_format=args.log_format,
        )
    except ValueError as exc:
        print(f"llm-gateway: invalid configuration: {exc}", file=sys.stderr)
        return 2

    json_logs = settings.log_format == "json"
    log = configure_logging(settings.log_level, json_output=json_logs)

    if not check_backend(settings, log):
        return 1

    try:
        if not port_available(settings.host, settings.port):
            log.error(f"Port {settings.port} is already in use")
            return 1
    except OSError as exc:
        log.error(f"Failed to bind to {settings.host}:{settings.port}: {exc}")
        return 1

    log.info(f"llm-gateway {VERSION}", listening=f"http://{settings.host}:{settings.port}", cwd=settings.resolved_cwd)
    log.info("  GET  /health              - Health check")
    log.info("  GET  /v1/models           - List models")
    log.info("  POST /v1/chat/completions - Chat completions (OpenAI)")
    log.info("  POST /v1/messages         - Messages (Anthropic)")

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=uvicorn_log_config(settings.log_level, json_output=json_logs),
    )
    return 0


__all__ = ["build_parser", "check_backend", "port_available", "main"]
