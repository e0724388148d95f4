"""
Shared test fixtures for llm-gateway tests.

This module provides:
- Settings wired to the fake backend executable (tests/fake_backend.py)
- Session store, gateway and HTTP client fixtures
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import httpx
import pytest

from llm_gateway.app import create_app
from llm_gateway.config import GatewaySettings
from llm_gateway.gateway import Gateway
from llm_gateway.sessions import SessionStore
from tests._testkit import FAKE_BACKEND


@pytest.fixture(autouse=True)
def clean_fake_env(monkeypatch):
    """No scripted backend behaviour leaks between tests."""
    for name in list(os.environ):
        if name.startswith("FAKE_BACKEND_") or name.startswith("GATEWAY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return GatewaySettings(
        cwd=str(tmp_path),
        backend_command=(sys.executable, str(FAKE_BACKEND)),
        session_file=tmp_path / "sessions.json",
        kill_grace_period=1.0,
        inactivity_timeout=30.0,
    )


@pytest.fixture
def record_file(tmp_path, monkeypatch) -> Path:
    """Path the fake backend writes its argv, stdin and env bounds to."""
    path = tmp_path / "invocation.json"
    monkeypatch.setenv("FAKE_BACKEND_RECORD", str(path))
    return path


@pytest.fixture
def sessions(settings) -> SessionStore:
    store = SessionStore(settings.session_file)
    store.load()
    return store


@pytest.fixture
def gateway(settings, sessions) -> Gateway:
    return Gateway(settings, sessions)


@pytest.fixture
async def client(settings, sessions):
    app = create_app(settings, sessions=sessions)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
