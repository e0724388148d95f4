"""
HTTP front end.

A thin FastAPI application: it hands raw request bodies to the Gateway and
writes back whatever the Gateway returns. All protocol work lives in the
core; the routes here only choose the protocol and the response class.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .adapters import openai
from .backend import SubprocessRunner
from .config import GatewaySettings
from .errors import InvalidRequestError
from .gateway import Gateway, GatewayResponse, JSONResult
from .logging import generate_request_id, get_logger
from .models import list_models
from .sessions import SessionStore
from .types import Protocol

VERSION = "0.1.0"

STREAM_HEADERS = {
    "cache-control": "no-cache",
    "connection": "keep-alive",
    "x-accel-buffering": "no",
}


def to_http_response(result: GatewayResponse) -> Response:
    headers = {"x-request-id": result.request_id}
    if isinstance(result, JSONResult):
        return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)
    return StreamingResponse(
        result.frames,
        status_code=result.status_code,
        media_type="text/event-stream",
        headers={**STREAM_HEADERS, **headers},
    )


def create_app(
    settings: Optional[GatewaySettings] = None,
    *,
    sessions: Optional[SessionStore] = None,
    runner: Optional[SubprocessRunner] = None,
) -> FastAPI:
    """
    Build the application.

    The session store is loaded in the lifespan hook; pass a pre-loaded
    store when driving the app without running its lifespan (tests).
    """
    settings = settings or GatewaySettings.from_env()
    sessions = sessions if sessions is not None else SessionStore(settings.session_file)
    gateway = Gateway(settings, sessions, runner=runner)
    log = get_logger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loaded = sessions.load()
        log.info(
            f"llm-gateway listening on http://{settings.host}:{settings.port}",
            cwd=settings.resolved_cwd,
            sessions=loaded,
        )
        try:
            yield
        finally:
            log.info("llm-gateway shutting down")

    app = FastAPI(title="llm-gateway", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.gateway = gateway
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            body = {"error": {"message": f"Not found: {request.url.path}", "type": "invalid_request_error", "code": "not_found"}}
        else:
            _, body = openai.error_response(InvalidRequestError(str(exc.detail)))
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/health")
    async def health():
        return {"status": "ok", "uptime": round(time.monotonic() - app.state.started_at, 3)}

    @app.get("/v1/models")
    async def models():
        return {"object": "list", "data": list_models()}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        body = await request.body()
        result = await gateway.handle(Protocol.OPENAI, body, request_id=generate_request_id())
        return to_http_response(result)

    @app.post("/v1/messages")
    async def messages(request: Request) -> Response:
        body = await request.body()
        result = await gateway.handle(Protocol.ANTHROPIC, body, request_id=generate_request_id())
        return to_http_response(result)

    return app


__all__ = ["create_app", "to_http_response", "VERSION"]
