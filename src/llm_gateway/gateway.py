"""
Per-request orchestration.

``Gateway.handle`` runs one request end to end: parse and resolve, look up
the continuity key, spawn the backend, then either accumulate the events
into one JSON body or hand back an async iterator of SSE frames. Every
failure is rendered in the caller's protocol; nothing raised here escapes
to the HTTP layer.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from .adapters import anthropic, openai
from .adapters.base import KEEPALIVE_FRAME, accumulate_stream
from .backend import EventDecoder, SubprocessRunner, build_invocation
from .config import GatewaySettings
from .errors import GatewayError, InvalidRequestError, ProcessFailedError
from .logging import RequestLog, ResponseLog, StructuredLogger, Timer, generate_request_id, get_logger
from .sessions import SessionStore
from .types import (
    BackendEvent,
    ChatRequest,
    Done,
    ErrorEvent,
    NormalizedResponse,
    Protocol,
    Result,
    Started,
    UsageReport,
)

# =============================================================================
# Results
# =============================================================================


@dataclass
class JSONResult:
    status_code: int
    body: dict[str, Any]
    request_id: str


@dataclass
class StreamResult:
    frames: AsyncIterator[str]
    request_id: str
    status_code: int = 200


GatewayResponse = Union[JSONResult, StreamResult]


@dataclass(frozen=True)
class ProtocolAdapter:
    """The four per-protocol functions the orchestrator needs."""

    protocol: Protocol
    parse_request: Callable[[Any, GatewaySettings], ChatRequest]
    render_response: Callable[[NormalizedResponse], dict[str, Any]]
    error_response: Callable[[Exception], tuple[int, dict[str, Any]]]
    transducer: Callable[[str, ChatRequest], Any]


ADAPTERS: dict[Protocol, ProtocolAdapter] = {
    Protocol.OPENAI: ProtocolAdapter(
        protocol=Protocol.OPENAI,
        parse_request=openai.parse_request,
        render_response=openai.render_response,
        error_response=openai.error_response,
        transducer=lambda request_id, request: openai.OpenAIStreamTransducer(
            request_id, request.model, include_usage=request.include_usage
        ),
    ),
    Protocol.ANTHROPIC: ProtocolAdapter(
        protocol=Protocol.ANTHROPIC,
        parse_request=anthropic.parse_request,
        render_response=anthropic.render_response,
        error_response=anthropic.error_response,
        transducer=lambda request_id, request: anthropic.AnthropicStreamTransducer(request_id, request.model),
    ),
}


@dataclass
class _Outcome:
    """What a streamed request ended with, for the response log."""

    stop_reason: str | None = None
    usage: UsageReport = field(default_factory=UsageReport)
    error: GatewayError | None = None

    def observe(self, event: BackendEvent) -> None:
        if isinstance(event, UsageReport):
            self.usage = event
        elif isinstance(event, Result):
            self.stop_reason = event.stop_reason.value
        elif isinstance(event, ErrorEvent):
            self.error = event.error or ProcessFailedError(event.message)


def decode_body(raw: bytes | str) -> Any:
    """Parse a raw request body; malformed JSON is an InvalidRequestError."""
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidRequestError(f"Request body is not valid JSON: {exc}", cause=exc) from None


# =============================================================================
# Orchestrator
# =============================================================================


class Gateway:
    """
    Wires the adapters, session store and subprocess runner for each request.

    The only state shared between requests is the SessionStore handle; each
    request owns its process, decoder and transducer.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        sessions: SessionStore,
        runner: SubprocessRunner | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.runner = runner or SubprocessRunner(settings)
        self._log = logger or get_logger()

    async def handle(
        self,
        protocol: Protocol,
        body: Any,
        request_id: str | None = None,
    ) -> GatewayResponse:
        """Run one request. ``body`` is a parsed JSON value or the raw bytes."""
        request_id = request_id or generate_request_id()
        adapter = ADAPTERS[protocol]
        log = self._log.bind(request_id=request_id, protocol=protocol.value)
        timer = Timer()

        try:
            return await self._handle(adapter, body, request_id, log, timer)
        except GatewayError as exc:
            return self._error(adapter, exc, request_id, log, timer)
        except Exception as exc:
            log.exception("Unhandled error while processing request", error=str(exc))
            return self._error(adapter, exc, request_id, log, timer)

    async def _handle(
        self,
        adapter: ProtocolAdapter,
        body: Any,
        request_id: str,
        log: StructuredLogger,
        timer: Timer,
    ) -> GatewayResponse:
        if isinstance(body, (bytes, bytearray, str)):
            body = decode_body(body)

        request = adapter.parse_request(body, self.settings)
        log = log.bind(model=request.model.key)

        resume_id = self.sessions.lookup(request.continuity_key) if request.continuity_key else None
        log.log_request(
            RequestLog(
                request_id=request_id,
                protocol=adapter.protocol.value,
                model=request.model.key,
                stream=request.stream,
                message_count=len(request.turns),
                max_tokens=request.max_tokens,
                resumed=resume_id is not None,
                dropped_params=list(request.dropped_params),
            )
        )

        invocation = build_invocation(request, self.settings, resume_id)
        process = await self.runner.spawn(invocation, logger=log)
        decoder = EventDecoder(
            max_errors=self.settings.max_decode_errors,
            max_line_bytes=self.settings.max_line_bytes,
            logger=log.bind(pid=process.pid),
        )
        events = self._recording(process.events(decoder), request, log)

        if request.stream:
            return StreamResult(self._stream(adapter, events, request, request_id, log, timer), request_id)

        try:
            response = await accumulate_stream(events, request_id, request.model)
        finally:
            await events.aclose()
        log.log_response(
            ResponseLog(
                request_id=request_id,
                protocol=adapter.protocol.value,
                model=response.model,
                status_code=200,
                duration_ms=timer.stop(),
                stop_reason=response.stop_reason.value,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )
        )
        return JSONResult(200, adapter.render_response(response), request_id)

    def _error(
        self,
        adapter: ProtocolAdapter,
        exc: Exception,
        request_id: str,
        log: StructuredLogger,
        timer: Timer,
    ) -> JSONResult:
        if isinstance(exc, GatewayError):
            exc.context.request_id = exc.context.request_id or request_id
            exc.context.protocol = exc.context.protocol or adapter.protocol.value
            if not exc.is_client_error:
                log.log_error(exc)
        status, body = adapter.error_response(exc)
        log.log_response(
            ResponseLog(
                request_id=request_id,
                protocol=adapter.protocol.value,
                model=log.context.model or "",
                success=False,
                status_code=status,
                error=exc.message if isinstance(exc, GatewayError) else "Internal server error",
                duration_ms=timer.stop(),
            )
        )
        return JSONResult(status, body, request_id)

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    async def _recording(
        self,
        events: AsyncIterator[BackendEvent],
        request: ChatRequest,
        log: StructuredLogger,
    ) -> AsyncIterator[BackendEvent]:
        """Pass events through, recording each new backend session id for the continuity key."""
        recorded: str | None = None
        try:
            async for event in events:
                session_id = event.session_id if isinstance(event, (Started, Result)) else None
                if request.continuity_key and session_id and session_id != recorded:
                    recorded = session_id
                    persisted = await self.sessions.record(request.continuity_key, session_id, request.model.key)
                    log.debug("Recorded backend session", session_id=session_id, persisted=persisted)
                yield event
        finally:
            await events.aclose()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(
        self,
        adapter: ProtocolAdapter,
        events: AsyncIterator[BackendEvent],
        request: ChatRequest,
        request_id: str,
        log: StructuredLogger,
        timer: Timer,
    ) -> AsyncIterator[str]:
        """
        SSE frames for one streamed request.

        The next event is awaited as a separate task so a keep-alive comment
        can be sent whenever the backend is silent for ``keepalive_interval``.
        Closing this generator (client disconnect) cancels that task, which
        terminates the backend process group.
        """
        transducer = adapter.transducer(request_id, request)
        outcome = _Outcome()
        pending: asyncio.Task | None = None
        completed = False

        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(events.__anext__())
                done, _ = await asyncio.wait({pending}, timeout=self.settings.keepalive_interval)
                if not done:
                    yield KEEPALIVE_FRAME
                    continue

                task, pending = pending, None
                try:
                    event = task.result()
                except StopAsyncIteration:
                    break

                outcome.observe(event)
                for frame in transducer.feed(event):
                    yield frame
                if isinstance(event, Done):
                    break

            for frame in transducer.finish():
                yield frame
            completed = True
        except GatewayError as exc:
            outcome.error = exc
            log.log_error(exc, message="Backend stream failed")
            for frame in transducer.fail(exc):
                yield frame
            completed = True
        except Exception as exc:
            outcome.error = GatewayError(str(exc), cause=exc)
            log.exception("Unhandled error while streaming", error=str(exc))
            for frame in transducer.fail(exc):
                yield frame
            completed = True
        finally:
            if not completed:
                log.info("Client disconnected; stopping backend")
            await asyncio.shield(self._close_stream(events, pending))
            log.log_response(
                ResponseLog(
                    request_id=request_id,
                    protocol=adapter.protocol.value,
                    model=transducer.model.key,
                    success=completed and outcome.error is None,
                    status_code=200,
                    error=outcome.error.message if outcome.error else (None if completed else "client disconnected"),
                    duration_ms=timer.stop(),
                    stop_reason=outcome.stop_reason,
                    input_tokens=outcome.usage.input_tokens,
                    output_tokens=outcome.usage.output_tokens,
                )
            )

    @staticmethod
    async def _close_stream(events: AsyncIterator[BackendEvent], pending: asyncio.Task | None) -> None:
        if pending is not None:
            if not pending.done():
                pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await events.aclose()


__all__ = [
    "ADAPTERS",
    "Gateway",
    "GatewayResponse",
    "JSONResult",
    "ProtocolAdapter",
    "StreamResult",
    "decode_body",
]
