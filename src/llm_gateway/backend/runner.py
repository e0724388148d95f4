"""
Backend subprocess ownership.

Each request gets its own ``BackendProcess``: spawned from an argument
vector (never through a shell) in a fresh process group, fed its prompt on
stdin, read incrementally from stdout and always reaped. Runners share no
mutable state, so any number of requests can run side by side.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections import deque
from collections.abc import AsyncIterator

from ..config import GatewaySettings
from ..errors import ErrorContext, ProcessFailedError, ProcessSpawnError, ProcessTimeoutError
from ..logging import StructuredLogger, get_logger
from ..types import TERMINAL_EVENTS, BackendEvent, BackendInvocation, Done, ErrorEvent, TextDelta
from .decoder import EventDecoder

READ_CHUNK_SIZE = 64 * 1024
NOT_FOUND_HINT = "Install it with: npm install -g @anthropic-ai/claude-code"


class SubprocessRunner:
    """Starts one backend process per invocation."""

    def __init__(self, settings: GatewaySettings) -> None:
        self.settings = settings

    async def spawn(
        self,
        invocation: BackendInvocation,
        *,
        logger: StructuredLogger | None = None,
    ) -> BackendProcess:
        log = logger or get_logger()
        env = {**os.environ, **invocation.env}

        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.argv,
                cwd=invocation.cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            missing = exc.filename or invocation.argv[0]
            if missing == invocation.cwd:
                message = f"Working directory not found: {invocation.cwd}"
            else:
                message = f"{invocation.argv[0]} CLI not found. {NOT_FOUND_HINT}"
            raise ProcessSpawnError(message, cause=exc) from exc
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to spawn {invocation.argv[0]}: {exc}", cause=exc) from exc

        log.info(
            "Backend process started",
            pid=process.pid,
            cwd=invocation.cwd,
            resumed=invocation.resume_session_id is not None,
        )
        return BackendProcess(process, invocation, self.settings, log.bind(pid=process.pid))


class BackendProcess:
    """One running backend process and the pipes attached to it."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        invocation: BackendInvocation,
        settings: GatewaySettings,
        logger: StructuredLogger,
    ) -> None:
        self._process = process
        self.invocation = invocation
        self.settings = settings
        self._log = logger
        self.pid = process.pid

        self._started_at = time.monotonic()
        self._last_activity = self._started_at
        self._stderr_tail: deque[str] = deque(maxlen=settings.stderr_tail_lines)
        self._terminating = False

        self._stdin_task = asyncio.create_task(self._write_stdin(invocation.stdin))
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started_at

    # ------------------------------------------------------------------
    # Pipes
    # ------------------------------------------------------------------

    async def _write_stdin(self, payload: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(payload)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            self._log.debug("Backend closed stdin before the prompt was written")
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                return
            self._last_activity = time.monotonic()
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                self._log.debug("backend stderr", line=text)

    def _next_deadline(self) -> tuple[float, ProcessTimeoutError]:
        """Seconds until the nearer ceiling, and the error raised when it passes."""
        now = time.monotonic()
        inactivity_left = self._last_activity + self.settings.inactivity_timeout - now
        error = ProcessTimeoutError(
            f"Backend produced no output for {self.settings.inactivity_timeout:g}s",
            timeout=self.settings.inactivity_timeout,
        )
        remaining = inactivity_left
        if self.settings.request_timeout is not None:
            wall_left = self._started_at + self.settings.request_timeout - now
            if wall_left < remaining:
                remaining = wall_left
                error = ProcessTimeoutError(
                    f"Backend exceeded the {self.settings.request_timeout:g}s request timeout",
                    timeout=self.settings.request_timeout,
                )
        return remaining, error

    async def read_chunks(self) -> AsyncIterator[bytes]:
        """Yield stdout bytes as they arrive; raises ProcessTimeoutError on either ceiling."""
        stdout = self._process.stdout
        if stdout is None:
            raise ProcessFailedError("Backend stdout is not attached", context=ErrorContext(pid=self.pid))
        while True:
            remaining, timeout_error = self._next_deadline()
            if remaining <= 0:
                raise timeout_error
            try:
                chunk = await asyncio.wait_for(stdout.read(READ_CHUNK_SIZE), timeout=remaining)
            except asyncio.TimeoutError:
                # stderr activity may have moved the inactivity deadline.
                continue
            if not chunk:
                return
            self._last_activity = time.monotonic()
            yield chunk

    # ------------------------------------------------------------------
    # Event sequence
    # ------------------------------------------------------------------

    async def events(self, decoder: EventDecoder) -> AsyncIterator[BackendEvent]:
        """
        Yield the decoded BackendEvent sequence for this process.

        The sequence always ends with exactly one Result or ErrorEvent followed
        by Done. Closing the iterator early (client disconnect) or hitting a
        timeout terminates the process group.
        """
        terminal_seen = False
        first_token = True

        try:
            try:
                async for chunk in self.read_chunks():
                    for event in decoder.feed(chunk):
                        if first_token and isinstance(event, TextDelta):
                            first_token = False
                            self._log.info(f"First token after {self.elapsed:.2f}s")
                        terminal_seen = terminal_seen or isinstance(event, TERMINAL_EVENTS)
                        yield event
                    if decoder.terminated:
                        break
            except ProcessTimeoutError as exc:
                self._log.warning(str(exc.message), elapsed=round(self.elapsed, 2))
                await self.terminate()
                exc.context = ErrorContext(pid=self.pid)
                yield ErrorEvent(message=exc.message, error=exc)
                yield Done()
                return

            if not decoder.terminated:
                for event in decoder.finish():
                    terminal_seen = terminal_seen or isinstance(event, TERMINAL_EVENTS)
                    yield event

            exit_code = await self.wait(timeout=self.settings.kill_grace_period)
            if exit_code is None:
                exit_code = await self.terminate()

            self._log.info(
                f"Backend process exited with code {exit_code} after {self.elapsed:.2f}s",
                exit_code=exit_code,
            )

            if not terminal_seen:
                # stderr reaches EOF once the process is gone; let the tail catch up.
                await asyncio.wait({self._stderr_task}, timeout=self.settings.kill_grace_period)
                message = f"Process exited with code {exit_code} without producing a response"
                tail = self.stderr_tail
                if tail:
                    message = f"{message}: {tail.splitlines()[-1]}"
                error = ProcessFailedError(
                    message,
                    exit_code=exit_code,
                    stderr_tail=tail or None,
                    context=ErrorContext(pid=self.pid),
                )
                yield ErrorEvent(message=message, error=error)

            yield Done()
        finally:
            await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit; returns None if the process is still running after ``timeout``."""
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def _signal_group(self, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.pid, sig)
            else:  # pragma: no cover - non-POSIX
                self._process.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    async def terminate(self) -> int:
        """SIGTERM the process group, escalate to SIGKILL after the grace period. Idempotent."""
        if self._process.returncode is not None:
            return self._process.returncode

        if not self._terminating:
            self._terminating = True
            self._log.info("Terminating backend process group")
            self._signal_group(signal.SIGTERM)

        exit_code = await self.wait(timeout=self.settings.kill_grace_period)
        if exit_code is None:
            self._log.warning("Backend ignored SIGTERM; killing process group")
            self._signal_group(signal.SIGKILL)
            exit_code = await self._process.wait()
        return exit_code

    async def close(self) -> None:
        """Terminate if still running and release the pipe tasks."""
        try:
            await self.terminate()
        finally:
            for task in (self._stdin_task, self._stderr_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(self._stdin_task, self._stderr_task, return_exceptions=True)


__all__ = ["SubprocessRunner", "BackendProcess", "READ_CHUNK_SIZE"]
