"""
Durable continuity-key -> backend-session-id map.

One ``SessionStore`` is built at startup and handed to every request path.
All mutations and file writes go through a single asyncio lock; the file is
replaced atomically so a crash mid-write never leaves a torn document. A
missing or unreadable file starts the store empty, and a failed write
degrades the store to in-memory operation for the rest of the process.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .concurrency import run_sync
from .errors import SessionStoreError
from .logging import get_logger


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionRecord:
    continuity_key: str
    backend_session_id: str
    created_at: int
    last_used_at: int
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> SessionRecord:
        backend_id = data.get("backend_session_id") or data.get("claude_session_id")
        if not isinstance(backend_id, str) or not backend_id:
            raise ValueError(f"record {key!r} has no backend session id")
        created = int(data.get("created_at", 0))
        return cls(
            continuity_key=key,
            backend_session_id=backend_id,
            created_at=created,
            last_used_at=int(data.get("last_used_at", created)),
            model=data.get("model"),
        )


class SessionStore:
    def __init__(self, path: Path | str | None) -> None:
        self.path = Path(path).expanduser() if path is not None else None
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._file_lock = threading.Lock()
        self._version = 0
        self._written_version = 0
        self._degraded = self.path is None
        self._log = get_logger().bind(operation="sessions")

    @property
    def degraded(self) -> bool:
        """True once the store has fallen back to memory-only operation."""
        return self._degraded

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def load(self) -> int:
        """Read the backing file. Never raises; returns the number of records loaded."""
        if self.path is None:
            return 0
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return 0
        except OSError as exc:
            self._log.log_error(
                SessionStoreError(f"Failed to read sessions file: {exc}", cause=exc),
                path=str(self.path),
            )
            return 0

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("sessions file must hold a JSON object")
        except ValueError as exc:
            self._log.log_error(
                SessionStoreError(f"Failed to parse sessions file: {exc}", cause=exc),
                path=str(self.path),
            )
            return 0

        records: dict[str, SessionRecord] = {}
        for key, value in data.items():
            if not isinstance(value, dict):
                continue
            try:
                records[key] = SessionRecord.from_dict(key, value)
            except (TypeError, ValueError) as exc:
                self._log.warning("Skipping malformed session record", key=key, reason=str(exc))
        self._records = records
        self._log.info(f"Loaded {len(records)} sessions", path=str(self.path))
        return len(records)

    def get(self, key: str) -> SessionRecord | None:
        return self._records.get(key)

    def lookup(self, key: str) -> str | None:
        """Return the backend session id recorded for ``key``, if any."""
        record = self._records.get(key)
        if record is None:
            return None
        record.last_used_at = now_ms()
        return record.backend_session_id

    async def record(self, key: str, backend_session_id: str, model: str | None = None) -> bool:
        """
        Create or overwrite the mapping for ``key`` and persist it.

        Returns False when the mapping is held in memory only (write failed
        now or earlier); the mapping itself is always updated.
        """
        async with self._lock:
            now = now_ms()
            existing = self._records.get(key)
            self._records[key] = SessionRecord(
                continuity_key=key,
                backend_session_id=backend_session_id,
                created_at=existing.created_at if existing else now,
                last_used_at=now,
                model=model or (existing.model if existing else None),
            )
            if self._degraded:
                return False

            self._version += 1
            version = self._version
            payload = json.dumps(
                {k: r.to_dict() for k, r in self._records.items()},
                indent=2,
                ensure_ascii=False,
            )
            try:
                await run_sync(self._write_atomic, payload, version)
            except OSError as exc:
                self._degraded = True
                self._log.log_error(
                    SessionStoreError(f"Failed to write sessions file: {exc}", cause=exc),
                    message="Session store write failed; continuing in memory only",
                    path=str(self.path),
                )
                return False
            return True

    def _write_atomic(self, payload: str, version: int) -> None:
        if self.path is None:
            raise SessionStoreError("Session store has no backing file")
        with self._file_lock:
            # A cancelled writer may finish after a newer snapshot landed.
            if version <= self._written_version:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
            try:
                tmp_path.write_text(payload, encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise
            self._written_version = version


__all__ = ["SessionRecord", "SessionStore", "now_ms"]
