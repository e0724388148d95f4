"""
Tests for the continuity-key session store.
"""

import asyncio
import json

import pytest

from llm_gateway.errors import SessionStoreError
from llm_gateway.sessions import SessionRecord, SessionStore


class TestLoad:
    """Test startup loading."""

    def test_missing_file_starts_empty(self, tmp_path):
        store = SessionStore(tmp_path / "absent.json")

        assert store.load() == 0
        assert len(store) == 0
        assert not store.degraded

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json")
        store = SessionStore(path)

        assert store.load() == 0
        assert store.lookup("user-1") is None

    def test_loads_records_and_legacy_keys(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(
            json.dumps(
                {
                    "user-1": {"backend_session_id": "sess-a", "created_at": 1, "last_used_at": 2},
                    "user-2": {"claude_session_id": "sess-b", "created_at": 3, "last_used_at": 4},
                    "broken": {"created_at": 5},
                    "not-a-record": "sess-c",
                }
            )
        )
        store = SessionStore(path)

        assert store.load() == 2
        assert store.lookup("user-1") == "sess-a"
        assert store.lookup("user-2") == "sess-b"
        assert "broken" not in store


class TestLookupAndRecord:
    """Test the key -> backend session mapping."""

    async def test_record_then_lookup(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")

        assert await store.record("user-1", "sess-a", model="claude-opus-4") is True

        assert store.lookup("user-1") == "sess-a"
        assert store.get("user-1").model == "claude-opus-4"

    async def test_repeated_lookup_is_stable(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        await store.record("user-1", "sess-a")

        assert [store.lookup("user-1") for _ in range(5)] == ["sess-a"] * 5

    async def test_overwrite_keeps_created_at(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        await store.record("user-1", "sess-a")
        created = store.get("user-1").created_at

        await store.record("user-1", "sess-b")

        assert store.lookup("user-1") == "sess-b"
        assert store.get("user-1").created_at == created
        assert len(store) == 1

    async def test_persisted_and_reloaded(self, tmp_path):
        path = tmp_path / "nested" / "sessions.json"
        store = SessionStore(path)
        await store.record("user-1", "sess-a", model="claude-sonnet-4")

        reloaded = SessionStore(path)
        reloaded.load()

        assert reloaded.lookup("user-1") == "sess-a"
        assert reloaded.get("user-1").model == "claude-sonnet-4"

    async def test_concurrent_records_leave_valid_file(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = SessionStore(path)

        await asyncio.gather(*(store.record(f"user-{i % 10}", f"sess-{i}") for i in range(50)))

        data = json.loads(path.read_text())
        assert set(data) == {f"user-{i}" for i in range(10)}
        for key, value in data.items():
            assert value["backend_session_id"] == store.lookup(key)
        assert not list(tmp_path.glob("*.tmp"))


class TestDegradedMode:
    """A failed write keeps the mapping in memory."""

    async def test_write_failure_degrades(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = SessionStore(blocker / "sessions.json")

        assert await store.record("user-1", "sess-a") is False
        assert store.degraded
        assert store.lookup("user-1") == "sess-a"

        assert await store.record("user-1", "sess-b") is False
        assert store.lookup("user-1") == "sess-b"

    async def test_no_path_is_memory_only(self):
        store = SessionStore(None)

        assert store.load() == 0
        assert await store.record("user-1", "sess-a") is False
        assert store.lookup("user-1") == "sess-a"

    def test_write_without_path_raises(self):
        store = SessionStore(None)

        with pytest.raises(SessionStoreError, match="no backing file"):
            store._write_atomic("{}", 1)


class TestSessionRecord:
    def test_round_trip(self):
        record = SessionRecord("k", "sess", created_at=1, last_used_at=2, model="m")

        assert SessionRecord.from_dict("k", record.to_dict()) == record

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            SessionRecord.from_dict("k", {"created_at": 1})
