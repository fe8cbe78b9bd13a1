"""
Tests for the fix-attempt stores and the pending-issues file.

Covers:
  - Backend parity: memory, json and sqlite answer identically
  - JSON document layout and reload across instances
  - SQLite failed_methods aggregation and reopen
  - Storage failures surface as StorageError
  - create_fix_store backend selection
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import orjson
import pytest

from pitboss.config import MemoryConfig
from pitboss.governor.errors import StorageError
from pitboss.governor.stores import (
    FixAttemptStore,
    InMemoryFixStore,
    JsonFixStore,
    PendingIssueFile,
    SqliteFixStore,
    create_fix_store,
)
from pitboss.governor.types import FixAttempt, FixOutcome

_T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _make_attempt(
    issue_type: str = "POT_MISMATCH",
    fix: str = "reset pot",
    outcome: FixOutcome = FixOutcome.FAILURE,
    offset_s: int = 0,
    details: dict | None = None,
) -> FixAttempt:
    return FixAttempt(
        issue_type=issue_type,
        fix_description=fix,
        outcome=outcome,
        timestamp=_T0 + timedelta(seconds=offset_s),
        details=details or {},
    )


def _make_store(backend: str, tmp_path: Path) -> FixAttemptStore:
    if backend == "memory":
        return InMemoryFixStore()
    if backend == "json":
        return JsonFixStore(tmp_path / "fix-attempts.json")
    return SqliteFixStore(tmp_path / "fix-attempts.sqlite3")


_SCRIPT = [
    ("POT_MISMATCH", "reset pot", FixOutcome.FAILURE),
    ("POT_MISMATCH", "recalculate", FixOutcome.SUCCESS),
    ("CHIPS_LOST", "audit ledger", FixOutcome.FAILURE),
    ("POT_MISMATCH", "reset pot", FixOutcome.FAILURE),
]


class TestBackendParity:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "json", "sqlite"])
    async def test_same_answers(self, backend: str, tmp_path: Path):
        store = _make_store(backend, tmp_path)
        await store.initialize()
        for i, (issue_type, fix, outcome) in enumerate(_SCRIPT):
            await store.append(_make_attempt(issue_type, fix, outcome, offset_s=i))

        attempts = await store.attempts_for("POT_MISMATCH")
        assert [(a.fix_description, a.outcome) for a in attempts] == [
            ("reset pot", FixOutcome.FAILURE),
            ("recalculate", FixOutcome.SUCCESS),
            ("reset pot", FixOutcome.FAILURE),
        ]
        assert attempts[1].timestamp == _T0 + timedelta(seconds=1)
        assert await store.issue_types() == ["POT_MISMATCH", "CHIPS_LOST"]
        assert await store.failed_method_counts("POT_MISMATCH") == {"reset pot": 2}
        assert await store.attempts_for("UNKNOWN") == []
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "json", "sqlite"])
    async def test_details_round_trip(self, backend: str, tmp_path: Path):
        store = _make_store(backend, tmp_path)
        await store.initialize()
        await store.append(_make_attempt(details={"file": "pot.js", "line": 42}))
        attempts = await store.attempts_for("POT_MISMATCH")
        assert attempts[0].details == {"file": "pot.js", "line": 42}
        await store.close()


class TestJsonFixStore:
    @pytest.mark.asyncio
    async def test_document_layout(self, tmp_path: Path):
        path = tmp_path / "fix-attempts.json"
        store = JsonFixStore(path)
        await store.initialize()
        await store.append(_make_attempt(outcome=FixOutcome.FAILURE))
        await store.append(_make_attempt(fix="recalculate", outcome=FixOutcome.SUCCESS, offset_s=5))

        doc = orjson.loads(path.read_bytes())
        entry = doc["POT_MISMATCH"]
        assert entry["successCount"] == 1
        assert entry["failureCount"] == 1
        assert entry["attempts"][0] == {
            "fixAttempt": "reset pot",
            "success": False,
            "timestamp": _T0.isoformat(),
        }
        assert entry["lastAttempt"] == (_T0 + timedelta(seconds=5)).isoformat()

    @pytest.mark.asyncio
    async def test_reload(self, tmp_path: Path):
        path = tmp_path / "fix-attempts.json"
        first = JsonFixStore(path)
        await first.initialize()
        await first.append(_make_attempt())

        second = JsonFixStore(path)
        await second.initialize()
        assert len(await second.attempts_for("POT_MISMATCH")) == 1

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path):
        store = JsonFixStore(tmp_path / "nothing-here.json")
        await store.initialize()
        assert await store.issue_types() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_storage_error(self, tmp_path: Path):
        path = tmp_path / "fix-attempts.json"
        path.write_text("{ not json")
        with pytest.raises(StorageError):
            await JsonFixStore(path).initialize()

    @pytest.mark.asyncio
    async def test_non_object_document_raises(self, tmp_path: Path):
        path = tmp_path / "fix-attempts.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(StorageError):
            await JsonFixStore(path).initialize()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "doc",
        [
            {"POT_MISMATCH": ["reset pot"]},
            {"POT_MISMATCH": {"attempts": "reset pot"}},
            {"POT_MISMATCH": {"attempts": ["reset pot"]}},
        ],
    )
    async def test_malformed_entry_raises_storage_error(self, tmp_path: Path, doc: dict):
        path = tmp_path / "fix-attempts.json"
        path.write_bytes(orjson.dumps(doc))
        with pytest.raises(StorageError):
            await JsonFixStore(path).initialize()

    @pytest.mark.asyncio
    async def test_entry_without_attempts_is_usable(self, tmp_path: Path):
        path = tmp_path / "fix-attempts.json"
        path.write_bytes(orjson.dumps({"POT_MISMATCH": {"successCount": 0}}))
        store = JsonFixStore(path)
        await store.initialize()
        assert await store.attempts_for("POT_MISMATCH") == []
        await store.append(_make_attempt())
        assert len(await store.attempts_for("POT_MISMATCH")) == 1

    @pytest.mark.asyncio
    async def test_write_failure_rolls_back(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = JsonFixStore(blocker / "fix-attempts.json")
        await store.initialize()
        with pytest.raises(StorageError):
            await store.append(_make_attempt())
        assert await store.attempts_for("POT_MISMATCH") == []
        assert await store.issue_types() == []


class TestSqliteFixStore:
    @pytest.mark.asyncio
    async def test_reopen_keeps_history(self, tmp_path: Path):
        path = tmp_path / "db" / "fix.sqlite3"
        store = SqliteFixStore(path)
        await store.initialize()
        await store.append(_make_attempt())
        await store.append(_make_attempt(offset_s=1))
        await store.close()

        reopened = SqliteFixStore(path)
        await reopened.initialize()
        assert len(await reopened.attempts_for("POT_MISMATCH")) == 2
        assert await reopened.failed_method_counts("POT_MISMATCH") == {"reset pot": 2}
        await reopened.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        store = SqliteFixStore(":memory:")
        await store.append(_make_attempt(outcome=FixOutcome.SUCCESS))
        assert await store.failed_method_counts("POT_MISMATCH") == {}
        assert len(await store.attempts_for("POT_MISMATCH")) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path: Path):
        store = SqliteFixStore(tmp_path / "fix.sqlite3")
        await store.initialize()
        await store.close()
        await store.close()


class TestCreateFixStore:
    def test_backend_selection(self, tmp_path: Path):
        assert isinstance(create_fix_store(MemoryConfig(backend="memory")), InMemoryFixStore)
        assert isinstance(
            create_fix_store(MemoryConfig(backend="SQLite", sqlite_path=str(tmp_path / "x.db"))),
            SqliteFixStore,
        )
        assert isinstance(
            create_fix_store(MemoryConfig(backend="json", json_path=str(tmp_path / "x.json"))),
            JsonFixStore,
        )


class TestPendingIssueFile:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path):
        pending = PendingIssueFile(tmp_path / "logs" / "pending-issues.json")
        await pending.save([{"id": "abc", "type": "POT_MISMATCH"}])

        doc = orjson.loads(pending.path.read_bytes())
        assert doc["count"] == 1
        assert "lastUpdated" in doc
        assert await pending.load() == [{"id": "abc", "type": "POT_MISMATCH"}]

    @pytest.mark.asyncio
    async def test_missing_file_loads_empty(self, tmp_path: Path):
        assert await PendingIssueFile(tmp_path / "none.json").load() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path: Path):
        path = tmp_path / "pending.json"
        path.write_text("{{{")
        with pytest.raises(StorageError):
            await PendingIssueFile(path).load()
