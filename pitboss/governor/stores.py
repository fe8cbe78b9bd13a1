"""
PitBoss — Persistence Backends

One contract for the fix-attempt history, three implementations:
  memory  — process-local, for tests and throwaway runs
  json    — single document keyed by issue type (the tracker file format)
  sqlite  — fix_attempts + failed_methods tables

Plus the pending-issues document the ledger is mirrored into.

All blocking I/O runs in a worker thread. Any read or write failure is
raised as StorageError; nothing here swallows it.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
from abc import ABC, abstractmethod
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
import structlog

from pitboss.governor.errors import StorageError
from pitboss.governor.types import FixAttempt, FixOutcome
from pitboss.primitives.common import utc_now

if TYPE_CHECKING:
    from pitboss.config import MemoryConfig

logger = structlog.get_logger()


def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        f.write(payload)
    os.replace(tmp, path)


def _read_document(path: Path) -> Any:
    if not path.exists():
        return None
    raw = path.read_bytes()
    if not raw.strip():
        return None
    return orjson.loads(raw)


# ─── Fix Attempt Stores ──────────────────────────────────────────


class FixAttemptStore(ABC):
    """
    Append-only history of remedies per issue type. Attempts come back
    in recording order.
    """

    backend: str = "abstract"

    async def initialize(self) -> None:
        """Open connections / load documents. Default: nothing to do."""

    @abstractmethod
    async def append(self, attempt: FixAttempt) -> None:
        ...

    @abstractmethod
    async def attempts_for(self, issue_type: str) -> list[FixAttempt]:
        ...

    @abstractmethod
    async def issue_types(self) -> list[str]:
        ...

    async def failed_method_counts(self, issue_type: str) -> dict[str, int]:
        """How often each remedy failed for this issue type."""
        counts: Counter[str] = Counter(
            a.fix_description for a in await self.attempts_for(issue_type) if not a.succeeded
        )
        return dict(counts)

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""


class InMemoryFixStore(FixAttemptStore):
    backend = "memory"

    def __init__(self) -> None:
        self._attempts: dict[str, list[FixAttempt]] = {}

    async def append(self, attempt: FixAttempt) -> None:
        self._attempts.setdefault(attempt.issue_type, []).append(attempt)

    async def attempts_for(self, issue_type: str) -> list[FixAttempt]:
        return list(self._attempts.get(issue_type, []))

    async def issue_types(self) -> list[str]:
        return list(self._attempts)


class JsonFixStore(FixAttemptStore):
    """
    Document layout:

        {
          "<issue type>": {
            "attempts": [{"fixAttempt": str, "success": bool, "timestamp": iso, "details": {}}],
            "lastAttempt": iso,
            "successCount": int,
            "failureCount": int
          }
        }

    The whole document is rewritten atomically on every append.
    """

    backend = "json"

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._doc: dict[str, dict[str, Any]] = {}
        self._write_lock = asyncio.Lock()
        self._loaded = False
        self._logger = logger.bind(system="governor", component="json_fix_store")

    async def initialize(self) -> None:
        try:
            doc = await asyncio.to_thread(_read_document, self._path)
        except (OSError, orjson.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read fix history {self._path}: {exc}") from exc
        if doc is not None and not isinstance(doc, dict):
            raise StorageError(f"Fix history {self._path} is not a JSON object")
        for issue_type, entry in (doc or {}).items():
            if not isinstance(entry, dict) or not isinstance(entry.get("attempts", []), list):
                raise StorageError(
                    f"Fix history {self._path}: entry {issue_type!r} has no attempts list"
                )
            if not all(isinstance(raw, dict) for raw in entry.get("attempts", [])):
                raise StorageError(
                    f"Fix history {self._path}: entry {issue_type!r} has a malformed attempt"
                )
            entry.setdefault("attempts", [])
        self._doc = doc or {}
        self._loaded = True
        self._logger.info("fix_history_loaded", path=str(self._path), issue_types=len(self._doc))

    async def append(self, attempt: FixAttempt) -> None:
        if not self._loaded:
            await self.initialize()
        async with self._write_lock:
            entry = self._doc.setdefault(
                attempt.issue_type,
                {"attempts": [], "lastAttempt": None, "successCount": 0, "failureCount": 0},
            )
            entry["attempts"].append(attempt.summary())
            entry["lastAttempt"] = attempt.timestamp.isoformat()
            if attempt.succeeded:
                entry["successCount"] = entry.get("successCount", 0) + 1
            else:
                entry["failureCount"] = entry.get("failureCount", 0) + 1
            payload = orjson.dumps(self._doc, option=orjson.OPT_INDENT_2)
            try:
                await asyncio.to_thread(_atomic_write, self._path, payload)
            except OSError as exc:
                # Keep memory and disk in step: undo the in-memory append
                entry["attempts"].pop()
                key = "successCount" if attempt.succeeded else "failureCount"
                entry[key] -= 1
                if not entry["attempts"]:
                    del self._doc[attempt.issue_type]
                raise StorageError(f"Cannot write fix history {self._path}: {exc}") from exc

    async def attempts_for(self, issue_type: str) -> list[FixAttempt]:
        if not self._loaded:
            await self.initialize()
        entry = self._doc.get(issue_type)
        if not entry:
            return []
        attempts: list[FixAttempt] = []
        for raw in entry.get("attempts", []):
            attempts.append(
                FixAttempt(
                    issue_type=issue_type,
                    fix_description=str(raw.get("fixAttempt", "")),
                    outcome=FixOutcome.SUCCESS if raw.get("success") else FixOutcome.FAILURE,
                    timestamp=raw.get("timestamp") or utc_now(),
                    details=raw.get("details") or {},
                )
            )
        return attempts

    async def issue_types(self) -> list[str]:
        if not self._loaded:
            await self.initialize()
        return list(self._doc)


class SqliteFixStore(FixAttemptStore):
    """
    Relational backend. Every attempt is a row in fix_attempts; every
    failure also bumps failed_methods so "what not to try" is one query.
    """

    backend = "sqlite"

    _CREATE_TABLES = """
    CREATE TABLE IF NOT EXISTS fix_attempts (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        issue_type  TEXT NOT NULL,
        fix_method  TEXT NOT NULL,
        result      TEXT NOT NULL CHECK (result IN ('success', 'failure')),
        timestamp   TEXT NOT NULL,
        details     TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_fix_attempts_issue_type
        ON fix_attempts (issue_type, id);
    CREATE TABLE IF NOT EXISTS failed_methods (
        issue_type    TEXT NOT NULL,
        method        TEXT NOT NULL,
        frequency     INTEGER NOT NULL DEFAULT 1,
        last_attempt  TEXT NOT NULL,
        PRIMARY KEY (issue_type, method)
    );
    """

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._con: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._logger = logger.bind(system="governor", component="sqlite_fix_store")

    async def initialize(self) -> None:
        if self._con is not None:
            return
        try:
            self._con = await asyncio.to_thread(self._connect)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open fix history database {self._path}: {exc}") from exc
        self._logger.info("fix_history_database_opened", path=self._path)

    def _connect(self) -> sqlite3.Connection:
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        con = sqlite3.connect(self._path, check_same_thread=False)
        con.executescript(self._CREATE_TABLES)
        con.commit()
        return con

    async def _run(self, fn: Any, *args: Any) -> Any:
        if self._con is None:
            await self.initialize()
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise StorageError(f"Fix history database error: {exc}") from exc

    async def append(self, attempt: FixAttempt) -> None:
        await self._run(self._insert, attempt)

    def _insert(self, attempt: FixAttempt) -> None:
        assert self._con is not None
        stamp = attempt.timestamp.isoformat()
        with self._con:
            self._con.execute(
                """
                INSERT INTO fix_attempts (issue_type, fix_method, result, timestamp, details)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    attempt.issue_type,
                    attempt.fix_description,
                    attempt.outcome.value,
                    stamp,
                    orjson.dumps(attempt.details).decode() if attempt.details else None,
                ),
            )
            if not attempt.succeeded:
                self._con.execute(
                    """
                    INSERT INTO failed_methods (issue_type, method, frequency, last_attempt)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT (issue_type, method) DO UPDATE SET
                        frequency = frequency + 1,
                        last_attempt = excluded.last_attempt
                    """,
                    (attempt.issue_type, attempt.fix_description, stamp),
                )

    async def attempts_for(self, issue_type: str) -> list[FixAttempt]:
        rows = await self._run(self._select_attempts, issue_type)
        return [
            FixAttempt(
                issue_type=issue_type,
                fix_description=fix_method,
                outcome=FixOutcome(result),
                timestamp=timestamp,
                details=orjson.loads(details) if details else {},
            )
            for fix_method, result, timestamp, details in rows
        ]

    def _select_attempts(self, issue_type: str) -> list[tuple[Any, ...]]:
        assert self._con is not None
        return self._con.execute(
            "SELECT fix_method, result, timestamp, details FROM fix_attempts "
            "WHERE issue_type = ? ORDER BY id",
            (issue_type,),
        ).fetchall()

    async def issue_types(self) -> list[str]:
        rows = await self._run(self._select_issue_types)
        return [row[0] for row in rows]

    def _select_issue_types(self) -> list[tuple[Any, ...]]:
        assert self._con is not None
        return self._con.execute(
            "SELECT issue_type FROM fix_attempts GROUP BY issue_type ORDER BY MIN(id)"
        ).fetchall()

    async def failed_method_counts(self, issue_type: str) -> dict[str, int]:
        rows = await self._run(self._select_failed_methods, issue_type)
        return {method: frequency for method, frequency in rows}

    def _select_failed_methods(self, issue_type: str) -> list[tuple[Any, ...]]:
        assert self._con is not None
        return self._con.execute(
            "SELECT method, frequency FROM failed_methods WHERE issue_type = ? "
            "ORDER BY frequency DESC, method",
            (issue_type,),
        ).fetchall()

    async def close(self) -> None:
        if self._con is None:
            return
        con, self._con = self._con, None
        await asyncio.to_thread(con.close)
        self._logger.info("fix_history_database_closed", path=self._path)


def create_fix_store(config: MemoryConfig) -> FixAttemptStore:
    """Pick the backend named by ``memory.backend``."""
    if config.backend == "memory":
        return InMemoryFixStore()
    if config.backend == "sqlite":
        return SqliteFixStore(config.sqlite_path)
    return JsonFixStore(config.json_path)


# ─── Pending Issues ──────────────────────────────────────────────


class PendingIssueFile:
    """
    Mirror of the live ledger on disk: ``{"issues": [...], "lastUpdated": iso}``.
    Lets a restarted gateway pick up where the previous one stopped.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> list[dict[str, Any]]:
        try:
            doc = await asyncio.to_thread(_read_document, self._path)
        except (OSError, orjson.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read pending issues {self._path}: {exc}") from exc
        if not isinstance(doc, dict):
            return []
        issues = doc.get("issues")
        return [i for i in issues if isinstance(i, dict)] if isinstance(issues, list) else []

    async def save(self, issues: list[dict[str, Any]]) -> None:
        payload = orjson.dumps(
            {"issues": issues, "lastUpdated": utc_now().isoformat(), "count": len(issues)},
            option=orjson.OPT_INDENT_2,
        )
        async with self._lock:
            try:
                await asyncio.to_thread(_atomic_write, self._path, payload)
            except OSError as exc:
                raise StorageError(f"Cannot write pending issues {self._path}: {exc}") from exc
