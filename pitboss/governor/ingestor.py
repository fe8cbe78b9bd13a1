"""
PitBoss — Log Ingestor

Turns raw game-log lines into LogRecords and tails the live log files.

Line formats, tried in order:
  [timestamp] [LEVEL] [CATEGORY] message | Data: {...}
  [timestamp] [CATEGORY] message
  anything else (unstructured; level inferred from the text)

Internal diagnostic chatter (the governor's own tags, status reports,
successful fix attempts) is dropped before classification so the
governor never reacts to its own output.

Usage:
    ingestor = LogIngestor(paths=[Path("logs/game.log")])
    await ingestor.start(on_record)
    ...
    await ingestor.stop()

Design notes:
- Pure asyncio polling, 1-second tick, blocking reads in a worker thread.
- A file that shrinks below the stored offset was rotated: start over at 0.
- A trailing line without its newline is held back until it is completed.
"""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson
import structlog

from pitboss.governor.types import LogLevel, LogRecord

logger = structlog.get_logger("pitboss.ingestor")

_POLL_INTERVAL = 1.0  # seconds
_MAX_MESSAGE_CHARS = 1000

_STRUCTURED_RE = re.compile(
    r"^\[(?P<ts>\d[^\]]*)\]\s+\[(?P<level>[^\]]+)\]\s+\[(?P<category>[^\]]+)\]\s*(?P<message>.*)$"
)
_TWO_TAG_RE = re.compile(r"^\[(?P<ts>\d[^\]]*)\]\s+\[(?P<category>[^\]]+)\]\s*(?P<message>.*)$")
_DATA_RE = re.compile(r"\|\s*Data:\s*(?P<json>\{.*\})\s*$")
_TABLE_ID_RE = re.compile(
    r"\b(?:table(?:_?id)?)\b[\s:=\"']*"
    r"(?P<id>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})",
    re.IGNORECASE,
)
_EXPECTED_RE = re.compile(r"\bexpected\b[\s:=]*(?P<value>-?\d+(?:\.\d+)?)", re.IGNORECASE)
_ACTUAL_RE = re.compile(r"\b(?:actual|got)\b[\s:=]*(?P<value>-?\d+(?:\.\d+)?)", re.IGNORECASE)
_CHIPS_RE = re.compile(r"(?P<value>-?\d+(?:\.\d+)?)\s*chips\b", re.IGNORECASE)

# Tags the monitoring side writes about itself
_NOISE_TAGS: tuple[str, ...] = (
    "[MONITORING]",
    "[ISSUE_DETECTOR]",
    "[LOG_WATCHER]",
    "[STATUS_REPORT]",
    "STATUS_UPDATE",
    "[ACTIVE_MONITORING]",
    "[WORKFLOW]",
)


def is_noise(line: str) -> bool:
    """True for internal/diagnostic lines that must never become issues."""
    if any(tag in line for tag in _NOISE_TAGS):
        return True
    # [TRACE] is chatter; [ROOT_TRACE] is a finding
    if "[TRACE]" in line:
        return True
    if "[FIX_ATTEMPT]" in line:
        upper = line.upper()
        if "SUCCESS" in upper or "SUCCEEDED" in upper:
            return True
        if not any(marker in upper for marker in ("FAILED", "DISABLED")):
            return True
    return False


def infer_level(text: str) -> LogLevel:
    lower = text.lower()
    if "error" in lower or "exception" in lower or "failed" in lower:
        return LogLevel.ERROR
    if "warn" in lower:
        return LogLevel.WARN
    if "debug" in lower:
        return LogLevel.DEBUG
    return LogLevel.INFO


def _number(raw: str) -> int | float:
    value = float(raw)
    return int(value) if value.is_integer() else value


def extract_context(message: str) -> dict[str, Any]:
    """
    Pull structured details out of a message: the ``| Data: {...}``
    payload, a table id, and expected/actual/chip amounts.

    Never raises; whatever cannot be parsed is simply absent.
    """
    context: dict[str, Any] = {}

    data_match = _DATA_RE.search(message)
    if data_match:
        try:
            data = orjson.loads(data_match.group("json"))
        except orjson.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            context["data"] = data

    if m := _TABLE_ID_RE.search(message):
        context["table_id"] = m.group("id")
    elif isinstance(context.get("data"), dict):
        table_id = context["data"].get("tableId") or context["data"].get("table_id")
        if isinstance(table_id, str):
            context["table_id"] = table_id

    if m := _EXPECTED_RE.search(message):
        context["expected"] = _number(m.group("value"))
    if m := _ACTUAL_RE.search(message):
        context["actual"] = _number(m.group("value"))
    chips = [_number(m.group("value")) for m in _CHIPS_RE.finditer(message)]
    if chips:
        context["amounts"] = chips

    return context


def parse_line(line: str, source: str = "") -> LogRecord | None:
    """
    Parse one raw line. Returns None for blank lines and for noise.
    """
    stripped = line.strip()
    if not stripped or is_noise(stripped):
        return None

    timestamp: str | None = None
    level: LogLevel | None = None
    category: str | None = None
    message = stripped

    match = _STRUCTURED_RE.match(stripped)
    if match and (parsed := LogLevel.parse(match.group("level"))) is not None:
        timestamp = match.group("ts")
        level = parsed
        category = match.group("category").strip()
        message = match.group("message").strip()
    elif two := _TWO_TAG_RE.match(stripped):
        timestamp = two.group("ts")
        category = two.group("category").strip()
        message = two.group("message").strip()
        level = infer_level(message)
    else:
        level = infer_level(stripped)

    return LogRecord(
        timestamp=timestamp,
        level=level,
        category=category,
        message=message[:_MAX_MESSAGE_CHARS],
        source=source,
        raw=stripped[:_MAX_MESSAGE_CHARS],
        context=extract_context(message),
    )


# ─── Tailing ─────────────────────────────────────────────────────


@dataclass
class _TailState:
    path: Path
    offset: int = 0
    remainder: str = ""
    primed: bool = False
    backlog: list[str] | None = None


RecordCallback = Callable[[LogRecord], Awaitable[None]]


class LogIngestor:
    """
    Background asyncio task that tails append-only log files and hands
    every parsed record to a callback.

    Parameters
    ----------
    paths:
        Log files to follow. Files that do not exist yet are picked up
        once they appear.
    poll_interval:
        How often to check the files (seconds). Default 1.0.
    backfill_lines:
        How many existing lines to replay when tailing starts.
        0 starts at the current end of each file.
    recent_size:
        Capacity of the recent ERROR/WARN buffer used by queries.
    """

    def __init__(
        self,
        paths: Iterable[str | Path] = (),
        poll_interval: float = _POLL_INTERVAL,
        backfill_lines: int = 0,
        recent_size: int = 500,
    ) -> None:
        self._states = [_TailState(path=Path(p)) for p in paths]
        self._interval = poll_interval
        self._backfill = max(0, backfill_lines)
        self._recent: deque[LogRecord] = deque(maxlen=recent_size)
        self._callback: RecordCallback | None = None
        self._task: asyncio.Task[None] | None = None
        self._processed = 0
        self._skipped = 0
        self._errors = 0
        self._rotations = 0
        self._logger = logger.bind(system="governor", component="log_ingestor")

    # ── Parsing ───────────────────────────────────────────────────

    def parse_line(self, line: str, source: str = "") -> LogRecord | None:
        record = parse_line(line, source)
        if record is None:
            self._skipped += 1
            return None
        self._processed += 1
        if record.level in (LogLevel.ERROR, LogLevel.WARN):
            self._recent.append(record)
        return record

    def recent(self, limit: int = 50, level: LogLevel | None = None) -> list[LogRecord]:
        """Most recent ERROR/WARN records, newest last."""
        records = [r for r in self._recent if level is None or r.level == level]
        return records[-limit:] if limit > 0 else []

    # ── Public API ────────────────────────────────────────────────

    async def start(self, on_record: RecordCallback) -> None:
        """Prime file offsets and launch the background polling task."""
        self._callback = on_record
        for state in self._states:
            await asyncio.to_thread(self._prime, state)
        self._task = asyncio.create_task(self._poll_loop(), name="pitboss_log_tail")
        self._logger.info(
            "log_ingestor_started",
            files=[str(s.path) for s in self._states],
            backfill_lines=self._backfill,
        )

    async def stop(self) -> None:
        """Cancel background task and wait for it to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._logger.info(
            "log_ingestor_stopped",
            processed=self._processed,
            skipped=self._skipped,
            errors=self._errors,
        )

    async def poll_once(self) -> int:
        """Read whatever was appended since the last poll. Returns records dispatched."""
        dispatched = 0
        for state in self._states:
            if not state.primed:
                await asyncio.to_thread(self._prime, state)
            lines = await asyncio.to_thread(self._read_new, state)
            for line in lines:
                record = self.parse_line(line, source=state.path.name)
                if record is None or self._callback is None:
                    continue
                try:
                    await self._callback(record)
                    dispatched += 1
                except Exception as exc:
                    self._errors += 1
                    self._logger.warning(
                        "log_record_dispatch_failed",
                        file=state.path.name,
                        error=str(exc),
                    )
        return dispatched

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "files": [str(s.path) for s in self._states],
            "processed": self._processed,
            "skipped": self._skipped,
            "errors": self._errors,
            "rotations": self._rotations,
            "running": self._task is not None and not self._task.done(),
        }

    # ── Internals ─────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                self._logger.debug("log_ingestor_poll_cancelled")
                return
            except Exception as exc:
                self._logger.warning("log_ingestor_poll_error", error=str(exc))
                await asyncio.sleep(self._interval)

    def _prime(self, state: _TailState) -> None:
        """Position a file at its end, keeping the last N lines as backlog."""
        if state.primed:
            return
        state.primed = True
        if not state.path.exists():
            # Read from byte 0 once it appears
            return
        size = state.path.stat().st_size
        if self._backfill:
            with open(state.path, "rb") as f:
                text = f.read(size).decode("utf-8", errors="replace")
            lines = text.split("\n")
            state.remainder = lines.pop()
            state.backlog = lines[-self._backfill:]
        state.offset = size

    def _read_new(self, state: _TailState) -> list[str]:
        lines: list[str] = []
        if state.backlog:
            lines.extend(state.backlog)
            state.backlog = None

        try:
            size = state.path.stat().st_size
        except FileNotFoundError:
            return lines

        if size < state.offset:
            self._rotations += 1
            self._logger.info("log_file_rotated", file=str(state.path))
            state.offset = 0
            state.remainder = ""
        if size == state.offset:
            return lines

        with open(state.path, "rb") as f:
            f.seek(state.offset)
            chunk = f.read(size - state.offset)
        state.offset += len(chunk)

        parts = (state.remainder + chunk.decode("utf-8", errors="replace")).split("\n")
        state.remainder = parts.pop()
        lines.extend(part.rstrip("\r") for part in parts)
        return lines
