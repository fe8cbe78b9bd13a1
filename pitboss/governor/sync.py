"""
PitBoss — External Status Synchronizer

The supervising scripts publish a monitor-status JSON file:

    {
      "investigation": {"active": bool, "startTime": ms|iso, "timeout": min},
      "unity":  {"status": str, "health": num, "metrics": {...}},
      "system": {"server": {"status", "health"}, "database": {"status", "health"}}
    }

Once a second the synchronizer reads it and hands the parsed update to
the service, which applies it under the same lock every command uses.
A missing file is normal (nothing published yet); a half-written or
malformed file is logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson
import structlog
from pydantic import Field

from pitboss.primitives.common import PitBossBaseModel, from_epoch_ms

logger = structlog.get_logger("pitboss.sync")

_SYNC_INTERVAL = 1.0  # seconds


def parse_moment(value: Any) -> datetime | None:
    """Epoch milliseconds or an ISO-8601 string → aware datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


class ComponentUpdate(PitBossBaseModel):
    status: str | None = None
    health: float | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)


class StatusUpdate(PitBossBaseModel):
    investigation_active: bool | None = None
    investigation_start: datetime | None = None
    investigation_timeout_s: float | None = None
    governed_process: ComponentUpdate | None = None
    server: ComponentUpdate | None = None
    database: ComponentUpdate | None = None


def _component(raw: Any) -> ComponentUpdate | None:
    if not isinstance(raw, dict):
        return None
    health = raw.get("health")
    metrics = raw.get("metrics")
    return ComponentUpdate(
        status=str(raw["status"]) if raw.get("status") else None,
        health=float(health) if isinstance(health, (int, float)) and not isinstance(health, bool) else None,
        metrics=metrics if isinstance(metrics, dict) else {},
    )


def parse_status_document(doc: dict[str, Any]) -> StatusUpdate:
    update = StatusUpdate()

    investigation = doc.get("investigation")
    if isinstance(investigation, dict):
        if "active" in investigation:
            update.investigation_active = bool(investigation.get("active"))
        elif isinstance(investigation.get("status"), str):
            update.investigation_active = investigation["status"] in ("active", "starting")
        update.investigation_start = parse_moment(investigation.get("startTime"))
        timeout = investigation.get("timeout")
        if isinstance(timeout, (int, float)) and not isinstance(timeout, bool) and timeout > 0:
            update.investigation_timeout_s = float(timeout) * 60.0

    update.governed_process = _component(doc.get("unity"))

    system = doc.get("system")
    if isinstance(system, dict):
        update.server = _component(system.get("server"))
        update.database = _component(system.get("database"))

    return update


class StatusSynchronizer:
    """
    Background asyncio task that folds the external status file into
    the governor's state, then runs any housekeeping hook.

    Parameters
    ----------
    status_file:
        Path of the monitor-status document. None disables reading but
        keeps the housekeeping tick.
    apply:
        Coroutine that applies a parsed StatusUpdate (under the service lock).
    on_tick:
        Optional coroutine run after every tick (investigation expiry,
        stale-issue pruning).
    """

    def __init__(
        self,
        status_file: str | Path | None,
        apply: Callable[[StatusUpdate], Awaitable[None]],
        interval: float = _SYNC_INTERVAL,
        on_tick: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._path = Path(status_file) if status_file else None
        self._apply = apply
        self._on_tick = on_tick
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._last_signature: tuple[int, int] | None = None
        self._ticks = 0
        self._applied = 0
        self._errors = 0
        self._logger = logger.bind(system="governor", component="status_sync")

    async def start(self) -> None:
        self._task = asyncio.create_task(self._sync_loop(), name="pitboss_status_sync")
        self._logger.info(
            "status_sync_started",
            status_file=str(self._path) if self._path else None,
            interval_s=self._interval,
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._logger.info("status_sync_stopped", ticks=self._ticks, applied=self._applied)

    async def tick(self) -> bool:
        """One sync pass. Returns True when a status update was applied."""
        self._ticks += 1
        applied = False
        doc = await self._read()
        if doc is not None:
            await self._apply(parse_status_document(doc))
            self._applied += 1
            applied = True
        if self._on_tick is not None:
            await self._on_tick()
        return applied

    async def _read(self) -> dict[str, Any] | None:
        if self._path is None:
            return None
        try:
            stat = await asyncio.to_thread(self._path.stat)
        except FileNotFoundError:
            return None
        signature = (stat.st_mtime_ns, stat.st_size)
        if signature == self._last_signature:
            return None
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
            doc = orjson.loads(raw)
        except (OSError, orjson.JSONDecodeError) as exc:
            self._errors += 1
            self._logger.warning("status_file_unreadable", path=str(self._path), error=str(exc))
            return None
        self._last_signature = signature
        if not isinstance(doc, dict):
            self._errors += 1
            self._logger.warning("status_file_not_object", path=str(self._path))
            return None
        return doc

    async def _sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.tick()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._errors += 1
                self._logger.warning("status_sync_error", error=str(exc))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "status_file": str(self._path) if self._path else None,
            "ticks": self._ticks,
            "applied": self._applied,
            "errors": self._errors,
            "running": self._task is not None and not self._task.done(),
        }
