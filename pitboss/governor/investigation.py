"""
PitBoss — Investigation State Machine

One investigation at a time. While a run is active the governor reports
how far through its timeout window it is; completing it (explicitly,
from the external status file, or by timing out) returns to idle and
appends the run to history.

    idle ──start──▶ starting ──▶ active ──complete──▶ completing ──▶ idle
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog

from pitboss.governor.errors import InvalidTransition
from pitboss.governor.types import (
    QUALIFYING_SEVERITIES,
    DecisionResult,
    InvestigationRun,
    InvestigationState,
    InvestigationStatus,
    Issue,
)
from pitboss.primitives.common import utc_now

logger = structlog.get_logger()

_TRANSITIONS: dict[InvestigationStatus, frozenset[InvestigationStatus]] = {
    InvestigationStatus.IDLE: frozenset({InvestigationStatus.STARTING, InvestigationStatus.ACTIVE}),
    InvestigationStatus.STARTING: frozenset({InvestigationStatus.ACTIVE, InvestigationStatus.IDLE}),
    InvestigationStatus.ACTIVE: frozenset({InvestigationStatus.COMPLETING, InvestigationStatus.IDLE}),
    InvestigationStatus.COMPLETING: frozenset({InvestigationStatus.IDLE}),
}


def can_start(status: InvestigationStatus, issues: Iterable[Issue]) -> bool:
    """At least one critical/high issue and nothing already running."""
    if status != InvestigationStatus.IDLE:
        return False
    return any(i.severity in QUALIFYING_SEVERITIES for i in issues)


class InvestigationStateMachine:
    """
    Singleton investigation lifecycle. The clock is injectable so tests
    can move time without sleeping.
    """

    DEFAULT_TIMEOUT_S = 900.0

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        history_size: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._default_timeout = timeout_s
        self._clock = clock
        self._status = InvestigationStatus.IDLE
        self._start_time: datetime | None = None
        self._timeout = timeout_s
        self._trigger_ids: list[str] = []
        self._history: deque[InvestigationRun] = deque(maxlen=history_size)
        self._started_total: int = 0
        self._completed_total: int = 0
        self._logger = logger.bind(system="governor", component="investigation")

    @property
    def status(self) -> InvestigationStatus:
        return self._status

    @property
    def history(self) -> list[InvestigationRun]:
        return list(self._history)

    def _transition(self, target: InvestigationStatus) -> None:
        if target not in _TRANSITIONS[self._status]:
            raise InvalidTransition(
                f"Cannot move investigation from {self._status.value} to {target.value}"
            )
        self._logger.debug(
            "investigation_transition",
            from_status=self._status.value,
            to_status=target.value,
        )
        self._status = target

    # ─── Queries ─────────────────────────────────────────────────────

    def should_start(self, issues: Iterable[Issue]) -> bool:
        return can_start(self._status, issues)

    def elapsed_s(self) -> float:
        if self._start_time is None:
            return 0.0
        return max(0.0, (self._clock() - self._start_time).total_seconds())

    def snapshot(self) -> InvestigationState:
        progress = 0.0
        remaining = 0.0
        if self._status == InvestigationStatus.ACTIVE and self._start_time is not None:
            elapsed = self.elapsed_s()
            progress = min(1.0, elapsed / self._timeout) if self._timeout > 0 else 1.0
            remaining = max(0.0, self._timeout - elapsed)
        return InvestigationState(
            status=self._status,
            start_time=self._start_time,
            timeout_seconds=self._timeout,
            progress=progress,
            time_remaining_seconds=remaining,
            trigger_issue_ids=list(self._trigger_ids),
        )

    # ─── Transitions ─────────────────────────────────────────────────

    def start(
        self,
        decision: DecisionResult | None = None,
        timeout_seconds: float | None = None,
        start_time: datetime | None = None,
    ) -> InvestigationState:
        """idle → active. Raises InvalidTransition from any other state."""
        if self._status != InvestigationStatus.IDLE:
            raise InvalidTransition(
                f"Investigation already {self._status.value}; complete it before starting another"
            )
        self._transition(InvestigationStatus.STARTING)
        self._start_time = start_time or self._clock()
        self._timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout
        self._trigger_ids = list(decision.issues) if decision is not None else []
        self._transition(InvestigationStatus.ACTIVE)
        self._started_total += 1
        self._logger.info(
            "investigation_started",
            timeout_s=self._timeout,
            trigger_issues=len(self._trigger_ids),
            reason=decision.reason if decision is not None else None,
        )
        return self.snapshot()

    def complete(self, issues_found: int = 0, timed_out: bool = False) -> InvestigationRun | None:
        """
        Return to idle. Idempotent: completing while idle is a no-op and
        returns None; otherwise the finished run is returned and kept.
        """
        if self._status == InvestigationStatus.IDLE:
            return None

        run: InvestigationRun | None = None
        if self._status == InvestigationStatus.ACTIVE and self._start_time is not None:
            self._transition(InvestigationStatus.COMPLETING)
            completed_at = self._clock()
            run = InvestigationRun(
                started_at=self._start_time,
                completed_at=completed_at,
                duration_s=max(0.0, (completed_at - self._start_time).total_seconds()),
                issues_found=issues_found,
                trigger_issue_ids=list(self._trigger_ids),
                timed_out=timed_out,
            )
            self._history.append(run)
            self._completed_total += 1

        self._transition(InvestigationStatus.IDLE)
        self._start_time = None
        self._timeout = self._default_timeout
        self._trigger_ids = []
        self._logger.info(
            "investigation_completed",
            duration_s=round(run.duration_s, 1) if run else 0.0,
            issues_found=issues_found,
            timed_out=timed_out,
        )
        return run

    def expire_if_overdue(self, issues_found: int = 0) -> InvestigationRun | None:
        """Complete an active run whose timeout has fully elapsed."""
        if self._status != InvestigationStatus.ACTIVE:
            return None
        if self.elapsed_s() < self._timeout:
            return None
        return self.complete(issues_found=issues_found, timed_out=True)

    def sync_external(
        self,
        active: bool,
        start_time: datetime | None = None,
        timeout_seconds: float | None = None,
    ) -> bool:
        """
        Fold an externally reported investigation status in. Returns True
        when local state changed.
        """
        if active:
            if self._status == InvestigationStatus.IDLE:
                self.start(timeout_seconds=timeout_seconds, start_time=start_time)
                return True
            if (
                self._status == InvestigationStatus.ACTIVE
                and start_time is not None
                and start_time != self._start_time
            ):
                self._start_time = start_time
                if timeout_seconds is not None:
                    self._timeout = timeout_seconds
                return True
            return False
        if self._status != InvestigationStatus.IDLE:
            self.complete()
            return True
        return False

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "started_total": self._started_total,
            "completed_total": self._completed_total,
        }
