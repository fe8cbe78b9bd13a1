"""
PitBoss — Decision Engine

Pure functions over snapshots: the active issue list, the investigation
state, and the externally supplied health signals. Nothing here holds
state or touches I/O; every answer is recomputed on request.

Rules:
  pause     ≥1 critical/high issue and the client is not already paused
  resume    client is paused and the active issue list is empty
  start     ≥1 critical/high issue and no investigation in progress

Pause and resume are asymmetric: one lingering
medium issue blocks resume without ever triggering a pause.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

import structlog

from pitboss.governor.investigation import can_start
from pitboss.governor.types import (
    QUALIFYING_SEVERITIES,
    SEVERITY_RANK,
    DecisionPriority,
    DecisionResult,
    HealthSignals,
    InvestigationState,
    InvestigationStatus,
    Issue,
    IssueSeverity,
)

logger = structlog.get_logger()

_NEUTRAL_CONFIDENCE = 0.5

_PRIORITY_FOR_SEVERITY: dict[IssueSeverity, DecisionPriority] = {
    IssueSeverity.CRITICAL: DecisionPriority.HIGH,
    IssueSeverity.HIGH: DecisionPriority.HIGH,
    IssueSeverity.MEDIUM: DecisionPriority.MEDIUM,
    IssueSeverity.LOW: DecisionPriority.LOW,
}


def _qualifying(issues: Sequence[Issue]) -> list[Issue]:
    return [i for i in issues if i.severity in QUALIFYING_SEVERITIES]


def _confidence(contributing: Sequence[Issue]) -> float:
    """The trigger's own confidence when exactly one issue contributes."""
    if len(contributing) == 1:
        return contributing[0].confidence
    return _NEUTRAL_CONFIDENCE


def _priority(issues: Sequence[Issue]) -> DecisionPriority | None:
    if not issues:
        return None
    top = min(issues, key=lambda i: SEVERITY_RANK[i.severity])
    return _PRIORITY_FOR_SEVERITY[top.severity]


def _breakdown(issues: Sequence[Issue]) -> str:
    counts = Counter(i.severity for i in issues)
    return (
        f"{len(issues)} active issue(s) detected "
        f"({counts[IssueSeverity.CRITICAL]} critical, {counts[IssueSeverity.HIGH]} high)"
    )


class DecisionEngine:
    """
    Pause/resume/start advice for the governed client process. Advisory
    only: callers decide whether to act.
    """

    def __init__(self) -> None:
        self._evaluations: Counter[str] = Counter()
        self._logger = logger.bind(system="governor", component="decision_engine")

    def _record(self, name: str, result: DecisionResult) -> DecisionResult:
        self._evaluations[name] += 1
        self._logger.debug(
            "decision_evaluated",
            decision=name,
            should=result.should,
            reason=result.reason,
        )
        return result

    # ─── Governed Process ────────────────────────────────────────────

    def should_pause_unity(
        self,
        issues: Sequence[Issue],
        health: HealthSignals,
    ) -> DecisionResult:
        qualifying = _qualifying(issues)
        if health.governed_process.paused:
            result = DecisionResult(
                should=False,
                reason="Unity already paused",
                confidence=_confidence(qualifying),
                issues=[i.id for i in qualifying],
            )
        elif qualifying:
            counts = Counter(i.severity for i in qualifying)
            result = DecisionResult(
                should=True,
                reason=(
                    f"{len(qualifying)} critical/high issue(s) detected "
                    f"({counts[IssueSeverity.CRITICAL]} critical, {counts[IssueSeverity.HIGH]} high)"
                ),
                confidence=_confidence(qualifying),
                priority=DecisionPriority.HIGH,
                issues=[i.id for i in qualifying],
            )
        else:
            result = DecisionResult(should=False, reason="No reason to pause", confidence=_NEUTRAL_CONFIDENCE)
        return self._record("pause_unity", result)

    def should_resume_unity(
        self,
        issues: Sequence[Issue],
        health: HealthSignals,
    ) -> DecisionResult:
        if not health.governed_process.paused:
            result = DecisionResult(should=False, reason="Unity not paused", confidence=_NEUTRAL_CONFIDENCE)
        elif issues:
            result = DecisionResult(
                should=False,
                reason=f"{len(issues)} active issue(s) still open",
                confidence=_confidence(issues),
                priority=_priority(issues),
                issues=[i.id for i in issues],
            )
        else:
            result = DecisionResult(
                should=True,
                reason="Verification passed, no issues detected",
                confidence=1.0,
            )
        return self._record("resume_unity", result)

    # ─── Investigation ───────────────────────────────────────────────

    def should_start_investigation(
        self,
        issues: Sequence[Issue],
        investigation: InvestigationState,
    ) -> DecisionResult:
        qualifying = _qualifying(issues)
        if can_start(investigation.status, issues):
            result = DecisionResult(
                should=True,
                reason=_breakdown(issues),
                confidence=_confidence(qualifying),
                priority=_priority(issues),
                issues=[i.id for i in qualifying],
            )
        elif investigation.status != InvestigationStatus.IDLE:
            result = DecisionResult(
                should=False,
                reason=f"Investigation already {investigation.status.value}",
                confidence=_confidence(qualifying),
                priority=_priority(issues),
            )
        elif issues:
            result = DecisionResult(
                should=False,
                reason=f"{len(issues)} active issue(s), none critical or high",
                confidence=_confidence(issues),
                priority=_priority(issues),
            )
        else:
            result = DecisionResult(
                should=False,
                reason="No active issues detected",
                confidence=_NEUTRAL_CONFIDENCE,
            )
        return self._record("start_investigation", result)

    # ─── Start Advice ────────────────────────────────────────────────

    def should_start_server(self, health: HealthSignals) -> DecisionResult:
        if health.server.online:
            result = DecisionResult(should=False, reason="Server already running", confidence=1.0)
        else:
            result = DecisionResult(
                should=True,
                reason=f"Server is {health.server.status}",
                confidence=0.9 if health.server.status != "unknown" else _NEUTRAL_CONFIDENCE,
                priority=DecisionPriority.HIGH,
            )
        return self._record("start_server", result)

    def should_start_unity(
        self,
        issues: Sequence[Issue],
        health: HealthSignals,
    ) -> DecisionResult:
        critical = [i for i in issues if i.severity == IssueSeverity.CRITICAL]
        if health.governed_process.online:
            result = DecisionResult(should=False, reason="Unity already running", confidence=1.0)
        elif not health.server.online:
            result = DecisionResult(should=False, reason="Server must be running first", confidence=1.0)
        elif critical:
            result = DecisionResult(
                should=False,
                reason=f"{len(critical)} critical issue(s) must be fixed first",
                confidence=_confidence(critical),
                issues=[i.id for i in critical],
            )
        else:
            result = DecisionResult(
                should=True,
                reason="Server running, Unity not running",
                confidence=0.9,
                priority=DecisionPriority.MEDIUM,
            )
        return self._record("start_unity", result)

    def should_start_simulation(
        self,
        issues: Sequence[Issue],
        health: HealthSignals,
        investigation: InvestigationState,
    ) -> DecisionResult:
        critical = [i for i in issues if i.severity == IssueSeverity.CRITICAL]
        if health.simulation.online:
            result = DecisionResult(should=False, reason="Simulation already running", confidence=1.0)
        elif not health.server.online:
            result = DecisionResult(should=False, reason="Server must be running first", confidence=1.0)
        elif not health.governed_process.online or health.governed_process.paused:
            result = DecisionResult(should=False, reason="Unity must be running and unpaused", confidence=1.0)
        elif investigation.status != InvestigationStatus.IDLE:
            result = DecisionResult(
                should=False,
                reason="Investigation in progress",
                confidence=1.0,
            )
        elif critical:
            result = DecisionResult(
                should=False,
                reason=f"{len(critical)} critical issue(s) must be fixed first",
                confidence=_confidence(critical),
                issues=[i.id for i in critical],
            )
        else:
            result = DecisionResult(
                should=True,
                reason="System ready for simulation",
                confidence=0.8,
                priority=DecisionPriority.LOW,
            )
        return self._record("start_simulation", result)

    # ─── Priority ────────────────────────────────────────────────────

    def priority_summary(
        self,
        issues: Sequence[Issue],
        health: HealthSignals,
        investigation: InvestigationState,
    ) -> dict[str, Any]:
        """The single most important thing to do next."""
        critical = [i for i in issues if i.severity == IssueSeverity.CRITICAL]
        if critical:
            return {
                "priority": "critical",
                "action": "fix_critical_issues",
                "reason": f"{len(critical)} critical issue(s) need immediate attention",
                "issues": [i.id for i in critical],
            }
        if health.server.status != "unknown" and not health.server.online:
            return {"priority": "high", "action": "start_server", "reason": "Server is offline"}
        if investigation.status == InvestigationStatus.ACTIVE:
            return {
                "priority": "high",
                "action": "investigate",
                "reason": f"Investigation {round(investigation.progress * 100)}% complete",
            }
        if issues:
            return {
                "priority": _priority(issues).value,  # type: ignore[union-attr]
                "action": "fix_issues",
                "reason": _breakdown(issues),
                "issues": [i.id for i in issues],
            }
        if health.governed_process.paused:
            return {"priority": "medium", "action": "resume_unity", "reason": "No active issues, Unity paused"}
        return {"priority": "low", "action": "monitor", "reason": "System healthy, no active issues"}

    @property
    def stats(self) -> dict[str, Any]:
        return {"evaluations": dict(self._evaluations)}
