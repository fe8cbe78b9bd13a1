"""
PitBoss — Governor Type Definitions

All data types for the remediation governor: log records, issues,
fix attempts and verdicts, investigation state, and decisions.

Every interesting line in the game log becomes either nothing (noise,
or no rule matched) or an Issue candidate; the ledger turns candidates
into live issues keyed by fingerprint.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitBossBaseModel, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class LogLevel(enum.StrEnum):
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"

    @classmethod
    def parse(cls, value: str | None) -> LogLevel | None:
        """Map a bracketed level tag onto the enum. Unknown tags → None."""
        if not value:
            return None
        upper = value.strip().upper()
        if upper == "WARNING":
            return cls.WARN
        try:
            return cls(upper)
        except ValueError:
            return None


class IssueSeverity(enum.StrEnum):
    """How bad is it?"""

    CRITICAL = "critical"  # Money/state integrity or server down
    HIGH = "high"  # Degraded play, wrong calculations, client errors
    MEDIUM = "medium"  # Rejected actions, warnings, resource pressure
    LOW = "low"  # Loops, deprecations


# Lower rank sorts first
SEVERITY_RANK: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.HIGH: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 3,
}

SEVERITY_WEIGHT: dict[IssueSeverity, float] = {
    IssueSeverity.CRITICAL: 10.0,
    IssueSeverity.HIGH: 7.0,
    IssueSeverity.MEDIUM: 4.0,
    IssueSeverity.LOW: 1.0,
}

QUALIFYING_SEVERITIES: frozenset[IssueSeverity] = frozenset(
    {IssueSeverity.CRITICAL, IssueSeverity.HIGH}
)


class IssueSource(enum.StrEnum):
    SERVER = "server"
    UNITY = "unity"
    DATABASE = "database"
    NETWORK = "network"
    LOG = "log"


class DetectionMethod(enum.StrEnum):
    PATTERN = "pattern"
    MANUAL = "manual"
    AI = "ai"


class FixOutcome(enum.StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"

    @classmethod
    def parse(cls, value: Any) -> FixOutcome:
        """Accept the spellings callers actually send ("failed", true, ...)."""
        if isinstance(value, bool):
            return cls.SUCCESS if value else cls.FAILURE
        text = str(value).strip().lower()
        if text in ("success", "succeeded", "successful", "true", "pass", "passed", "fixed"):
            return cls.SUCCESS
        if text in ("failure", "failed", "fail", "false", "error"):
            return cls.FAILURE
        raise ValueError(f"Unrecognised fix outcome: {value!r}")


class InvestigationStatus(enum.StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETING = "completing"


class DecisionPriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ─── Log Records ─────────────────────────────────────────────────


class LogRecord(PitBossBaseModel):
    """One parsed line of the game log. Ephemeral; never stored."""

    timestamp: str | None = None
    level: LogLevel | None = None
    category: str | None = None
    message: str
    source: str = ""
    raw: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


# ─── Issues ──────────────────────────────────────────────────────


class Issue(PitBossBaseModel):
    """
    A detected problem. Identity is the fingerprint; the id is derived
    from it by the ledger so repeats address the same issue.
    """

    id: str = ""
    type: str
    severity: IssueSeverity
    source: IssueSource = IssueSource.SERVER
    message: str
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    method: DetectionMethod = DetectionMethod.PATTERN
    fingerprint: str = ""
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    count: int = 1
    root_cause: str | None = None
    possible_fixes: list[str] = Field(default_factory=list)
    related_issues: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def priority(self) -> float:
        """Composite urgency: severity weight + confidence + recurrence."""
        recurrence = min(self.count / 10.0, 1.0)
        return round(
            SEVERITY_WEIGHT[self.severity] + self.confidence * 5.0 + recurrence * 5.0,
            2,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "source": self.source.value,
            "message": self.message,
            "priority": self.priority,
            "confidence": self.confidence,
            "method": self.method.value,
            "rootCause": self.root_cause,
            "possibleFixes": list(self.possible_fixes),
            "relatedIssues": list(self.related_issues),
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "count": self.count,
        }


class DetectResult(PitBossBaseModel):
    issue: Issue
    is_new: bool


# ─── Fix Memory ──────────────────────────────────────────────────


class FixAttempt(PitBossBaseModel):
    """One remedy tried against an issue type. Append-only."""

    issue_type: str
    fix_description: str
    outcome: FixOutcome
    timestamp: datetime = Field(default_factory=utc_now)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome == FixOutcome.SUCCESS

    def summary(self) -> dict[str, Any]:
        return {
            "fixAttempt": self.fix_description,
            "success": self.succeeded,
            "timestamp": self.timestamp.isoformat(),
            **({"details": self.details} if self.details else {}),
        }


class FixVerdict(PitBossBaseModel):
    """Answer to "has this remedy (or something like it) failed before?"."""

    warning: bool
    severity: str | None = None  # "HIGH" | "MEDIUM"
    message: str
    recommendation: str | None = None
    previous_attempt: FixAttempt | None = None
    similar_failures: list[FixAttempt] = Field(default_factory=list)
    successful_attempts: list[FixAttempt] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {"warning": self.warning, "message": self.message}
        if self.severity:
            out["severity"] = self.severity
        if self.recommendation:
            out["recommendation"] = self.recommendation
        if self.previous_attempt is not None:
            out["previousAttempt"] = self.previous_attempt.summary()
        if self.similar_failures:
            out["similarFailures"] = [a.summary() for a in self.similar_failures]
        if self.successful_attempts:
            out["successfulAttempts"] = [a.summary() for a in self.successful_attempts]
        return out


class FixRecordResult(PitBossBaseModel):
    issue_type: str
    total_attempts: int
    success_count: int
    failure_count: int

    @property
    def success_rate(self) -> str:
        return f"{self.success_count}/{self.total_attempts}"


class FixHistory(PitBossBaseModel):
    """Aggregated view of everything tried against one issue type."""

    issue_type: str
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_attempt: datetime | None = None
    recent_failures: list[FixAttempt] = Field(default_factory=list)
    recent_successes: list[FixAttempt] = Field(default_factory=list)

    @property
    def success_rate(self) -> str:
        return f"{self.success_count}/{self.total_attempts}"


class FixSuggestions(PitBossBaseModel):
    should_try: list[dict[str, Any]] = Field(default_factory=list)
    should_not_try: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = 0.0


# ─── Investigation ───────────────────────────────────────────────


class InvestigationRun(PitBossBaseModel):
    """A completed investigation, kept for history."""

    started_at: datetime
    completed_at: datetime
    duration_s: float
    issues_found: int = 0
    trigger_issue_ids: list[str] = Field(default_factory=list)
    timed_out: bool = False


class InvestigationState(PitBossBaseModel):
    status: InvestigationStatus = InvestigationStatus.IDLE
    start_time: datetime | None = None
    timeout_seconds: float = 900.0
    progress: float = Field(0.0, ge=0.0, le=1.0)
    time_remaining_seconds: float = 0.0
    trigger_issue_ids: list[str] = Field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.status == InvestigationStatus.ACTIVE


# ─── Decisions ───────────────────────────────────────────────────


class DecisionResult(PitBossBaseModel):
    """Pure output of the decision engine. Recomputed on every query."""

    should: bool
    reason: str
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    priority: DecisionPriority | None = None
    issues: list[str] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "should": self.should,
            "reason": self.reason,
            "confidence": self.confidence,
        }
        if self.priority is not None:
            out["priority"] = self.priority.value
        if self.issues:
            out["issues"] = list(self.issues)
        return out


# ─── Health Signals ──────────────────────────────────────────────


class ComponentHealth(PitBossBaseModel):
    status: str = "unknown"
    health: float | None = None
    updated_at: datetime | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)

    @property
    def paused(self) -> bool:
        return self.status.lower() == "paused"

    @property
    def online(self) -> bool:
        return self.status.lower() in ("online", "running", "healthy", "active", "paused")


class HealthSignals(PitBossBaseModel):
    """Externally supplied health of the components the governor watches."""

    server: ComponentHealth = Field(default_factory=ComponentHealth)
    database: ComponentHealth = Field(default_factory=ComponentHealth)
    governed_process: ComponentHealth = Field(default_factory=ComponentHealth)
    simulation: ComponentHealth = Field(default_factory=ComponentHealth)
