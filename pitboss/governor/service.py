"""
PitBoss — Governor Service (The Remediation Governor)

The one context object behind every command. Built once at startup,
torn down once at shutdown; the gateway owns exactly one instance.

Pipeline:
  Tail → Parse → Classify → Deduplicate → Decide (pause / resume / investigate)
  Propose fix → Check memory → Apply (elsewhere) → Record outcome

Concurrency:
  Three producers mutate state: the log tail task, the status-sync
  tick, and command handlers. All of them go through ``self._lock``;
  nothing outside this class touches the ledger, the investigation
  machine or the health signals directly.

Interface:
  initialize()              — build sub-systems, restore pending issues, start loops
  ingest_line()             — entry point for raw log lines
  detect_issue() / add_issue() / resolve_issue()
  should_*()                — decision queries
  start/complete_investigation()
  record_fix_attempt() / check_fix() / get_suggested_fixes()
  get_live_statistics() / query() / get_status_report()
  shutdown()                — graceful teardown
  health()                  — self-health report
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from pitboss.config import PitBossConfig
from pitboss.governor import reporting
from pitboss.governor.classifier import IssueClassifier
from pitboss.governor.decision import DecisionEngine
from pitboss.governor.errors import InvalidArguments, IssueNotFound, StorageError
from pitboss.governor.ingestor import LogIngestor
from pitboss.governor.investigation import InvestigationStateMachine
from pitboss.governor.ledger import IssueLedger, LedgerCheckpoint
from pitboss.governor.memory import FixAttemptMemory
from pitboss.governor.stores import FixAttemptStore, PendingIssueFile, create_fix_store
from pitboss.governor.sync import ComponentUpdate, StatusSynchronizer, StatusUpdate
from pitboss.governor.types import (
    ComponentHealth,
    DetectResult,
    HealthSignals,
    InvestigationRun,
    InvestigationState,
    Issue,
    LogRecord,
)
from pitboss.primitives.common import HealthStatus, epoch_ms, utc_now

logger = structlog.get_logger()

# Component names accepted by update_health (aliases → HealthSignals field)
_COMPONENTS: dict[str, str] = {
    "server": "server",
    "database": "database",
    "db": "database",
    "unity": "governed_process",
    "client": "governed_process",
    "governed_process": "governed_process",
    "simulation": "simulation",
}


@dataclass
class GovernorSnapshot:
    """Consistent copy of the mutable state, taken under the lock."""

    issues: list[Issue]
    investigation: InvestigationState
    health: HealthSignals
    history: list[InvestigationRun]
    ledger_stats: dict[str, Any]
    taken_at: datetime


class GovernorService:
    """
    PitBoss — the remediation governor.

    Coordinates six sub-systems:
      LogIngestor               — tail and parse the game log
      IssueClassifier           — ordered first-match rules
      IssueLedger               — fingerprint dedup, live issues
      FixAttemptMemory          — what was tried, what failed, what worked
      InvestigationStateMachine — one timed investigation at a time
      DecisionEngine            — pause / resume / start advice
    """

    system_id: str = "governor"

    def __init__(
        self,
        config: PitBossConfig,
        fix_store: FixAttemptStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock
        self._initialized: bool = False
        self._lock = asyncio.Lock()
        self._logger = logger.bind(system="governor")

        self._classifier = IssueClassifier()
        self._ledger = IssueLedger(clock=clock)
        self._memory = FixAttemptMemory(fix_store or create_fix_store(config.memory), clock=clock)
        self._investigation = InvestigationStateMachine(
            timeout_s=config.investigation.timeout_s,
            history_size=config.investigation.history_size,
            clock=clock,
        )
        self._decisions = DecisionEngine()
        self._health = HealthSignals()
        self._pending: PendingIssueFile | None = (
            PendingIssueFile(config.ledger.pending_issues_path)
            if config.ledger.pending_issues_path
            else None
        )

        # Background producers (built in initialize())
        self._ingestor = LogIngestor(
            paths=config.ingest.log_files if config.ingest.enabled else (),
            poll_interval=config.ingest.poll_interval_s,
            backfill_lines=config.ingest.backfill_lines,
            recent_size=config.ingest.recent_buffer_size,
        )
        self._sync: StatusSynchronizer | None = None

        # Counters
        self._started_at: datetime = clock()
        self._lines_ingested: int = 0
        self._issues_from_log: int = 0
        self._persist_failures: int = 0

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Open the fix store, restore persisted issues, and start the
        tail and status-sync loops.
        """
        if self._initialized:
            return

        await self._memory.initialize()

        if self._pending is not None:
            restored = self._ledger.restore(await self._pending.load())
            if restored:
                self._logger.info("pending_issues_restored", count=restored)

        if self._config.ingest.enabled and self._config.ingest.log_files:
            await self._ingestor.start(self.ingest_record)

        if self._config.sync.enabled:
            self._sync = StatusSynchronizer(
                status_file=self._config.sync.status_file,
                apply=self.apply_status,
                interval=self._config.sync.interval_s,
                on_tick=self.housekeeping,
            )
            await self._sync.start()

        self._initialized = True
        self._logger.info(
            "governor_initialized",
            fix_backend=self._memory.store.backend,
            log_files=len(self._config.ingest.log_files),
            active_issues=self._ledger.active_count,
        )

    async def shutdown(self) -> None:
        """Graceful shutdown. Stop background loops, close stores, log final stats."""
        self._logger.info("governor_shutting_down")

        if self._sync is not None:
            await self._sync.stop()
            self._sync = None
        await self._ingestor.stop()

        async with self._lock:
            if self._pending is not None:
                try:
                    await self._pending.save(self._ledger.snapshot())
                except StorageError as exc:
                    self._logger.warning("pending_issues_persist_failed", error=str(exc))

        await self._memory.close()
        self._initialized = False
        self._logger.info(
            "governor_shutdown",
            lines_ingested=self._lines_ingested,
            issues_from_log=self._issues_from_log,
            active_issues=self._ledger.active_count,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def ingestor(self) -> LogIngestor:
        return self._ingestor

    @property
    def memory(self) -> FixAttemptMemory:
        return self._memory

    @property
    def decisions(self) -> DecisionEngine:
        return self._decisions

    # ─── State Helpers ───────────────────────────────────────────────

    async def snapshot(self) -> GovernorSnapshot:
        async with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> GovernorSnapshot:
        return GovernorSnapshot(
            issues=[i.model_copy(deep=True) for i in self._ledger.list_active()],
            investigation=self._investigation.snapshot(),
            health=self._health.model_copy(deep=True),
            history=self._investigation.history,
            ledger_stats=self._ledger.stats,
            taken_at=self._clock(),
        )

    async def _register(self, candidate: Issue) -> DetectResult:
        """
        Put a candidate into the ledger. A first sighting is enriched with
        remedies that worked before and with its related live issues.
        Caller holds the lock.
        """
        result = self._ledger.detect(candidate)
        if result.is_new:
            issue = result.issue
            issue.related_issues = self._ledger.related_to(issue)
            if not issue.possible_fixes:
                try:
                    suggestions = await self._memory.suggest(issue.type)
                except StorageError as exc:
                    self._logger.warning(
                        "fix_suggestions_unavailable", type=issue.type, error=str(exc)
                    )
                else:
                    issue.possible_fixes = [s["fix"] for s in suggestions.should_try]
        return result

    async def _commit(self, checkpoint: LedgerCheckpoint) -> None:
        """Persist the ledger, or undo everything since ``checkpoint``. Caller holds the lock."""
        try:
            await self._persist_issues()
        except StorageError:
            self._ledger.rollback(checkpoint)
            raise

    async def _persist_issues(self) -> None:
        """Mirror the ledger to the pending-issues file. Caller holds the lock."""
        if self._pending is None:
            return
        try:
            await self._pending.save(self._ledger.snapshot())
        except StorageError:
            self._persist_failures += 1
            raise

    # ─── Ingestion ───────────────────────────────────────────────────

    async def ingest_record(self, record: LogRecord) -> DetectResult | None:
        """Classify a tailed record and register any issue it produces."""
        self._lines_ingested += 1
        candidate = self._classifier.classify(record)
        if candidate is None:
            return None
        async with self._lock:
            result = await self._register(candidate)
            if result.is_new:
                # No caller to retry on the tail path: keep the issue live
                try:
                    await self._persist_issues()
                except StorageError as exc:
                    self._logger.warning("pending_issues_persist_failed", error=str(exc))
        self._issues_from_log += 1
        return result

    async def ingest_line(self, line: str, source: str = "") -> DetectResult | None:
        record = self._ingestor.parse_line(line, source)
        if record is None:
            return None
        return await self.ingest_record(record)

    # ─── Issues ──────────────────────────────────────────────────────

    async def detect_issue(self, log_line: str) -> dict[str, Any] | None:
        """Classify one line on demand. None when it is noise or matches no rule."""
        if not log_line or not log_line.strip():
            raise InvalidArguments("logLine required")
        record = self._ingestor.parse_line(log_line)
        if record is None:
            return None
        candidate = self._classifier.classify(record)
        if candidate is None:
            return None
        async with self._lock:
            checkpoint = self._ledger.checkpoint()
            result = await self._register(candidate)
            if result.is_new:
                await self._commit(checkpoint)
            issue = result.issue.summary()
        return {
            "issue": issue,
            "isNew": result.is_new,
            "confidence": result.issue.confidence,
            "method": result.issue.method.value,
        }

    async def add_issue(self, payload: Any) -> dict[str, Any]:
        candidate = self._classifier.from_payload(payload)
        async with self._lock:
            checkpoint = self._ledger.checkpoint()
            result = await self._register(candidate)
            await self._commit(checkpoint)
            issue = result.issue.summary()
        return {"success": True, "issueId": issue["id"], "isNew": result.is_new, "issue": issue}

    async def resolve_issue(self, issue_id: str) -> dict[str, Any]:
        if not issue_id:
            raise InvalidArguments("issueId required")
        async with self._lock:
            checkpoint = self._ledger.checkpoint()
            if issue_id == "all":
                count = self._ledger.resolve_all()
                await self._commit(checkpoint)
                return {"success": True, "resolved": count, "remaining": 0}
            issue = self._ledger.resolve(issue_id)
            if issue is None:
                raise IssueNotFound(issue_id)
            await self._commit(checkpoint)
            return {
                "success": True,
                "resolved": 1,
                "issue": issue.summary(),
                "remaining": self._ledger.active_count,
            }

    async def get_active_issues(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return {"count": len(snap.issues), "issues": [i.summary() for i in snap.issues]}

    # ─── Decisions ───────────────────────────────────────────────────

    async def should_start_investigation(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_start_investigation(snap.issues, snap.investigation).summary()

    async def should_pause_unity(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_pause_unity(snap.issues, snap.health).summary()

    async def should_resume_unity(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_resume_unity(snap.issues, snap.health).summary()

    async def should_start_server(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_start_server(snap.health).summary()

    async def should_start_unity(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_start_unity(snap.issues, snap.health).summary()

    async def should_start_simulation(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return self._decisions.should_start_simulation(
            snap.issues, snap.health, snap.investigation
        ).summary()

    # ─── Investigation ───────────────────────────────────────────────

    async def get_investigation_status(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return reporting.investigation_summary(snap.investigation, snap.issues, snap.history[-5:])

    async def start_investigation(self) -> dict[str, Any]:
        async with self._lock:
            snap = self._snapshot_locked()
            decision = self._decisions.should_start_investigation(snap.issues, snap.investigation)
            if not decision.should:
                return {"success": False, "reason": decision.reason}
            state = self._investigation.start(decision)
        return {
            "success": True,
            "reason": decision.reason,
            "priority": decision.priority.value if decision.priority else None,
            "startTime": epoch_ms(state.start_time) if state.start_time else None,
            "timeout": state.timeout_seconds,
        }

    async def complete_investigation(self) -> dict[str, Any]:
        async with self._lock:
            run = self._investigation.complete(issues_found=self._ledger.active_count)
        return {
            "success": True,
            "timestamp": epoch_ms(self._clock()),
            "run": run.model_dump(mode="json") if run is not None else None,
        }

    # ─── Fix Memory ──────────────────────────────────────────────────

    async def get_suggested_fixes(self, issue_id: str) -> dict[str, Any]:
        if not issue_id:
            raise InvalidArguments("issueId required")
        async with self._lock:
            issue = self._ledger.get(issue_id)
            if issue is None:
                raise IssueNotFound(issue_id)
            summary = issue.summary()
            issue_type = issue.type
        suggestions = await self._memory.suggest(issue_type)
        return {
            "issue": summary,
            "shouldTry": suggestions.should_try,
            "shouldNotTry": suggestions.should_not_try,
            "confidence": suggestions.confidence,
        }

    async def record_fix_attempt(
        self,
        issue_id: str,
        fix_method: str,
        result: Any,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Record a remedy's outcome. ``issue_id`` may be a live issue id or,
        for issues no longer in the ledger, the issue type itself.
        """
        if not issue_id:
            raise InvalidArguments("issueId required")
        async with self._lock:
            issue = self._ledger.get(issue_id)
            issue_type = issue.type if issue is not None else issue_id
            recorded = await self._memory.record(issue_type, fix_method, result, details)
        return {
            "success": True,
            "issueId": issue_id,
            "issueType": issue_type,
            "totalAttempts": recorded.total_attempts,
            "successCount": recorded.success_count,
            "failureCount": recorded.failure_count,
            "successRate": recorded.success_rate,
        }

    async def check_fix(self, issue_type: str, proposed_fix: str) -> dict[str, Any]:
        if not issue_type:
            raise InvalidArguments("issueType required")
        async with self._lock:
            issue = self._ledger.get(issue_type)
            if issue is not None:
                issue_type = issue.type
        verdict = await self._memory.check(issue_type, proposed_fix)
        return {"issueType": issue_type, **verdict.summary()}

    async def get_fix_history(self, issue_type: str | None = None) -> dict[str, Any]:
        if issue_type:
            return reporting.fix_history_summary(await self._memory.history(issue_type))
        summaries = await self._memory.summaries()
        return {
            "totalIssues": len(summaries),
            "issues": {h.issue_type: reporting.fix_history_summary(h) for h in summaries},
        }

    # ─── Health Signals ──────────────────────────────────────────────

    async def update_health(
        self,
        component: str,
        status: str,
        health: float | None = None,
    ) -> dict[str, Any]:
        field = _COMPONENTS.get((component or "").lower())
        if field is None:
            raise InvalidArguments(
                f"Unknown component: {component}. Expected one of {sorted(_COMPONENTS)}"
            )
        if not status:
            raise InvalidArguments("status required")
        async with self._lock:
            self._apply_component(field, ComponentUpdate(status=status, health=health))
            current = getattr(self._health, field).model_dump(mode="json")
        return {"success": True, "component": field, "state": current}

    def _apply_component(self, field: str, update: ComponentUpdate) -> None:
        current: ComponentHealth = getattr(self._health, field)
        if update.status is not None and update.status != current.status:
            self._logger.info(
                "component_status_changed",
                component=field,
                from_status=current.status,
                to_status=update.status,
            )
            current.status = update.status
        if update.health is not None:
            current.health = update.health
        if update.metrics:
            current.metrics = {**current.metrics, **update.metrics}
        current.updated_at = self._clock()

    async def apply_status(self, update: StatusUpdate) -> None:
        """Fold one parsed status-file update into shared state."""
        async with self._lock:
            if update.investigation_active is not None:
                self._investigation.sync_external(
                    update.investigation_active,
                    start_time=update.investigation_start,
                    timeout_seconds=update.investigation_timeout_s,
                )
            if update.governed_process is not None:
                self._apply_component("governed_process", update.governed_process)
            if update.server is not None:
                self._apply_component("server", update.server)
            if update.database is not None:
                self._apply_component("database", update.database)

    async def housekeeping(self) -> None:
        """Per-tick upkeep: expire overdue investigations, prune stale issues."""
        async with self._lock:
            if self._config.investigation.auto_complete_on_timeout:
                run = self._investigation.expire_if_overdue(issues_found=self._ledger.active_count)
                if run is not None:
                    self._logger.info("investigation_timed_out", duration_s=round(run.duration_s, 1))
            max_age = self._config.ledger.stale_issue_max_age_s
            if max_age > 0 and self._ledger.prune_stale(max_age):
                await self._persist_issues()

    # ─── Reporting ───────────────────────────────────────────────────

    async def get_live_statistics(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return await reporting.live_statistics(self, snap)

    async def query(self, text: str) -> dict[str, Any]:
        if not text or not text.strip():
            raise InvalidArguments("query text required")
        snap = await self.snapshot()
        return await reporting.QueryRouter(self).answer(text, snap)

    async def get_status_report(self) -> dict[str, Any]:
        snap = await self.snapshot()
        return await reporting.status_report(self, snap)

    # ─── Health ──────────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        """Self-health report for the gateway's ping and for operators."""
        if not self._initialized:
            status = HealthStatus.UNHEALTHY
        elif self._persist_failures:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return {
            "status": status.value,
            "initialized": self._initialized,
            "uptime_s": round((self._clock() - self._started_at).total_seconds(), 1),
            "active_issues": self._ledger.active_count,
            "investigation": self._investigation.status.value,
            "ledger": self._ledger.stats,
            "classifier": self._classifier.stats,
            "memory": self._memory.stats,
            "ingestor": self._ingestor.stats,
            "sync": self._sync.stats if self._sync is not None else None,
            "persist_failures": self._persist_failures,
        }

    @property
    def stats(self) -> dict[str, Any]:
        """Synchronous stats for logging."""
        return {
            "initialized": self._initialized,
            "lines_ingested": self._lines_ingested,
            "issues_from_log": self._issues_from_log,
            "active_issues": self._ledger.active_count,
            "investigation": self._investigation.status.value,
        }
