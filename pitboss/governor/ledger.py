"""
PitBoss — Issue Ledger (Deduplication & Live Issues)

Classifier output lands here. The ledger keeps at most one live issue
per fingerprint:
  1. Fingerprint — stable hash over the issue's identity fields
  2. Deduplicate — same fingerprint → increment count, refresh last_seen
  3. Resolve — drop issues explicitly, wholesale, or when stale

An empty ledger is what allows the governed process to resume.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from pitboss.governor.types import (
    SEVERITY_RANK,
    DetectionMethod,
    DetectResult,
    Issue,
)
from pitboss.primitives.common import utc_now

logger = structlog.get_logger()


def compute_fingerprint(**parts: Any) -> str:
    """
    sha256 over the canonical, lower-cased, key-sorted parts, truncated
    to 16 hex chars. Argument order never changes the result.
    """
    canonical = "|".join(
        f"{key}={str(value).strip().lower()}" for key, value in sorted(parts.items())
    )
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def _table_of(issue: Issue) -> Any:
    return issue.context.get("table_id") or issue.context.get("tableId")


def are_related(a: Issue, b: Issue) -> bool:
    """
    Same type, same table, or a chip issue next to a pot issue. Chip
    and pot accounting move together, so one usually explains the other.
    """
    if a.type == b.type:
        return True
    table_a = _table_of(a)
    if table_a and table_a == _table_of(b):
        return True
    return ("CHIP" in a.type and "POT" in b.type) or ("POT" in a.type and "CHIP" in b.type)


@dataclass(frozen=True)
class LedgerCheckpoint:
    """Deep copy of the live set and counters, for undoing a failed commit."""

    active: dict[str, Issue]
    total_detected: int
    total_resolved: int


def issue_fingerprint(issue: Issue) -> str:
    """Pattern detections are keyed by (type, severity); manual reports by (type, source)."""
    if issue.method == DetectionMethod.MANUAL:
        return compute_fingerprint(type=issue.type, source=issue.source.value)
    return compute_fingerprint(type=issue.type, severity=issue.severity.value)


class IssueLedger:
    """
    Same fingerprint → increment count, don't create a new issue. This
    keeps one noisy line from flooding the governor with thousands of
    identical issues.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        # fingerprint → live issue
        self._active: dict[str, Issue] = {}
        self._clock = clock
        self._total_detected: int = 0
        self._total_resolved: int = 0
        self._logger = logger.bind(system="governor", component="issue_ledger")

    def detect(self, issue: Issue) -> DetectResult:
        """
        Register a candidate. A repeat bumps the live issue's count and
        last_seen; a first sighting is stored with count 1.
        """
        now = self._clock()
        fingerprint = issue.fingerprint or issue_fingerprint(issue)
        self._total_detected += 1

        existing = self._active.get(fingerprint)
        if existing is not None:
            existing.count += 1
            existing.last_seen = now
            self._logger.debug(
                "issue_deduplicated",
                fingerprint=fingerprint,
                type=existing.type,
                count=existing.count,
            )
            return DetectResult(issue=existing, is_new=False)

        issue.fingerprint = fingerprint
        issue.id = fingerprint
        issue.count = 1
        issue.first_seen = now
        issue.last_seen = now
        self._active[fingerprint] = issue
        self._logger.info(
            "issue_detected",
            issue_id=issue.id,
            type=issue.type,
            severity=issue.severity.value,
            source=issue.source.value,
            method=issue.method.value,
        )
        return DetectResult(issue=issue, is_new=True)

    def get(self, issue_id: str) -> Issue | None:
        issue = self.get_by_fingerprint(issue_id)
        if issue is not None:
            return issue
        for candidate in self._active.values():
            if candidate.id == issue_id:
                return candidate
        return None

    def get_by_fingerprint(self, fingerprint: str) -> Issue | None:
        return self._active.get(fingerprint)

    def related_to(self, issue: Issue) -> list[str]:
        """Ids of other live issues related to ``issue``, in list_active order."""
        return [
            other.id
            for other in self.list_active()
            if other.fingerprint != issue.fingerprint and are_related(issue, other)
        ]

    def list_active(self) -> list[Issue]:
        """Severity rank, then most recently seen, then fingerprint."""
        return sorted(
            self._active.values(),
            key=lambda i: (SEVERITY_RANK[i.severity], -i.last_seen.timestamp(), i.fingerprint),
        )

    def resolve(self, issue_id: str) -> Issue | None:
        """Remove a resolved issue from the live set."""
        issue = self.get(issue_id)
        if issue is None:
            return None
        del self._active[issue.fingerprint]
        self._total_resolved += 1
        self._logger.info("issue_resolved", issue_id=issue.id, type=issue.type)
        return issue

    def resolve_all(self) -> int:
        count = len(self._active)
        self._active.clear()
        self._total_resolved += count
        if count:
            self._logger.info("issues_resolved_all", count=count)
        return count

    def prune_stale(self, max_age_s: float = 7200.0) -> int:
        """Remove issues not seen for more than max_age_s. Returns count removed."""
        now = self._clock()
        stale = [
            fp
            for fp, issue in self._active.items()
            if (now - issue.last_seen).total_seconds() > max_age_s
        ]
        for fp in stale:
            del self._active[fp]
        self._total_resolved += len(stale)
        if stale:
            self._logger.info("stale_issues_pruned", count=len(stale))
        return len(stale)

    def checkpoint(self) -> LedgerCheckpoint:
        return LedgerCheckpoint(
            active={fp: issue.model_copy(deep=True) for fp, issue in self._active.items()},
            total_detected=self._total_detected,
            total_resolved=self._total_resolved,
        )

    def rollback(self, checkpoint: LedgerCheckpoint) -> None:
        """Put the live set back exactly as it was when ``checkpoint`` was taken."""
        self._active = {fp: issue.model_copy(deep=True) for fp, issue in checkpoint.active.items()}
        self._total_detected = checkpoint.total_detected
        self._total_resolved = checkpoint.total_resolved
        self._logger.info("ledger_rolled_back", active=len(self._active))

    def snapshot(self) -> list[dict[str, Any]]:
        return [issue.model_dump(mode="json") for issue in self.list_active()]

    def restore(self, records: list[dict[str, Any]]) -> int:
        """Load persisted issues. Malformed entries are skipped."""
        restored = 0
        for record in records:
            try:
                issue = Issue.model_validate(record)
            except ValueError as exc:
                self._logger.warning("pending_issue_skipped", error=str(exc))
                continue
            if not issue.fingerprint:
                issue.fingerprint = issue_fingerprint(issue)
            if not issue.id:
                issue.id = issue.fingerprint
            self._active[issue.fingerprint] = issue
            restored += 1
        return restored

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "active": len(self._active),
            "total_detected": self._total_detected,
            "total_resolved": self._total_resolved,
        }
