"""
PitBoss — Fix-Attempt Memory

The governor's record of every remedy tried against every issue type.
Before anything applies a fix it asks ``check()``: has this exact remedy
failed before, has something that looks like it failed before, and what
has actually worked?

Lookup order (first answer wins):
  1. No history             → safe to try
  2. Exact match (any case) → HIGH warning if it failed, all clear if it worked
  3. Similar failures       → MEDIUM warning with the last three lookalikes
  4. Past successes         → the last three as guidance
  5. Only failures on file  → HIGH warning, try something else entirely

"Similar" is deliberately crude: the first ten lower-cased characters
of either text appearing anywhere in the other. Short or generic
descriptions ("restart", "fix the pot") over-match; that is the known
behaviour callers rely on.

History is append-only. Nothing here edits or deletes an attempt.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from pitboss.governor.errors import InvalidArguments
from pitboss.governor.stores import FixAttemptStore
from pitboss.governor.types import (
    FixAttempt,
    FixHistory,
    FixOutcome,
    FixRecordResult,
    FixSuggestions,
    FixVerdict,
)
from pitboss.primitives.common import utc_now

logger = structlog.get_logger()

_FUZZY_PREFIX_CHARS = 10
_RECENT_LIMIT = 3
_HISTORY_FAILURES = 5
_MAX_SUGGESTIONS = 5


def _looks_similar(proposed_lower: str, previous: str) -> bool:
    previous_lower = previous.lower()
    return (
        proposed_lower[:_FUZZY_PREFIX_CHARS] in previous_lower
        or previous_lower[:_FUZZY_PREFIX_CHARS] in proposed_lower
    )


class FixAttemptMemory:
    """
    Remedy history keyed by issue type, on top of any FixAttemptStore.
    """

    def __init__(
        self,
        store: FixAttemptStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._recorded: int = 0
        self._checks: int = 0
        self._warnings: int = 0
        self._logger = logger.bind(system="governor", component="fix_memory")

    @property
    def store(self) -> FixAttemptStore:
        return self._store

    async def initialize(self) -> None:
        await self._store.initialize()
        self._logger.info("fix_memory_initialized", backend=self._store.backend)

    async def close(self) -> None:
        await self._store.close()

    # ─── Record ──────────────────────────────────────────────────────

    async def record(
        self,
        issue_type: str,
        fix_description: str,
        outcome: FixOutcome | str | bool,
        details: dict[str, Any] | None = None,
    ) -> FixRecordResult:
        """Append one attempt and return the running totals for the type."""
        if not issue_type or not str(issue_type).strip():
            raise InvalidArguments("issue type is required")
        if not fix_description or not str(fix_description).strip():
            raise InvalidArguments("fix description is required")
        try:
            parsed = outcome if isinstance(outcome, FixOutcome) else FixOutcome.parse(outcome)
        except ValueError as exc:
            raise InvalidArguments(str(exc)) from exc

        attempt = FixAttempt(
            issue_type=issue_type,
            fix_description=fix_description,
            outcome=parsed,
            timestamp=self._clock(),
            details=details or {},
        )
        await self._store.append(attempt)
        self._recorded += 1

        attempts = await self._store.attempts_for(issue_type)
        successes = sum(1 for a in attempts if a.succeeded)
        result = FixRecordResult(
            issue_type=issue_type,
            total_attempts=len(attempts),
            success_count=successes,
            failure_count=len(attempts) - successes,
        )
        self._logger.info(
            "fix_attempt_recorded",
            issue_type=issue_type,
            fix=fix_description,
            outcome=parsed.value,
            success_rate=result.success_rate,
        )
        return result

    # ─── Check ───────────────────────────────────────────────────────

    async def check(self, issue_type: str, proposed_fix: str) -> FixVerdict:
        """Has this remedy, or one like it, been tried for this issue type?"""
        if not proposed_fix or not proposed_fix.strip():
            raise InvalidArguments("proposed fix is required")
        self._checks += 1
        verdict = self._evaluate(await self._store.attempts_for(issue_type), proposed_fix)
        if verdict.warning:
            self._warnings += 1
            self._logger.info(
                "fix_check_warning",
                issue_type=issue_type,
                fix=proposed_fix,
                severity=verdict.severity,
            )
        return verdict

    def _evaluate(self, attempts: list[FixAttempt], proposed_fix: str) -> FixVerdict:
        if not attempts:
            return FixVerdict(
                warning=False,
                message="No previous attempts for this issue - safe to try",
            )

        proposed_lower = proposed_fix.lower()

        exact = next(
            (a for a in attempts if a.fix_description.lower() == proposed_lower),
            None,
        )
        if exact is not None:
            if not exact.succeeded:
                return FixVerdict(
                    warning=True,
                    severity="HIGH",
                    message="This exact fix was tried before and FAILED",
                    recommendation="Try a different approach - this one didn't work",
                    previous_attempt=exact,
                )
            return FixVerdict(
                warning=False,
                message="This fix was tried before and SUCCEEDED",
                previous_attempt=exact,
            )

        similar = [
            a for a in attempts
            if not a.succeeded and _looks_similar(proposed_lower, a.fix_description)
        ]
        if similar:
            return FixVerdict(
                warning=True,
                severity="MEDIUM",
                message="Similar fixes were tried before and FAILED",
                recommendation="Be careful - similar approaches didn't work",
                similar_failures=similar[-_RECENT_LIMIT:],
            )

        successes = [a for a in attempts if a.succeeded]
        if successes:
            return FixVerdict(
                warning=False,
                message="No exact match, but here's what worked before:",
                successful_attempts=successes[-_RECENT_LIMIT:],
            )

        failures = len(attempts) - len(successes)
        if failures > 0:
            return FixVerdict(
                warning=True,
                severity="HIGH",
                message=f"{failures} attempts failed, none succeeded",
                recommendation="Consider a completely different approach",
            )

        return FixVerdict(warning=False, message="No exact match found - safe to try")

    # ─── History ─────────────────────────────────────────────────────

    async def history(self, issue_type: str) -> FixHistory:
        attempts = await self._store.attempts_for(issue_type)
        failures = [a for a in attempts if not a.succeeded]
        successes = [a for a in attempts if a.succeeded]
        return FixHistory(
            issue_type=issue_type,
            total_attempts=len(attempts),
            success_count=len(successes),
            failure_count=len(failures),
            last_attempt=attempts[-1].timestamp if attempts else None,
            recent_failures=failures[-_HISTORY_FAILURES:],
            recent_successes=successes[-_RECENT_LIMIT:],
        )

    async def summaries(self) -> list[FixHistory]:
        """One aggregated history per issue type on file."""
        return [await self.history(t) for t in await self._store.issue_types()]

    async def recent(self, limit: int = 10) -> list[FixAttempt]:
        """Most recent attempts across all issue types, newest last."""
        attempts: list[FixAttempt] = []
        for issue_type in await self._store.issue_types():
            attempts.extend(await self._store.attempts_for(issue_type))
        attempts.sort(key=lambda a: a.timestamp)
        return attempts[-limit:] if limit > 0 else []

    # ─── Suggestions ─────────────────────────────────────────────────

    async def suggest(self, issue_type: str) -> FixSuggestions:
        """
        What has worked for this issue type, and what keeps failing.
        Confidence is the success rate of the best remedy on file.
        """
        attempts = await self._store.attempts_for(issue_type)
        tallies: dict[str, dict[str, Any]] = {}
        for attempt in attempts:
            key = attempt.fix_description.lower()
            tally = tallies.setdefault(
                key,
                {"fix": attempt.fix_description, "successes": 0, "failures": 0, "last": None},
            )
            tally["successes" if attempt.succeeded else "failures"] += 1
            tally["last"] = attempt.timestamp

        should_try = sorted(
            (t for t in tallies.values() if t["successes"] > 0),
            key=lambda t: (-t["successes"], t["failures"], t["fix"]),
        )[:_MAX_SUGGESTIONS]

        failed_counts = await self._store.failed_method_counts(issue_type)
        should_not_try = sorted(
            (
                {"fix": method, "failures": count}
                for method, count in failed_counts.items()
                if tallies.get(method.lower(), {}).get("successes", 0) == 0
            ),
            key=lambda t: (-t["failures"], t["fix"]),
        )

        confidence = 0.0
        if should_try:
            best = should_try[0]
            confidence = round(best["successes"] / (best["successes"] + best["failures"]), 2)

        return FixSuggestions(
            should_try=[
                {
                    "fix": t["fix"],
                    "successes": t["successes"],
                    "failures": t["failures"],
                    "successRate": f"{t['successes']}/{t['successes'] + t['failures']}",
                    "lastAttempt": t["last"].isoformat() if t["last"] else None,
                }
                for t in should_try
            ],
            should_not_try=should_not_try,
            confidence=confidence,
        )

    async def totals(self) -> dict[str, Any]:
        total = successes = 0
        types = await self._store.issue_types()
        for issue_type in types:
            attempts = await self._store.attempts_for(issue_type)
            total += len(attempts)
            successes += sum(1 for a in attempts if a.succeeded)
        return {
            "issue_types": len(types),
            "total_attempts": total,
            "successes": successes,
            "failures": total - successes,
            "success_rate": round(successes / total, 3) if total else 0.0,
        }

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "backend": self._store.backend,
            "recorded": self._recorded,
            "checks": self._checks,
            "warnings": self._warnings,
        }
