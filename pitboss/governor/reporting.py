"""
PitBoss — Reporting & Free-Text Queries

Read-only views over a GovernorSnapshot: live statistics, the full
status report, recommendations, and the keyword router behind the
``query`` command. Nothing here mutates governor state.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from pitboss.governor.types import (
    QUALIFYING_SEVERITIES,
    FixHistory,
    InvestigationRun,
    InvestigationState,
    Issue,
    LogLevel,
)
from pitboss.primitives.common import epoch_ms

if TYPE_CHECKING:
    from pitboss.governor.service import GovernorService, GovernorSnapshot

logger = structlog.get_logger()

_MAX_FIX_RECOMMENDATIONS = 5
_RECENT_FIXES = 10
_SEARCH_LIMIT = 20


# ─── Summaries ───────────────────────────────────────────────────


def investigation_summary(
    state: InvestigationState,
    issues: Sequence[Issue],
    history: Sequence[InvestigationRun] = (),
) -> dict[str, Any]:
    return {
        "active": state.active,
        "status": state.status.value,
        "startTime": epoch_ms(state.start_time) if state.start_time else None,
        "timeout": state.timeout_seconds,
        "progress": round(state.progress, 4),
        "timeRemaining": round(state.time_remaining_seconds, 1),
        "issues": [i.summary() for i in issues],
        "issuesCount": len(issues),
        "history": [run.model_dump(mode="json") for run in history],
    }


def fix_history_summary(history: FixHistory) -> dict[str, Any]:
    return {
        "issueType": history.issue_type,
        "totalAttempts": history.total_attempts,
        "successCount": history.success_count,
        "failureCount": history.failure_count,
        "successRate": history.success_rate,
        "lastAttempt": history.last_attempt.isoformat() if history.last_attempt else None,
        "recentFailures": [a.summary() for a in history.recent_failures],
        "recentSuccesses": [a.summary() for a in history.recent_successes],
    }


def health_summary(snap: GovernorSnapshot) -> dict[str, Any]:
    return {
        "server": snap.health.server.model_dump(mode="json"),
        "database": snap.health.database.model_dump(mode="json"),
        "unity": snap.health.governed_process.model_dump(mode="json"),
        "simulation": snap.health.simulation.model_dump(mode="json"),
    }


def issue_breakdown(issues: Sequence[Issue]) -> dict[str, Any]:
    return {
        "active": len(issues),
        "bySeverity": dict(Counter(i.severity.value for i in issues)),
        "bySource": dict(Counter(i.source.value for i in issues)),
        "byType": dict(Counter(i.type for i in issues)),
    }


# ─── Recommendations ─────────────────────────────────────────────


async def recommendations(service: GovernorService, snap: GovernorSnapshot) -> list[dict[str, Any]]:
    """What to do next, most important first."""
    engine = service.decisions
    recs: list[dict[str, Any]] = [
        {"type": "priority", **engine.priority_summary(snap.issues, snap.health, snap.investigation)}
    ]

    pause = engine.should_pause_unity(snap.issues, snap.health)
    if pause.should:
        recs.append({"type": "pause_unity", "reason": pause.reason, "confidence": pause.confidence})
    resume = engine.should_resume_unity(snap.issues, snap.health)
    if resume.should:
        recs.append({"type": "resume_unity", "reason": resume.reason, "confidence": resume.confidence})
    start = engine.should_start_investigation(snap.issues, snap.investigation)
    if start.should:
        recs.append({"type": "start_investigation", "reason": start.reason, "confidence": start.confidence})

    qualifying = [i for i in snap.issues if i.severity in QUALIFYING_SEVERITIES]
    for issue in qualifying[:_MAX_FIX_RECOMMENDATIONS]:
        suggestions = await service.memory.suggest(issue.type)
        recs.append(
            {
                "type": "fix",
                "issueId": issue.id,
                "issueType": issue.type,
                "severity": issue.severity.value,
                "rootCause": issue.root_cause,
                "shouldTry": [s["fix"] for s in suggestions.should_try[:3]],
                "shouldNotTry": [s["fix"] for s in suggestions.should_not_try[:3]],
                "confidence": suggestions.confidence,
            }
        )
    return recs


# ─── Statistics & Reports ────────────────────────────────────────


async def live_statistics(service: GovernorService, snap: GovernorSnapshot) -> dict[str, Any]:
    return {
        "timestamp": epoch_ms(snap.taken_at),
        "system": health_summary(snap),
        "monitoring": {
            "investigation": {
                "status": snap.investigation.status.value,
                "progress": round(snap.investigation.progress, 4),
                "timeRemaining": round(snap.investigation.time_remaining_seconds, 1),
                "completedRuns": len(snap.history),
            },
            "ingestion": service.ingestor.stats,
        },
        "issues": {**issue_breakdown(snap.issues), **snap.ledger_stats},
        "fixes": await service.memory.totals(),
        "recommendations": await recommendations(service, snap),
    }


async def status_report(service: GovernorService, snap: GovernorSnapshot) -> dict[str, Any]:
    statistics = await live_statistics(service, snap)
    histories = await service.memory.summaries()
    engine = service.decisions
    return {
        "timestamp": statistics["timestamp"],
        "statistics": statistics,
        "state": {
            "investigation": investigation_summary(snap.investigation, (), snap.history[-5:]),
            "health": health_summary(snap),
        },
        "issues": {"count": len(snap.issues), "items": [i.summary() for i in snap.issues]},
        "fixes": {
            "recent": [
                {"issueType": a.issue_type, **a.summary()}
                for a in await service.memory.recent(_RECENT_FIXES)
            ],
            "working": [
                {"issueType": h.issue_type, "fix": a.fix_description}
                for h in histories
                for a in h.recent_successes
            ],
            "failed": [
                {"issueType": h.issue_type, "fix": a.fix_description}
                for h in histories
                for a in h.recent_failures
            ],
            "stats": statistics["fixes"],
        },
        "decisions": {
            "startInvestigation": engine.should_start_investigation(
                snap.issues, snap.investigation
            ).summary(),
            "pauseUnity": engine.should_pause_unity(snap.issues, snap.health).summary(),
            "resumeUnity": engine.should_resume_unity(snap.issues, snap.health).summary(),
        },
        "recommendations": statistics["recommendations"],
    }


# ─── Query Router ────────────────────────────────────────────────


_ISSUE_REF_RE = re.compile(r"\b(?:issue|for)\s+(?:issue\s+)?([a-z0-9_-]+)")

QueryHandler = Callable[[str, "GovernorSnapshot"], Awaitable[Any]]


@dataclass(frozen=True)
class QueryRoute:
    name: str
    predicate: Callable[[str], bool]
    handler: str


def _has(*words: str) -> Callable[[str], bool]:
    return lambda text: any(w in text for w in words)


def _has_all(first: str, *others: str) -> Callable[[str], bool]:
    return lambda text: first in text and any(o in text for o in others)


# First match wins; the fallback is a plain text search
ROUTES: tuple[QueryRoute, ...] = (
    QueryRoute("state", _has("current state", "what is the state"), "_state"),
    QueryRoute("issues", _has("active issue", "what issue"), "_issues"),
    QueryRoute("fix_attempts", _has("fix attempt", "what fix"), "_fix_attempts"),
    QueryRoute("investigation", _has("investigation"), "_investigation"),
    QueryRoute("errors", _has_all("error", "occurred", "happened"), "_errors"),
    QueryRoute("health", _has("health"), "_health"),
    QueryRoute("recommendations", _has("what should", "recommendation"), "_recommendations"),
    QueryRoute("failures", _has_all("why", "fail"), "_failures"),
    QueryRoute("patterns", _has_all("pattern", "lead"), "_patterns"),
)


class QueryRouter:
    """Keyword routing for free-text questions about the governor."""

    def __init__(self, service: GovernorService) -> None:
        self._service = service

    async def answer(self, text: str, snap: GovernorSnapshot) -> dict[str, Any]:
        lower = text.lower()
        route_name = "search"
        handler: QueryHandler = self._search
        for route in ROUTES:
            if route.predicate(lower):
                route_name = route.name
                handler = getattr(self, route.handler)
                break
        logger.debug("query_routed", route=route_name)
        return {
            "query": text,
            "type": route_name,
            "answer": await handler(lower, snap),
            "timestamp": epoch_ms(snap.taken_at),
        }

    async def _issue_types(self, snap: GovernorSnapshot) -> list[str]:
        known = {i.type for i in snap.issues}
        known.update(await self._service.memory.store.issue_types())
        return sorted(known)

    async def _referenced_type(self, text: str, snap: GovernorSnapshot) -> str | None:
        match = _ISSUE_REF_RE.search(text)
        if not match:
            return None
        ref = match.group(1)
        for issue in snap.issues:
            if issue.id == ref:
                return issue.type
        for issue_type in await self._issue_types(snap):
            if issue_type.lower() == ref:
                return issue_type
        return None

    async def _state(self, text: str, snap: GovernorSnapshot) -> Any:
        return {
            "investigation": investigation_summary(snap.investigation, ()),
            "health": health_summary(snap),
            "activeIssues": len(snap.issues),
        }

    async def _issues(self, text: str, snap: GovernorSnapshot) -> Any:
        return {"count": len(snap.issues), "issues": [i.summary() for i in snap.issues]}

    async def _fix_attempts(self, text: str, snap: GovernorSnapshot) -> Any:
        memory = self._service.memory
        issue_type = await self._referenced_type(text, snap)
        if issue_type is not None:
            return fix_history_summary(await memory.history(issue_type))
        return {h.issue_type: fix_history_summary(h) for h in await memory.summaries()}

    async def _investigation(self, text: str, snap: GovernorSnapshot) -> Any:
        return investigation_summary(snap.investigation, snap.issues, snap.history[-5:])

    async def _errors(self, text: str, snap: GovernorSnapshot) -> Any:
        records = self._service.ingestor.recent(limit=_SEARCH_LIMIT, level=LogLevel.ERROR)
        return {"count": len(records), "errors": [r.model_dump(mode="json") for r in records]}

    async def _health(self, text: str, snap: GovernorSnapshot) -> Any:
        return {"components": health_summary(snap), "governor": await self._service.health()}

    async def _recommendations(self, text: str, snap: GovernorSnapshot) -> Any:
        return await recommendations(self._service, snap)

    async def _failures(self, text: str, snap: GovernorSnapshot) -> Any:
        memory = self._service.memory
        issue_type = await self._referenced_type(text, snap)
        types = [issue_type] if issue_type else await memory.store.issue_types()
        analysis = []
        for t in types:
            history = await memory.history(t)
            if not history.failure_count:
                continue
            analysis.append(
                {
                    "issueType": t,
                    "failureCount": history.failure_count,
                    "successRate": history.success_rate,
                    "failedFixes": [a.fix_description for a in history.recent_failures],
                    "failedMethods": await memory.store.failed_method_counts(t),
                }
            )
        return {"count": len(analysis), "failures": analysis}

    async def _patterns(self, text: str, snap: GovernorSnapshot) -> Any:
        by_type: dict[str, dict[str, Any]] = {}
        for issue in snap.issues:
            entry = by_type.setdefault(
                issue.type,
                {"issueType": issue.type, "occurrences": 0, "rootCause": issue.root_cause, "sources": set()},
            )
            entry["occurrences"] += issue.count
            entry["sources"].add(issue.source.value)
        patterns = sorted(by_type.values(), key=lambda e: (-e["occurrences"], e["issueType"]))
        for entry in patterns:
            entry["sources"] = sorted(entry["sources"])
            entry["fixSuccessRate"] = (await self._service.memory.history(entry["issueType"])).success_rate
        return {"count": len(patterns), "patterns": patterns}

    async def _search(self, text: str, snap: GovernorSnapshot) -> Any:
        terms = [t for t in re.split(r"\W+", text) if len(t) > 2]
        if not terms:
            return {"count": 0, "results": []}

        def hit(haystack: str) -> bool:
            lower = haystack.lower()
            return any(term in lower for term in terms)

        results: list[dict[str, Any]] = []
        for issue in snap.issues:
            if hit(issue.type) or hit(issue.message):
                results.append({"kind": "issue", **issue.summary()})
        for attempt in await self._service.memory.recent(limit=200):
            if hit(attempt.issue_type) or hit(attempt.fix_description):
                results.append({"kind": "fix_attempt", "issueType": attempt.issue_type, **attempt.summary()})
        for record in self._service.ingestor.recent(limit=200):
            if hit(record.message):
                results.append(
                    {
                        "kind": "log",
                        "message": record.message,
                        "level": record.level.value if record.level else None,
                    }
                )
        return {"count": len(results[:_SEARCH_LIMIT]), "results": results[:_SEARCH_LIMIT]}
