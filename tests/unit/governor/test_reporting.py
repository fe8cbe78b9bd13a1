"""
Tests for reporting and the free-text query router.

Covers:
  - Route selection: first matching route wins, search is the fallback
  - Issue references by id and by type
  - Status report sections
  - Pure summary helpers
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from pitboss.config import IngestConfig, MemoryConfig, PitBossConfig, SyncConfig
from pitboss.governor import GovernorService
from pitboss.governor.reporting import ROUTES, investigation_summary, issue_breakdown
from pitboss.governor.stores import InMemoryFixStore
from pitboss.governor.types import (
    InvestigationState,
    InvestigationStatus,
    Issue,
    IssueSeverity,
    IssueSource,
)

_POT_LINE = "[12:00:01] [ERROR] [POT] POT MISMATCH before calculation"


async def _make_service() -> GovernorService:
    config = PitBossConfig(
        ingest=IngestConfig(enabled=False),
        sync=SyncConfig(enabled=False),
        memory=MemoryConfig(backend="memory"),
    )
    service = GovernorService(config, fix_store=InMemoryFixStore())
    await service.initialize()
    return service


class TestRouting:
    def test_route_order(self):
        assert [r.name for r in ROUTES] == [
            "state",
            "issues",
            "fix_attempts",
            "investigation",
            "errors",
            "health",
            "recommendations",
            "failures",
            "patterns",
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("text", "route"),
        [
            ("What is the current state?", "state"),
            ("list active issues", "issues"),
            ("what fix attempts were made", "fix_attempts"),
            ("is an investigation running", "investigation"),
            ("what errors occurred today", "errors"),
            ("system health please", "health"),
            ("what should I do next", "recommendations"),
            ("why did the fixes fail", "failures"),
            ("which patterns lead to crashes", "patterns"),
            ("pot mismatch", "search"),
        ],
    )
    async def test_routes(self, text: str, route: str):
        service = await _make_service()
        answer = await service.query(text)
        assert answer["query"] == text
        assert answer["type"] == route
        assert isinstance(answer["timestamp"], int)
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        service = await _make_service()
        # mentions both "active issue" and "investigation"
        answer = await service.query("active issues in this investigation")
        assert answer["type"] == "issues"
        await service.shutdown()


class TestAnswers:
    @pytest.mark.asyncio
    async def test_fix_attempts_for_type(self):
        service = await _make_service()
        await service.record_fix_attempt("POT_MISMATCH", "reset pot", "failure")
        await service.record_fix_attempt("CHIPS_LOST", "audit", "success")
        answer = await service.query("what fix attempts for POT_MISMATCH")
        assert answer["answer"]["issueType"] == "POT_MISMATCH"
        assert answer["answer"]["totalAttempts"] == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_fix_attempts_for_issue_id(self):
        service = await _make_service()
        detected = await service.detect_issue(_POT_LINE)
        await service.record_fix_attempt(detected["issue"]["id"], "reset pot", "failure")
        answer = await service.query(f"what fix attempts for issue {detected['issue']['id']}")
        assert answer["answer"]["issueType"] == "POT_MISMATCH"
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_failures(self):
        service = await _make_service()
        await service.record_fix_attempt("POT_MISMATCH", "reset pot", "failure")
        await service.record_fix_attempt("POT_MISMATCH", "reset pot", "failure")
        await service.record_fix_attempt("CHIPS_LOST", "audit", "success")
        answer = (await service.query("why do fixes fail"))["answer"]
        assert answer["count"] == 1
        assert answer["failures"][0]["failedMethods"] == {"reset pot": 2}
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_search_finds_issues_and_attempts(self):
        service = await _make_service()
        await service.detect_issue(_POT_LINE)
        await service.record_fix_attempt("POT_MISMATCH", "recalculate pot", "success")
        answer = (await service.query("mismatch"))["answer"]
        kinds = sorted(r["kind"] for r in answer["results"])
        assert kinds == ["fix_attempt", "issue", "log"]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_search_with_only_short_words(self):
        service = await _make_service()
        answer = (await service.query("a b"))["answer"]
        assert answer == {"count": 0, "results": []}
        await service.shutdown()


class TestStatusReport:
    @pytest.mark.asyncio
    async def test_sections(self):
        service = await _make_service()
        await service.detect_issue(_POT_LINE)
        await service.record_fix_attempt("POT_MISMATCH", "reset pot", "failure")
        await service.record_fix_attempt("POT_MISMATCH", "recalculate", "success")

        report = await service.get_status_report()
        assert set(report) == {
            "timestamp",
            "statistics",
            "state",
            "issues",
            "fixes",
            "decisions",
            "recommendations",
        }
        assert report["issues"]["count"] == 1
        assert report["fixes"]["working"] == [{"issueType": "POT_MISMATCH", "fix": "recalculate"}]
        assert report["fixes"]["failed"] == [{"issueType": "POT_MISMATCH", "fix": "reset pot"}]
        assert report["decisions"]["pauseUnity"]["should"] is True

        fix_recs = [r for r in report["recommendations"] if r["type"] == "fix"]
        assert fix_recs[0]["shouldTry"] == ["recalculate"]
        assert fix_recs[0]["shouldNotTry"] == ["reset pot"]
        await service.shutdown()


class TestSummaries:
    def test_investigation_summary_idle(self):
        summary = investigation_summary(InvestigationState(), [])
        assert summary["active"] is False
        assert summary["startTime"] is None
        assert summary["issuesCount"] == 0

    def test_investigation_summary_active(self):
        start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        state = InvestigationState(
            status=InvestigationStatus.ACTIVE,
            start_time=start,
            progress=0.25,
            time_remaining_seconds=675.0,
        )
        summary = investigation_summary(state, [])
        assert summary["active"] is True
        assert summary["startTime"] == 1714564800000
        assert summary["timeRemaining"] == 675.0

    def test_issue_breakdown(self):
        issues = [
            Issue(type="A", severity=IssueSeverity.CRITICAL, message="m"),
            Issue(type="A", severity=IssueSeverity.LOW, message="m", source=IssueSource.UNITY),
        ]
        breakdown = issue_breakdown(issues)
        assert breakdown["active"] == 2
        assert breakdown["bySeverity"] == {"critical": 1, "low": 1}
        assert breakdown["bySource"] == {"server": 1, "unity": 1}
        assert breakdown["byType"] == {"A": 2}
