"""
Tests for GovernorService — the context object behind every command.

Covers:
  - detect / add / resolve through the ledger
  - Decisions recomputed from current state
  - Investigation lifecycle via the service
  - Fix memory round trip (record, check, suggest, history)
  - Health updates and status-file application
  - Concurrent producers leave consistent state
  - Pending-issue persistence across restarts, rolled back when a save fails
  - New issues carry remedies that worked before and related live issues
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import orjson
import pytest

from pitboss.config import (
    IngestConfig,
    LedgerConfig,
    MemoryConfig,
    PitBossConfig,
    SyncConfig,
)
from pitboss.governor import GovernorService
from pitboss.governor.errors import InvalidArguments, IssueNotFound, StorageError
from pitboss.governor.stores import InMemoryFixStore
from pitboss.governor.sync import ComponentUpdate, StatusUpdate

_POT_LINE = "[12:00:01] [ERROR] [POT] POT MISMATCH before calculation"
_REJECT_LINE = "[12:00:02] [WARN] [GAME] Action rejected: Not your turn"


def _make_config(pending_path: Path | None = None) -> PitBossConfig:
    return PitBossConfig(
        ingest=IngestConfig(enabled=False),
        sync=SyncConfig(enabled=False),
        memory=MemoryConfig(backend="memory"),
        ledger=LedgerConfig(pending_issues_path=str(pending_path) if pending_path else None),
    )


async def _make_service(pending_path: Path | None = None) -> GovernorService:
    service = GovernorService(_make_config(pending_path), fix_store=InMemoryFixStore())
    await service.initialize()
    return service


class TestIssues:
    @pytest.mark.asyncio
    async def test_detect_and_dedupe(self):
        service = await _make_service()
        first = await service.detect_issue(_POT_LINE)
        second = await service.detect_issue(_POT_LINE)
        assert first is not None and second is not None
        assert first["isNew"] is True
        assert second["isNew"] is False
        assert first["issue"]["id"] == second["issue"]["id"]
        assert second["issue"]["count"] == 2
        assert first["issue"]["type"] == "POT_MISMATCH"

        active = await service.get_active_issues()
        assert active["count"] == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_detect_noise_or_unmatched(self):
        service = await _make_service()
        assert await service.detect_issue("[12:00:00] [INFO] [GAME] hand 42 started") is None
        with pytest.raises(InvalidArguments):
            await service.detect_issue("   ")
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_add_and_resolve(self):
        service = await _make_service()
        added = await service.add_issue(
            {"type": "CHIPS_LOST", "severity": "high", "message": "player 3 short 200"}
        )
        assert added["success"] is True
        assert added["issue"]["method"] == "manual"

        resolved = await service.resolve_issue(added["issueId"])
        assert resolved["resolved"] == 1
        assert resolved["remaining"] == 0

        with pytest.raises(IssueNotFound):
            await service.resolve_issue(added["issueId"])
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_resolve_all(self):
        service = await _make_service()
        await service.detect_issue(_POT_LINE)
        await service.detect_issue(_REJECT_LINE)
        result = await service.resolve_issue("all")
        assert result == {"success": True, "resolved": 2, "remaining": 0}
        await service.shutdown()


class TestDecisions:
    @pytest.mark.asyncio
    async def test_pause_then_resume(self):
        service = await _make_service()
        await service.detect_issue(_POT_LINE)
        assert (await service.should_pause_unity())["should"] is True

        await service.update_health("unity", "paused")
        assert (await service.should_pause_unity())["should"] is False
        assert (await service.should_resume_unity())["should"] is False

        await service.resolve_issue("all")
        resume = await service.should_resume_unity()
        assert resume["should"] is True
        assert resume["reason"] == "Verification passed, no issues detected"
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_investigation_lifecycle(self):
        service = await _make_service()
        refused = await service.start_investigation()
        assert refused == {"success": False, "reason": "No active issues detected"}

        await service.detect_issue(_POT_LINE)
        assert (await service.should_start_investigation())["should"] is True
        started = await service.start_investigation()
        assert started["success"] is True
        assert started["timeout"] == 900.0

        status = await service.get_investigation_status()
        assert status["active"] is True
        assert status["issuesCount"] == 1

        done = await service.complete_investigation()
        assert done["run"]["issues_found"] == 1
        again = await service.complete_investigation()
        assert again["run"] is None
        assert (await service.get_investigation_status())["active"] is False
        await service.shutdown()


class TestFixMemory:
    @pytest.mark.asyncio
    async def test_record_by_issue_id_uses_type(self):
        service = await _make_service()
        detected = await service.detect_issue(_POT_LINE)
        issue_id = detected["issue"]["id"]

        recorded = await service.record_fix_attempt(issue_id, "reset pot", "failure")
        assert recorded["issueType"] == "POT_MISMATCH"
        assert recorded["successRate"] == "0/1"

        verdict = await service.check_fix(issue_id, "reset pot")
        assert verdict["issueType"] == "POT_MISMATCH"
        assert verdict["warning"] is True

        suggestions = await service.get_suggested_fixes(issue_id)
        assert suggestions["shouldNotTry"] == [{"fix": "reset pot", "failures": 1}]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_record_for_unknown_issue_uses_id_as_type(self):
        service = await _make_service()
        recorded = await service.record_fix_attempt("SEAT_DESYNC", "resend seats", "success")
        assert recorded["issueType"] == "SEAT_DESYNC"

        history = await service.get_fix_history("SEAT_DESYNC")
        assert history["totalAttempts"] == 1
        everything = await service.get_fix_history()
        assert everything["totalIssues"] == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_suggested_fixes_needs_live_issue(self):
        service = await _make_service()
        with pytest.raises(IssueNotFound):
            await service.get_suggested_fixes("nope")
        await service.shutdown()


class TestHealth:
    @pytest.mark.asyncio
    async def test_update_health_aliases(self):
        service = await _make_service()
        result = await service.update_health("client", "running", 87.5)
        assert result["component"] == "governed_process"
        assert result["state"]["status"] == "running"
        assert result["state"]["health"] == 87.5

        with pytest.raises(InvalidArguments):
            await service.update_health("toaster", "on")
        with pytest.raises(InvalidArguments):
            await service.update_health("server", "")
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_apply_status(self):
        service = await _make_service()
        await service.apply_status(
            StatusUpdate(
                investigation_active=True,
                investigation_timeout_s=600.0,
                governed_process=ComponentUpdate(status="paused", metrics={"fps": 30}),
                server=ComponentUpdate(status="online", health=100.0),
            )
        )
        status = await service.get_investigation_status()
        assert status["active"] is True
        assert status["timeout"] == 600.0
        assert (await service.should_resume_unity())["should"] is True

        await service.apply_status(StatusUpdate(investigation_active=False))
        assert (await service.get_investigation_status())["active"] is False
        await service.shutdown()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_producers_interleave_consistently(self):
        service = await _make_service()

        async def ingest() -> None:
            for _ in range(25):
                await service.ingest_line(_POT_LINE)
                await asyncio.sleep(0)

        async def sync() -> None:
            for i in range(25):
                status = "paused" if i % 2 else "running"
                await service.apply_status(
                    StatusUpdate(governed_process=ComponentUpdate(status=status))
                )
                await asyncio.sleep(0)

        async def commands() -> None:
            for _ in range(25):
                await service.detect_issue(_REJECT_LINE)
                await service.should_pause_unity()

        await asyncio.gather(ingest(), sync(), commands())

        active = await service.get_active_issues()
        counts = {i["type"]: i["count"] for i in active["issues"]}
        assert counts == {"POT_MISMATCH": 25, "ACTION_REJECTED": 25}
        assert service.stats["lines_ingested"] == 25
        await service.shutdown()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_pending_issues_survive_restart(self, tmp_path: Path):
        pending = tmp_path / "pending-issues.json"
        service = await _make_service(pending)
        await service.detect_issue(_POT_LINE)
        doc = orjson.loads(pending.read_bytes())
        assert doc["count"] == 1
        await service.shutdown()

        restarted = await _make_service(pending)
        active = await restarted.get_active_issues()
        assert [i["type"] for i in active["issues"]] == ["POT_MISMATCH"]
        await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_failed_add_leaves_ledger_unchanged(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        service = await _make_service(blocker / "pending-issues.json")

        for _ in range(2):
            with pytest.raises(StorageError):
                await service.add_issue({"type": "POT_MISMATCH"})

        assert (await service.get_active_issues())["count"] == 0
        report = await service.health()
        assert report["status"] == "degraded"
        assert report["ledger"]["total_detected"] == 0
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_failed_detect_can_be_retried(self, tmp_path: Path):
        state = tmp_path / "state"
        service = await _make_service(state / "pending-issues.json")
        shutil.rmtree(state, ignore_errors=True)
        state.write_text("a file, not a directory")

        with pytest.raises(StorageError):
            await service.detect_issue(_POT_LINE)
        assert (await service.get_active_issues())["count"] == 0

        state.unlink()
        retried = await service.detect_issue(_POT_LINE)
        assert retried is not None
        assert retried["isNew"] is True
        assert retried["issue"]["count"] == 1
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_failed_resolve_keeps_issues_live(self, tmp_path: Path):
        state = tmp_path / "state"
        pending = state / "pending-issues.json"
        service = await _make_service(pending)
        detected = await service.detect_issue(_POT_LINE)
        assert detected is not None
        await service.update_health("unity", "paused")

        shutil.rmtree(state)
        state.write_text("a file, not a directory")

        with pytest.raises(StorageError):
            await service.resolve_issue("all")
        with pytest.raises(StorageError):
            await service.resolve_issue(detected["issue"]["id"])

        active = await service.get_active_issues()
        assert [i["id"] for i in active["issues"]] == [detected["issue"]["id"]]
        assert (await service.should_resume_unity())["should"] is False
        await service.shutdown()


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_new_issue_carries_remedies_that_worked(self):
        service = await _make_service()
        await service.record_fix_attempt("POT_MISMATCH", "reset pot", "failure")
        await service.record_fix_attempt("POT_MISMATCH", "recalculate side pots", "success")

        detected = await service.detect_issue(_POT_LINE)
        assert detected is not None
        assert detected["issue"]["possibleFixes"] == ["recalculate side pots"]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_reported_fixes_are_kept(self):
        service = await _make_service()
        await service.record_fix_attempt("POT_MISMATCH", "recalculate side pots", "success")
        added = await service.add_issue({"type": "POT_MISMATCH", "possibleFixes": ["resync table"]})
        assert added["issue"]["possibleFixes"] == ["resync table"]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_related_issues(self):
        service = await _make_service()
        chips = await service.add_issue({"type": "CHIPS_LOST", "severity": "high"})
        first = await service.add_issue(
            {"type": "ACTION_REJECTED", "severity": "medium", "context": {"table_id": "table_7"}}
        )
        second = await service.add_issue(
            {"type": "TURN_ORDER", "severity": "medium", "context": {"table_id": "table_7"}}
        )
        assert chips["issue"]["relatedIssues"] == []
        assert first["issue"]["relatedIssues"] == []
        assert second["issue"]["relatedIssues"] == [first["issueId"]]

        pot = await service.detect_issue(_POT_LINE)
        assert pot is not None
        assert pot["issue"]["relatedIssues"] == [chips["issueId"]]
        await service.shutdown()


class TestReporting:
    @pytest.mark.asyncio
    async def test_live_statistics_shape(self):
        service = await _make_service()
        await service.detect_issue(_POT_LINE)
        stats = await service.get_live_statistics()
        assert set(stats) == {"timestamp", "system", "monitoring", "issues", "fixes", "recommendations"}
        assert stats["issues"]["active"] == 1
        assert stats["recommendations"][0]["type"] == "priority"
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_health_report(self):
        service = await _make_service()
        report = await service.health()
        assert report["status"] == "healthy"
        assert report["sync"] is None
        await service.shutdown()
        assert service.initialized is False
