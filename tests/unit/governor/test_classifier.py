"""
Tests for the IssueClassifier — ordered first-match rules.

Covers:
  - Representative lines for each severity band
  - Rule order determinism (first match wins)
  - Source inference and context carry-over
  - Fail-open behaviour
  - Manual issue payloads
"""

from __future__ import annotations

import re

import pytest

from pitboss.governor.classifier import (
    RULES,
    ClassificationRule,
    IssueClassifier,
    infer_source,
)
from pitboss.governor.errors import InvalidArguments, InvalidIssuePayload
from pitboss.governor.ingestor import parse_line
from pitboss.governor.types import (
    DetectionMethod,
    IssueSeverity,
    IssueSource,
    LogRecord,
)


def _make_classifier() -> IssueClassifier:
    return IssueClassifier()


class TestRuleTable:
    def test_rules_are_sorted_by_severity_before_catch_alls(self):
        rank = {"critical": 0, "high": 1, "medium": 2, "low": 3}
        body = [r for r in RULES if r.issue_type not in ("UNITY_EXCEPTION", "WARNING")]
        ranks = [rank[r.severity.value] for r in body]
        assert ranks == sorted(ranks)
        assert [r.issue_type for r in RULES[-2:]] == ["UNITY_EXCEPTION", "WARNING"]

    def test_issue_types_are_unique(self):
        types = [r.issue_type for r in RULES]
        assert len(types) == len(set(types))


class TestClassify:
    @pytest.mark.parametrize(
        ("line", "issue_type", "severity"),
        [
            ("[1] [ERROR] [SERVER] connect ECONNREFUSED 127.0.0.1:3000", "SERVER_CONNECTION_FAILED", "critical"),
            ("Error: listen EADDRINUSE: address already in use :::3000", "PORT_IN_USE", "critical"),
            ("[1] [ERROR] [DATABASE] DATABASE CONNECTION FAILED", "DATABASE_ERROR", "critical"),
            ("[1] [ERROR] [CHIPS] CHIPS LOST during award", "CHIPS_LOST", "critical"),
            ("[1] [ERROR] [POT] POT MISMATCH before calculation", "POT_MISMATCH", "critical"),
            ("TypeError: Cannot read properties of undefined", "RUNTIME_EXCEPTION", "critical"),
            ("[1] [WARN] [CHIPS] CHIPS CREATED out of nothing", "CHIPS_CREATED", "high"),
            ("[1] [WARN] [GAME] Action rejected: Not your turn", "ACTION_REJECTED", "high"),
            ("[1] [INFO] [BET] Cannot check, need to call", "BETTING_FAILURE", "medium"),
            ("[1] [INFO] [GAME] possible memory leak in hand history", "MEMORY_PRESSURE", "medium"),
            ("[1] [INFO] [GAME] stuck in loop waiting for dealer", "LOOP_DETECTED", "low"),
            ("[1] [INFO] [GAME] this API is deprecated", "DEPRECATION", "low"),
            ("NullReferenceException: Object reference not set", "UNITY_EXCEPTION", "critical"),
            ("[1] [WARNING] [SEATS] seat map stale", "WARNING", "medium"),
        ],
    )
    def test_representative_lines(self, line: str, issue_type: str, severity: str):
        issue = _make_classifier().classify_line(line)
        assert issue is not None
        assert issue.type == issue_type
        assert issue.severity.value == severity
        assert issue.method == DetectionMethod.PATTERN

    def test_unmatched_line_is_none(self):
        classifier = _make_classifier()
        assert classifier.classify_line("[1] [INFO] [GAME] hand 42 started") is None
        assert classifier.stats["unmatched"] == 1

    def test_noise_is_never_classified(self):
        assert _make_classifier().classify_line("[1] [MONITORING] POT MISMATCH seen") is None

    def test_successful_fix_report_is_not_a_mismatch(self):
        assert _make_classifier().classify_line("POT MISMATCH resolved: SUCCESS") is None

    def test_first_match_wins(self):
        # Matches both CHIPS_LOST and VALIDATION_ERROR; CHIPS_LOST is earlier
        issue = _make_classifier().classify_line("[1] [ERROR] [CHIPS] missing chips after fold")
        assert issue is not None
        assert issue.type == "CHIPS_LOST"

    def test_classification_is_deterministic(self):
        classifier = _make_classifier()
        line = "[1] [ERROR] [POT] POT MISMATCH before calculation"
        types = {classifier.classify_line(line).type for _ in range(5)}
        assert types == {"POT_MISMATCH"}

    def test_confidence_by_severity(self):
        classifier = _make_classifier()
        assert classifier.classify_line("TypeError: x").confidence == 0.9
        assert classifier.classify_line("[1] [INFO] [GAME] API deprecated").confidence == 0.5

    def test_context_carries_log_fields(self):
        record = parse_line("[2024-01-01 10:00:00] [ERROR] [POT] Pot not cleared", source="game.log")
        issue = _make_classifier().classify(record)
        assert issue is not None
        assert issue.type == "POT_NOT_CLEARED"
        assert issue.context["category"] == "POT"
        assert issue.context["log_timestamp"] == "2024-01-01 10:00:00"
        assert issue.context["log_file"] == "game.log"

    def test_rule_source_overrides_inference(self):
        issue = _make_classifier().classify_line("Sprite not found: chip_red")
        assert issue is not None
        assert issue.source == IssueSource.UNITY

    def test_fails_open_on_broken_rule(self):
        class Exploding:
            def search(self, text):
                raise RuntimeError("bad rule")

        rule = ClassificationRule("BROKEN", IssueSeverity.LOW, Exploding())  # type: ignore[arg-type]
        classifier = IssueClassifier(rules=(rule,))
        assert classifier.classify(LogRecord(message="anything", raw="anything")) is None
        assert classifier.stats["failures"] == 1

    def test_custom_rules(self):
        rule = ClassificationRule("CUSTOM", IssueSeverity.HIGH, re.compile("kaboom"))
        issue = IssueClassifier(rules=(rule,)).classify_line("a kaboom happened")
        assert issue is not None
        assert issue.type == "CUSTOM"


class TestInferSource:
    def test_sources(self):
        assert infer_source("[UNITY] crash") == IssueSource.UNITY
        assert infer_source("mysql went away") == IssueSource.DATABASE
        assert infer_source("socket closed") == IssueSource.NETWORK
        assert infer_source("pot wrong") == IssueSource.SERVER


class TestFromPayload:
    def test_defaults(self):
        issue = _make_classifier().from_payload({"message": "operator saw a bad pot"})
        assert issue.type == "error"
        assert issue.severity == IssueSeverity.CRITICAL
        assert issue.source == IssueSource.SERVER
        assert issue.confidence == 1.0
        assert issue.method == DetectionMethod.MANUAL

    def test_explicit_fields(self):
        issue = _make_classifier().from_payload(
            {
                "type": "POT_MISMATCH",
                "severity": "high",
                "source": "unity",
                "message": "pot display off by 50",
                "confidence": 0.7,
                "rootCause": "stale client cache",
                "possibleFixes": ["resync table"],
                "context": {"tableId": "t-9"},
            }
        )
        assert issue.severity == IssueSeverity.HIGH
        assert issue.source == IssueSource.UNITY
        assert issue.root_cause == "stale client cache"
        assert issue.possible_fixes == ["resync table"]
        assert issue.context == {"tableId": "t-9"}

    def test_non_dict_payload_rejected(self):
        with pytest.raises(InvalidIssuePayload):
            _make_classifier().from_payload(["not", "a", "dict"])

    def test_bad_severity_rejected(self):
        with pytest.raises(InvalidArguments):
            _make_classifier().from_payload({"severity": "apocalyptic"})

    def test_bad_confidence_rejected(self):
        with pytest.raises(InvalidIssuePayload):
            _make_classifier().from_payload({"confidence": 3})
