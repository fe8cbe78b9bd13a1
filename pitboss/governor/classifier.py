"""
PitBoss — Issue Classifier

Maps a parsed log record (or an explicit payload) onto an Issue
candidate. Rules are an ordered table: the first rule whose pattern
matches wins, and nothing after it is consulted. Keep the table sorted
critical → high → medium → low, with the catch-all rules last; moving a
rule changes which issue type an ambiguous line resolves to.

Classification fails open. A broken rule or an odd line yields "no
match", never an exception, so one bad line cannot stall the tail.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from pitboss.governor.errors import InvalidIssuePayload
from pitboss.governor.ingestor import parse_line
from pitboss.governor.types import (
    DetectionMethod,
    Issue,
    IssueSeverity,
    IssueSource,
    LogRecord,
)

logger = structlog.get_logger()

_MAX_MESSAGE_CHARS = 1000

# Confidence of a pattern hit, by severity of the rule that fired
_RULE_CONFIDENCE: dict[IssueSeverity, float] = {
    IssueSeverity.CRITICAL: 0.9,
    IssueSeverity.HIGH: 0.8,
    IssueSeverity.MEDIUM: 0.6,
    IssueSeverity.LOW: 0.5,
}


@dataclass(frozen=True)
class ClassificationRule:
    issue_type: str
    severity: IssueSeverity
    pattern: re.Pattern[str]
    source: IssueSource | None = None
    root_cause: str | None = None

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(
    issue_type: str,
    severity: IssueSeverity,
    *patterns: str,
    source: IssueSource | None = None,
    root_cause: str | None = None,
) -> ClassificationRule:
    compiled = re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)
    return ClassificationRule(issue_type, severity, compiled, source, root_cause)


_C = IssueSeverity.CRITICAL
_H = IssueSeverity.HIGH
_M = IssueSeverity.MEDIUM
_L = IssueSeverity.LOW

# A fix attempt reporting success is not a new finding
_NOT_FIXED = r"(?!.*SUCCESS)"

RULES: tuple[ClassificationRule, ...] = (
    # ── critical ──
    _rule(
        "SERVER_CONNECTION_FAILED", _C,
        r"server.*cannot.*connect", r"ECONNREFUSED", r"SERVER.*OFFLINE", r"SERVER.*FAILED",
        source=IssueSource.SERVER,
        root_cause="Game server is down or refusing connections",
    ),
    _rule(
        "PORT_IN_USE", _C,
        r"EADDRINUSE", r"Port.*already.*in use", r"Error.*listen",
        source=IssueSource.SERVER,
        root_cause="Another process holds the server port",
    ),
    _rule(
        "DATABASE_ERROR", _C,
        r"Database.*OFFLINE", r"DATABASE.*CONNECTION.*FAILED",
        r"\[DATABASE\].*\[CONNECTION\].*FAILED", r"MySQL.*error", r"database.*error",
        source=IssueSource.DATABASE,
        root_cause="Database unreachable or rejecting queries",
    ),
    _rule(
        "ROOT_CAUSE_TRACE", _C,
        r"\[ROOT CAUSE\]", r"\[ROOT_TRACE\].*TOTAL_BET_NOT_CLEARED",
        r"\[ROOT_TRACE\].*PLAYER_WON_MORE_THAN_CONTRIBUTED",
        root_cause="Root trace reported a money-flow violation",
    ),
    _rule(
        "CHIPS_LOST", _C,
        r"CHIPS.*LOST", r"Money.*lost", r"missing.*chips",
        root_cause="Chips left the table without being awarded",
    ),
    _rule(
        "POT_MISMATCH", _C,
        rf"POT.*MISMATCH{_NOT_FIXED}", rf"pot.*mismatch.*before.*calculation{_NOT_FIXED}",
        root_cause="Pot total differs from the sum of contributions",
    ),
    _rule(
        "POT_NOT_CLEARED", _C,
        r"Pot.*not.*cleared.*at.*hand.*start", rf"Pot.*not.*cleared{_NOT_FIXED}",
        root_cause="Pot carried over into the next hand",
    ),
    _rule(
        "FIX_METHOD_DISABLED", _C,
        r"\[FIX\] METHOD_DISABLED", r"\[FIX\] DISABLED", r"METHOD_DISABLED.*TRY_DIFFERENT_APPROACH",
        root_cause="A fix method was disabled after repeated failure",
    ),
    _rule(
        "RUNTIME_EXCEPTION", _C,
        r"SyntaxError", r"TypeError", r"ReferenceError", r"RangeError", r"URIError",
        source=IssueSource.SERVER,
        root_cause="Unhandled exception in server code",
    ),
    _rule(
        "VALIDATION_ERROR", _C,
        r"\[ERROR\].*\[POT\]", r"\[ERROR\].*\[CHIPS\]", r"\[ERROR\].*\[VALIDATION\]",
        r"chip.*validation.*failed", r"money.*validation.*failed",
        root_cause="Chip or pot validation rejected the table state",
    ),
    _rule(
        "NETWORK_ERROR", _C,
        r"socket.*error", r"connection.*lost", r"websocket.*error",
        source=IssueSource.NETWORK,
        root_cause="Client connection dropped or socket failed",
    ),
    # ── high ──
    _rule(
        "CHIPS_CREATED", _H,
        rf"CHIPS.*CREATED{_NOT_FIXED}",
        root_cause="More chips on the table than were bought in",
    ),
    _rule(
        "CALCULATION_ERROR", _H,
        r"Pot.*calculation.*error", r"Betting.*calculation.*error", r"Award.*calculation.*error",
        root_cause="Pot, bet or award arithmetic failed",
    ),
    _rule(
        "TIMEOUT", _H,
        r"SIMULATION BOT TIMEOUT", r"\[TIMER\].*TIMEOUT.*auto-folding",
        r"timer.*expired", r"timeout.*exceeded",
        root_cause="A player or bot did not act in time",
    ),
    _rule(
        "STATE_INCONSISTENT", _H,
        r"state.*inconsistent", r"unexpected.*state", r"invalid.*state",
        root_cause="Game state machine reached an impossible state",
    ),
    _rule(
        "ACTION_REJECTED", _H,
        r"Action.*rejected.*Not.*your.*turn", r"Action.*rejected.*Game.*not.*in.*progress",
        root_cause="Client and server disagree on whose turn it is",
    ),
    _rule(
        "UNITY_ASSET_ERROR", _H,
        r"\[ICON_LOADING\].*ISSUE_REPORTED", r"LoadItemIcon.*FAILED",
        r"CreateItemAnteSlot.*FAILED", r"Sprite not found", r"Unity.*error",
        source=IssueSource.UNITY,
        root_cause="Client failed to load or render an asset",
    ),
    # ── medium ──
    _rule(
        "BETTING_FAILURE", _M,
        r"Betting.*Action.*Failures", r"Cannot.*bet.*current.*bet",
        r"Cannot.*check.*need.*to.*call", r"Invalid.*betting.*action",
        root_cause="Betting action refused by the rules engine",
    ),
    _rule(
        "VALIDATION_WARNING", _M,
        r"\[WARNING\].*\[VALIDATION\]", r"\[WARNING\].*\[POT\]", r"\[WARNING\].*\[CHIPS\]",
    ),
    _rule(
        "MEMORY_PRESSURE", _M,
        r"memory.*leak", r"heap.*overflow",
        root_cause="Process memory growing without bound",
    ),
    # ── low ──
    _rule(
        "LOOP_DETECTED", _L,
        r"stuck.*in.*loop", r"infinite.*loop", r"recursion.*too.*deep",
    ),
    _rule("DEPRECATION", _L, r"deprecated"),
    # ── catch-alls ──
    _rule(
        "UNITY_EXCEPTION", _C,
        r"NullReferenceException", r"MissingReferenceException", r"ArgumentNullException",
        r"InvalidOperationException", r"UnityException", r"\[UNITY\].*ERROR",
        source=IssueSource.UNITY,
        root_cause="Unhandled exception in the client",
    ),
    _rule("WARNING", _M, r"\[WARNING\]"),
)


def infer_source(text: str) -> IssueSource:
    if "[UNITY" in text or "Unity" in text or "NullReferenceException" in text:
        return IssueSource.UNITY
    lower = text.lower()
    if "[DATABASE]" in text or "mysql" in lower or "database" in lower:
        return IssueSource.DATABASE
    if "socket" in lower or "connection" in lower or "network" in lower:
        return IssueSource.NETWORK
    return IssueSource.SERVER


class IssueClassifier:
    """
    First-match-wins rule evaluation over log records, plus the manual
    path for issues reported by an operator or an external agent.
    """

    def __init__(self, rules: tuple[ClassificationRule, ...] = RULES) -> None:
        self._rules = rules
        self._classified = 0
        self._unmatched = 0
        self._failures = 0
        self._logger = logger.bind(system="governor", component="classifier")

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def classify(self, record: LogRecord) -> Issue | None:
        """Return an Issue candidate for the first matching rule, or None."""
        try:
            return self._classify(record)
        except Exception as exc:
            self._failures += 1
            self._logger.debug("classification_failed", error=str(exc))
            return None

    def classify_line(self, line: str, source: str = "") -> Issue | None:
        record = parse_line(line, source)
        if record is None:
            return None
        return self.classify(record)

    def _classify(self, record: LogRecord) -> Issue | None:
        text = record.raw or record.message
        for rule in self._rules:
            if not rule.matches(text):
                continue
            self._classified += 1
            context = dict(record.context)
            if record.category:
                context.setdefault("category", record.category)
            if record.timestamp:
                context.setdefault("log_timestamp", record.timestamp)
            if record.source:
                context.setdefault("log_file", record.source)
            return Issue(
                type=rule.issue_type,
                severity=rule.severity,
                source=rule.source or infer_source(text),
                message=text[:_MAX_MESSAGE_CHARS],
                confidence=_RULE_CONFIDENCE[rule.severity],
                method=DetectionMethod.PATTERN,
                root_cause=rule.root_cause,
                context=context,
            )
        self._unmatched += 1
        return None

    def from_payload(self, payload: Any) -> Issue:
        """
        Build an Issue from an explicitly reported payload. No pattern
        matching: the caller is trusted as given.
        """
        if not isinstance(payload, dict):
            raise InvalidIssuePayload("Issue payload must be a JSON object")

        issue_type = str(payload.get("type") or "error")
        message = payload.get("message") or payload.get("description") or f"Reported {issue_type}"
        context = payload.get("context") or payload.get("details") or {}
        if not isinstance(context, dict):
            context = {"details": context}

        try:
            return Issue(
                type=issue_type,
                severity=payload.get("severity") or IssueSeverity.CRITICAL,
                source=payload.get("source") or IssueSource.SERVER,
                message=str(message)[:_MAX_MESSAGE_CHARS],
                confidence=payload.get("confidence", 1.0),
                method=DetectionMethod.MANUAL,
                root_cause=payload.get("rootCause") or payload.get("root_cause"),
                possible_fixes=list(payload.get("possibleFixes") or []),
                context=context,
            )
        except ValidationError as exc:
            raise InvalidIssuePayload(f"Invalid issue payload: {exc.errors()[0]['msg']}") from exc

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "rules": len(self._rules),
            "classified": self._classified,
            "unmatched": self._unmatched,
            "failures": self._failures,
        }
