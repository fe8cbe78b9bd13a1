"""
PitBoss — Governor Error Hierarchy

All exceptions raised by the remediation governor. Each carries a stable
``code`` that the command gateway copies into the ``error`` object of
the response, so callers can branch on it without parsing messages.

Classification never raises (it fails open and reports "no match");
everything else propagates to the command boundary.
"""

from __future__ import annotations


class GovernorError(RuntimeError):
    """Base for all remediation-governor errors."""

    code: str = "GOVERNOR_ERROR"


class InvalidArguments(GovernorError):
    """A command was called with missing or malformed arguments."""

    code = "INVALID_ARGUMENTS"


class InvalidIssuePayload(InvalidArguments):
    """A manually reported issue payload failed validation."""


class IssueNotFound(GovernorError):
    """No live issue carries the requested id."""

    code = "NOT_FOUND"

    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class StorageError(GovernorError):
    """A persistence backend could not read or write its records."""

    code = "STORAGE_ERROR"


class InvalidTransition(GovernorError):
    """The investigation state machine refused a transition."""

    code = "INVALID_TRANSITION"


class GovernorInitError(GovernorError):
    """The governor service could not be constructed or initialized."""

    code = "INIT_FAILED"
