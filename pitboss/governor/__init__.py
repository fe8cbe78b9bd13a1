"""
PitBoss — Remediation Governor

Detects failures in the game log, deduplicates them into live issues,
remembers every remedy tried against each issue type, and advises when
the governed client should pause, resume, or be investigated.

Every bad line becomes an Issue; every remedy becomes a memory.
"""

from pitboss.governor.classifier import RULES, ClassificationRule, IssueClassifier
from pitboss.governor.decision import DecisionEngine
from pitboss.governor.errors import (
    GovernorError,
    GovernorInitError,
    InvalidArguments,
    InvalidIssuePayload,
    InvalidTransition,
    IssueNotFound,
    StorageError,
)
from pitboss.governor.ingestor import LogIngestor, parse_line
from pitboss.governor.investigation import InvestigationStateMachine
from pitboss.governor.ledger import IssueLedger, compute_fingerprint, issue_fingerprint
from pitboss.governor.memory import FixAttemptMemory
from pitboss.governor.service import GovernorService, GovernorSnapshot
from pitboss.governor.stores import (
    FixAttemptStore,
    InMemoryFixStore,
    JsonFixStore,
    PendingIssueFile,
    SqliteFixStore,
    create_fix_store,
)
from pitboss.governor.sync import StatusSynchronizer, StatusUpdate, parse_status_document
from pitboss.governor.types import (
    ComponentHealth,
    DecisionPriority,
    DecisionResult,
    DetectionMethod,
    FixAttempt,
    FixOutcome,
    FixVerdict,
    HealthSignals,
    InvestigationState,
    InvestigationStatus,
    Issue,
    IssueSeverity,
    IssueSource,
    LogLevel,
    LogRecord,
)

__all__ = [
    # Service
    "GovernorService",
    "GovernorSnapshot",
    # Sub-systems
    "DecisionEngine",
    "FixAttemptMemory",
    "InvestigationStateMachine",
    "IssueClassifier",
    "IssueLedger",
    "LogIngestor",
    "StatusSynchronizer",
    # Rules
    "ClassificationRule",
    "RULES",
    # Stores
    "FixAttemptStore",
    "InMemoryFixStore",
    "JsonFixStore",
    "PendingIssueFile",
    "SqliteFixStore",
    "create_fix_store",
    # Errors
    "GovernorError",
    "GovernorInitError",
    "InvalidArguments",
    "InvalidIssuePayload",
    "InvalidTransition",
    "IssueNotFound",
    "StorageError",
    # Types
    "ComponentHealth",
    "DecisionPriority",
    "DecisionResult",
    "DetectionMethod",
    "FixAttempt",
    "FixOutcome",
    "FixVerdict",
    "HealthSignals",
    "InvestigationState",
    "InvestigationStatus",
    "Issue",
    "IssueSeverity",
    "IssueSource",
    "LogLevel",
    "LogRecord",
    "StatusUpdate",
    # Helpers
    "compute_fingerprint",
    "issue_fingerprint",
    "parse_line",
    "parse_status_document",
]
