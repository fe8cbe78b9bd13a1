"""
PitBoss — Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable parameter of the governor and the gateway lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayConfig(BaseModel):
    transport: Literal["stdio", "tcp"] = "stdio"
    host: str = "127.0.0.1"
    port: int = 7411
    # Per-command deadline (seconds)
    command_timeout_s: float = 5.0
    # Deadline for commands that may pay for first-time initialization
    init_timeout_s: float = 30.0
    slow_commands: list[str] = Field(
        default_factory=lambda: [
            "query",
            "get-live-statistics",
            "get-status-report",
        ]
    )


class IngestConfig(BaseModel):
    enabled: bool = True
    log_files: list[str] = Field(default_factory=list)
    poll_interval_s: float = 1.0
    # Lines of existing history to replay when tailing starts
    backfill_lines: int = 0
    recent_buffer_size: int = 500


class LedgerConfig(BaseModel):
    # Pending-issues document ({"issues": [...]}); None keeps the ledger in memory
    pending_issues_path: str | None = None
    # Issues not seen for this long are pruned by the sync tick (0 disables)
    stale_issue_max_age_s: float = 0.0


class MemoryConfig(BaseModel):
    backend: Literal["memory", "json", "sqlite"] = "json"
    json_path: str = "data/fix-attempts.json"
    sqlite_path: str = "data/fix-attempts.sqlite3"

    @field_validator("backend", mode="before")
    @classmethod
    def _normalise_backend(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class InvestigationConfig(BaseModel):
    timeout_s: float = 900.0
    # Complete a run automatically once its timeout has elapsed
    auto_complete_on_timeout: bool = True
    history_size: int = 50


class SyncConfig(BaseModel):
    enabled: bool = True
    status_file: str | None = None
    interval_s: float = 1.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


class PitBossConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="PITBOSS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "pitboss-default"

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    investigation: InvestigationConfig = Field(default_factory=InvestigationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> PitBossConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    ``overrides`` (typically from the command line) win over both.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    if log_files := os.environ.get("PITBOSS_LOG_FILES"):
        raw.setdefault("ingest", {})["log_files"] = [
            p.strip() for p in log_files.split(os.pathsep) if p.strip()
        ]
    if status_file := os.environ.get("PITBOSS_STATUS_FILE"):
        raw.setdefault("sync", {})["status_file"] = status_file
    if pending := os.environ.get("PITBOSS_PENDING_ISSUES_PATH"):
        raw.setdefault("ledger", {})["pending_issues_path"] = pending
    if backend := os.environ.get("PITBOSS_MEMORY__BACKEND"):
        raw.setdefault("memory", {})["backend"] = backend
    if log_level := os.environ.get("PITBOSS_LOGGING__LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
    if instance_id := os.environ.get("PITBOSS_INSTANCE_ID"):
        raw["instance_id"] = instance_id

    if overrides:
        raw = _deep_merge(raw, overrides)

    return PitBossConfig(**raw)
