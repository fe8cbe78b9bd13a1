"""
PitBoss — Common Primitives

Shared enums, base classes, and utilities used across the governor and
the command gateway.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def epoch_ms(moment: datetime | None = None) -> int:
    """Milliseconds since the Unix epoch (wire timestamps use this)."""
    return int((moment or utc_now()).timestamp() * 1000)


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


# ─── Enums ────────────────────────────────────────────────────────


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ─── Base Models ──────────────────────────────────────────────────


class PitBossBaseModel(BaseModel):
    """Base model for all PitBoss models."""

    model_config = {"populate_by_name": True, "from_attributes": True}
