from pitboss.primitives.common import (
    HealthStatus,
    PitBossBaseModel,
    epoch_ms,
    from_epoch_ms,
    new_id,
    utc_now,
)

__all__ = [
    "HealthStatus",
    "PitBossBaseModel",
    "epoch_ms",
    "from_epoch_ms",
    "new_id",
    "utc_now",
]
