"""Health verdict models: transient, recomputed on every poll."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class HealthVerdict(BaseModel):
    """Step-level classification produced by one verifier poll.

    ``consecutive_successes`` is the shortest success streak among the
    replicas that are not yet unhealthy (how far the slowest replica is from
    its threshold).  ``consecutive_failures`` is the longest failure streak.
    """

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    observed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    healthy_replicas: int = 0
    unhealthy_replicas: int = 0
    required_replicas: int = 0
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != HealthStatus.UNKNOWN
