"""Rollout policy and step models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from helmsman.models.artifacts import ArtifactRef


class RolloutStrategy(str, Enum):
    """How replicas are moved onto the new artifact."""

    ROLLING_UPDATE = "rolling_update"
    RECREATE = "recreate"


class RolloutPolicy(BaseModel):
    """Rollout parameters taken from configuration.

    ``max_unavailable`` bounds how many desired replicas may be not-ready at
    once; ``max_surge`` bounds how many replicas may exist beyond the desired
    count.  Both zero means no progress is possible.
    """

    model_config = ConfigDict(frozen=True)

    strategy: RolloutStrategy = RolloutStrategy.ROLLING_UPDATE
    max_unavailable: int = Field(default=1, ge=0)
    max_surge: int = Field(default=0, ge=0)
    step_pause_seconds: float = Field(default=0.0, ge=0)
    rollback_enabled: bool = True


class RolloutStep(BaseModel):
    """One atomic change: run ``replicas`` replicas of ``artifact``.

    When a previous artifact exists, its replica set is left at
    ``previous_replicas`` after the step.  ``min_healthy`` and
    ``max_unhealthy`` are the step's abort condition, counted over replicas
    of ``artifact`` only.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    artifact: ArtifactRef
    replicas: int
    previous: ArtifactRef | None = None
    previous_replicas: int = 0
    pause_seconds: float = 0.0
    min_healthy: int = 0
    max_unhealthy: int = 0

    @property
    def total_replicas(self) -> int:
        """Replicas that exist once the step is applied."""
        if self.previous is None:
            return self.replicas
        return self.replicas + self.previous_replicas
