"""Helmsman data models: all Pydantic v2, all frozen (immutable)."""

from helmsman.models.artifacts import ArtifactRef, Revision
from helmsman.models.deployment import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentRun,
    DeploymentState,
    PushEvent,
    PushOutcome,
    PushRecord,
)
from helmsman.models.health import HealthStatus, HealthVerdict
from helmsman.models.ledger import LedgerEntry
from helmsman.models.rollout import RolloutPolicy, RolloutStep, RolloutStrategy
from helmsman.models.workload import (
    ProbeProtocol,
    ReadinessCheck,
    ReplicaReadiness,
    WorkloadSpec,
)

__all__ = [
    # artifacts
    "ArtifactRef",
    "Revision",
    # workload
    "ProbeProtocol",
    "ReadinessCheck",
    "ReplicaReadiness",
    "WorkloadSpec",
    # rollout
    "RolloutPolicy",
    "RolloutStep",
    "RolloutStrategy",
    # health
    "HealthStatus",
    "HealthVerdict",
    # deployment
    "DeploymentRun",
    "DeploymentState",
    "PushEvent",
    "PushOutcome",
    "PushRecord",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    # ledger
    "LedgerEntry",
]
