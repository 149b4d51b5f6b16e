"""Workload desired state and readiness-check descriptor."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from helmsman.models.artifacts import ArtifactRef


class ProbeProtocol(str, Enum):
    """Transport used to probe a single replica."""

    HTTP = "http"
    TCP = "tcp"
    EXEC = "exec"
    CLUSTER = "cluster"  # trust the readiness flag reported by the cluster


class ReadinessCheck(BaseModel):
    """How to decide whether one replica is ready.

    A replica is healthy after ``success_threshold`` consecutive successful
    checks and unhealthy after ``failure_threshold`` consecutive failures.
    """

    model_config = ConfigDict(frozen=True)

    protocol: ProbeProtocol = ProbeProtocol.CLUSTER
    path: str = "/healthz"
    command: list[str] = []
    port: int = 8080
    timeout_seconds: float = Field(default=2.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)


class WorkloadSpec(BaseModel):
    """Desired state of a deployable unit as read from the cluster.

    ``image`` is ``None`` for a workload that has never been deployed.
    """

    model_config = ConfigDict(frozen=True)

    workload_id: str
    replicas: int
    image: ArtifactRef | None = None
    readiness: ReadinessCheck = ReadinessCheck()


class ReplicaReadiness(BaseModel):
    """One replica as reported by the cluster read API."""

    model_config = ConfigDict(frozen=True)

    replica_id: str
    artifact_digest: str
    ready: bool = False
    address: str | None = None
