"""Cluster apply/read backends.

Defines the ``ClusterClient`` Protocol the state machine and verifier
depend on.  A workload is modelled as one replica set per artifact digest;
``set_workload`` sets the replica count of one of those sets and must be
idempotent: applying the same desired state twice is a no-op.

``SimulatedCluster`` is the in-process implementation used by tests, the
``demo`` command, and dry runs.  Real cluster adapters implement the same
three methods.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from helmsman.errors import ClusterApplyFailed
from helmsman.models.artifacts import ArtifactRef
from helmsman.models.workload import ReplicaReadiness, WorkloadSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ClusterClient(Protocol):
    """Protocol for cluster backends."""

    def set_workload(self, workload_id: str, replicas: int, artifact: ArtifactRef) -> None:
        """Run exactly ``replicas`` replicas of ``artifact`` for the workload.

        Raises ``ClusterApplyFailed`` when the cluster does not acknowledge.
        """
        ...

    def readiness_of(self, workload_id: str) -> list[ReplicaReadiness]:
        """Per-replica ready/not-ready as reported by the cluster."""
        ...

    def read_workload(self, workload_id: str) -> WorkloadSpec:
        """Current desired state of the workload."""
        ...


# ---------------------------------------------------------------------------
# Simulated implementation
# ---------------------------------------------------------------------------


class _SimReplica:
    __slots__ = ("replica_id", "digest", "polls_seen")

    def __init__(self, replica_id: str, digest: str) -> None:
        self.replica_id = replica_id
        self.digest = digest
        self.polls_seen = 0


class _SimWorkload:
    def __init__(self, spec: WorkloadSpec) -> None:
        self.spec = spec
        self.replica_sets: dict[str, list[_SimReplica]] = {}
        self.artifacts: dict[str, ArtifactRef] = {}
        self.apply_order: list[str] = []  # digests, most recent last


ApplyHook = Callable[["SimulatedCluster", str, int, ArtifactRef], None]


class SimulatedCluster:
    """In-memory cluster with health control and failure injection.

    Parameters
    ----------
    warmup_polls:
        Number of ``readiness_of`` calls a new replica stays not-ready
        before reporting ready.
    on_apply:
        Optional hook called after every successful ``set_workload``; tests
        use it to change health mid-rollout.
    """

    def __init__(self, *, warmup_polls: int = 0, on_apply: ApplyHook | None = None) -> None:
        self._workloads: dict[str, _SimWorkload] = {}
        self._unhealthy: set[str] = set()
        self._fail_applies = 0
        self._warmup = warmup_polls
        self._on_apply = on_apply
        self._lock = threading.RLock()
        self.apply_log: list[tuple[str, int, str]] = []

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def register_workload(self, spec: WorkloadSpec) -> None:
        """Seed a workload whose replicas all run ``spec.image`` and are ready."""
        with self._lock:
            sim = _SimWorkload(spec)
            self._workloads[spec.workload_id] = sim
            if spec.image is not None:
                sim.artifacts[spec.image.digest] = spec.image
                sim.apply_order.append(spec.image.digest)
                sim.replica_sets[spec.image.digest] = [
                    self._new_replica(spec.workload_id, spec.image.digest, i, ready=True)
                    for i in range(spec.replicas)
                ]

    def mark_unhealthy(self, digest: str) -> None:
        with self._lock:
            self._unhealthy.add(digest)

    def mark_healthy(self, digest: str) -> None:
        with self._lock:
            self._unhealthy.discard(digest)

    def fail_next_applies(self, count: int) -> None:
        with self._lock:
            self._fail_applies = count

    def replica_counts(self, workload_id: str) -> dict[str, int]:
        """Live replicas per digest (zero-sized sets omitted)."""
        with self._lock:
            sim = self._workloads[workload_id]
            return {d: len(r) for d, r in sim.replica_sets.items() if r}

    # ------------------------------------------------------------------
    # ClusterClient
    # ------------------------------------------------------------------

    def set_workload(self, workload_id: str, replicas: int, artifact: ArtifactRef) -> None:
        with self._lock:
            if self._fail_applies > 0:
                self._fail_applies -= 1
                raise ClusterApplyFailed(
                    f"simulated apply failure for {workload_id} -> {artifact.digest}"
                )
            sim = self._workload(workload_id)
            sim.artifacts.setdefault(artifact.digest, artifact)
            current = sim.replica_sets.setdefault(artifact.digest, [])
            if len(current) > replicas:
                del current[replicas:]
            else:
                for i in range(len(current), replicas):
                    current.append(self._new_replica(workload_id, artifact.digest, i))
            if artifact.digest in sim.apply_order:
                sim.apply_order.remove(artifact.digest)
            sim.apply_order.append(artifact.digest)
            self.apply_log.append((workload_id, replicas, artifact.digest))
            logger.debug(
                "SimulatedCluster: %s now runs %d x %s", workload_id, replicas, artifact.digest
            )
        if self._on_apply is not None:
            self._on_apply(self, workload_id, replicas, artifact)

    def readiness_of(self, workload_id: str) -> list[ReplicaReadiness]:
        with self._lock:
            sim = self._workload(workload_id)
            result: list[ReplicaReadiness] = []
            for digest, replica_set in sim.replica_sets.items():
                for replica in replica_set:
                    replica.polls_seen += 1
                    ready = (
                        replica.polls_seen > self._warmup
                        and digest not in self._unhealthy
                    )
                    result.append(
                        ReplicaReadiness(
                            replica_id=replica.replica_id,
                            artifact_digest=digest,
                            ready=ready,
                            address=None,
                        )
                    )
            return result

    def read_workload(self, workload_id: str) -> WorkloadSpec:
        with self._lock:
            sim = self._workload(workload_id)
            live = {d: len(r) for d, r in sim.replica_sets.items() if r}
            image = sim.spec.image
            if live:
                # Largest replica set wins; ties go to the most recently applied.
                recency = {d: i for i, d in enumerate(sim.apply_order)}
                digest = max(live, key=lambda d: (live[d], recency.get(d, -1)))
                image = sim.artifacts[digest]
            return sim.spec.model_copy(update={"image": image})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _workload(self, workload_id: str) -> _SimWorkload:
        try:
            return self._workloads[workload_id]
        except KeyError:
            raise ClusterApplyFailed(f"unknown workload {workload_id!r}") from None

    def _new_replica(
        self, workload_id: str, digest: str, ordinal: int, *, ready: bool = False
    ) -> _SimReplica:
        short = digest.split(":", 1)[-1][:8]
        replica = _SimReplica(f"{workload_id}-{short}-{ordinal}", digest)
        if ready:
            replica.polls_seen = self._warmup
        return replica
