"""Shared test fixtures for Helmsman."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from helmsman.bridge.cluster import SimulatedCluster
from helmsman.bridge.registry import InMemoryRegistry
from helmsman.config import HelmsmanSettings, TestGate, VerifierConfig
from helmsman.core.coordinator import PipelineCoordinator
from helmsman.core.deployment_machine import DeploymentMachine
from helmsman.core.retry_queue import RetryQueue
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.core.verifier import HealthVerifier
from helmsman.models.artifacts import ArtifactRef, Revision
from helmsman.models.deployment import PushEvent
from helmsman.models.rollout import RolloutPolicy
from helmsman.models.workload import ReadinessCheck, WorkloadSpec

WORKLOAD = "web"
REPOSITORY = "registry.local/web"
COMMIT_A = "a" * 40
COMMIT_B = "b" * 40
COMMIT_C = "c" * 40
DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "c" * 64


class FakeClock:
    """Deterministic clock: ``sleep`` advances ``now`` instead of blocking."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases."""
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Artifacts and workloads
# ---------------------------------------------------------------------------


@pytest.fixture
def artifact_a() -> ArtifactRef:
    return ArtifactRef(repository=REPOSITORY, tag=COMMIT_A, digest=DIGEST_A)


@pytest.fixture
def artifact_b() -> ArtifactRef:
    return ArtifactRef(repository=REPOSITORY, tag=COMMIT_B, digest=DIGEST_B)


@pytest.fixture
def artifact_c() -> ArtifactRef:
    return ArtifactRef(repository=REPOSITORY, tag=COMMIT_C, digest=DIGEST_C)


@pytest.fixture
def workload(artifact_a: ArtifactRef) -> WorkloadSpec:
    """Four replicas of artifact A, cluster-reported readiness, thresholds of 1."""
    return WorkloadSpec(
        workload_id=WORKLOAD,
        replicas=4,
        image=artifact_a,
        readiness=ReadinessCheck(success_threshold=1, failure_threshold=1),
    )


@pytest.fixture
def policy() -> RolloutPolicy:
    return RolloutPolicy(max_unavailable=1, max_surge=0)


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> InMemoryRegistry:
    """Registry with revisions A, B and C published."""
    return InMemoryRegistry(
        {
            (REPOSITORY, COMMIT_A): DIGEST_A,
            (REPOSITORY, COMMIT_B): DIGEST_B,
            (REPOSITORY, COMMIT_C): DIGEST_C,
        }
    )


@pytest.fixture
def cluster(workload: WorkloadSpec) -> SimulatedCluster:
    """Simulated cluster running the ``workload`` fixture, all replicas ready."""
    sim = SimulatedCluster()
    sim.register_workload(workload)
    return sim


# ---------------------------------------------------------------------------
# Persistence and core components
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_dir: Path) -> RunStore:
    """Provide a fresh RunStore backed by a temp SQLite database."""
    return RunStore(tmp_dir / "runs.db")


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "ledger.db")


@pytest.fixture
def verifier(cluster: SimulatedCluster, clock: FakeClock) -> HealthVerifier:
    return HealthVerifier(
        cluster,
        VerifierConfig(poll_interval_seconds=1.0, timeout_seconds=10.0),
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def machine(
    store: RunStore,
    ledger: RunLedger,
    cluster: SimulatedCluster,
    verifier: HealthVerifier,
    clock: FakeClock,
) -> DeploymentMachine:
    """DeploymentMachine wired to the test store, ledger and simulated cluster."""
    return DeploymentMachine(
        store,
        ledger,
        cluster,
        verifier,
        apply_max_attempts=3,
        apply_backoff_seconds=0.1,
        sleep=clock.sleep,
    )


@pytest.fixture
def make_settings(tmp_dir: Path) -> Callable[..., HelmsmanSettings]:
    """Factory fixture: HelmsmanSettings pointed at temp paths with fast timings."""

    def _factory(**overrides: Any) -> HelmsmanSettings:
        defaults: dict[str, Any] = {
            "store_path": tmp_dir / "runs.db",
            "ledger_path": tmp_dir / "ledger.db",
            "poll_interval_seconds": 1.0,
            "timeout_seconds": 10.0,
            "success_threshold": 1,
            "failure_threshold": 1,
            "max_retries": 3,
            "backoff_base_seconds": 5.0,
            "registry_backoff_seconds": 0.1,
            "apply_backoff_seconds": 0.1,
            "test_gate": TestGate.ENFORCE,
            "repositories": {WORKLOAD: REPOSITORY},
        }
        defaults.update(overrides)
        return HelmsmanSettings(_env_file=None, **defaults)

    return _factory


@pytest.fixture
def settings(make_settings: Callable[..., HelmsmanSettings]) -> HelmsmanSettings:
    return make_settings()


@pytest.fixture
def coordinator(
    settings: HelmsmanSettings,
    registry: InMemoryRegistry,
    cluster: SimulatedCluster,
    store: RunStore,
    ledger: RunLedger,
    clock: FakeClock,
) -> PipelineCoordinator:
    """PipelineCoordinator over the simulated cluster with a fake clock."""
    return PipelineCoordinator(
        settings,
        registry,
        cluster,
        store=store,
        ledger=ledger,
        retry_queue=RetryQueue(max_depth=64),
        clock=clock,
        monotonic=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def make_push() -> Callable[..., PushEvent]:
    """Factory fixture: build a PushEvent with passing tests by default."""

    def _factory(
        commit: str = COMMIT_B,
        workload_id: str = WORKLOAD,
        tests_passed: bool | None = True,
    ) -> PushEvent:
        return PushEvent(
            revision=Revision(commit=commit),
            workload_id=workload_id,
            tests_passed=tests_passed,
        )

    return _factory
