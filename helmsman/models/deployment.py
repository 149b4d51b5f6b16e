"""Deployment run state machine models: deterministic transitions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from helmsman.models.artifacts import ArtifactRef, Revision
from helmsman.models.rollout import RolloutPolicy, RolloutStep
from helmsman.models.workload import WorkloadSpec


class DeploymentState(str, Enum):
    """Strict state model for one deployment attempt."""

    PENDING = "pending"
    ROLLING_OUT = "rolling_out"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES: frozenset[DeploymentState] = frozenset(
    {DeploymentState.SUCCEEDED, DeploymentState.ROLLED_BACK, DeploymentState.FAILED}
)

# Valid state transitions, enforced structurally by DeploymentMachine.
# Terminal states have no outgoing transitions.
VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.PENDING: {
        DeploymentState.ROLLING_OUT,
        DeploymentState.ROLLING_BACK,  # abort before the first step
        DeploymentState.SUCCEEDED,  # empty plan
        DeploymentState.FAILED,  # invalid policy
    },
    DeploymentState.ROLLING_OUT: {
        DeploymentState.VERIFYING,
        DeploymentState.ROLLING_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.VERIFYING: {
        DeploymentState.ROLLING_OUT,
        DeploymentState.SUCCEEDED,
        DeploymentState.ROLLING_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.ROLLING_BACK: {
        DeploymentState.ROLLED_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.SUCCEEDED: set(),
    DeploymentState.ROLLED_BACK: set(),
    DeploymentState.FAILED: set(),
}


def _new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"dr-{ts}-{uuid.uuid4().hex[:6]}"


class DeploymentRun(BaseModel):
    """One deployment attempt, tracked from Pending to a terminal state.

    Runs are never deleted; a terminal run is the audit record of the attempt.
    ``workload`` is the spec observed when the run was created.  Together
    with ``target`` and ``policy`` it is everything the planner needs to
    recompute ``steps`` on resume.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=_new_run_id)
    workload_id: str
    revision: Revision
    target: ArtifactRef
    previous: ArtifactRef | None = None
    policy: RolloutPolicy = RolloutPolicy()
    workload: WorkloadSpec
    steps: list[RolloutStep] = []
    plan_hash: str = ""
    step_index: int = 0
    state: DeploymentState = DeploymentState.PENDING
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None
    failure_reason: str | None = None
    error_code: str | None = None
    abort_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_step(self) -> RolloutStep | None:
        if 0 <= self.step_index < len(self.steps):
            return self.steps[self.step_index]
        return None

    @property
    def remaining_steps(self) -> int:
        return max(len(self.steps) - self.step_index, 0)


class PushEvent(BaseModel):
    """Inbound revision-push notification.

    ``tests_passed`` is ``None`` when the CI runner did not report a test
    result (for example when tests ran in failure-tolerant mode).
    """

    model_config = ConfigDict(frozen=True)

    revision: Revision
    workload_id: str
    tests_passed: bool | None = None
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class PushOutcome(str, Enum):
    """What the coordinator did with a push event."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    QUEUED = "queued"
    RETRY_SCHEDULED = "retry_scheduled"
    GAVE_UP = "gave_up"
    REGISTRY_UNAVAILABLE = "registry_unavailable"
    REJECTED_TESTS = "rejected_tests"


class PushRecord(BaseModel):
    """Recorded outcome of handling one push event."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    workload_id: str
    revision: Revision
    outcome: PushOutcome
    attempts: int = 0
    run_id: str | None = None
    detail: str = ""
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
