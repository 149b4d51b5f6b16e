"""Tests for Helmsman data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from helmsman.models import (
    ArtifactRef,
    DeploymentRun,
    DeploymentState,
    LedgerEntry,
    Revision,
    RolloutPolicy,
    RolloutStep,
)


class TestArtifactRef:
    def test_identity_is_the_digest(self, artifact_a):
        retagged = artifact_a.model_copy(update={"tag": "latest"})
        assert artifact_a.same_artifact(retagged)
        assert not artifact_a.same_artifact(None)

    def test_image_is_pinned_by_digest(self, artifact_a):
        assert artifact_a.image == f"registry.local/web@{artifact_a.digest}"

    def test_digest_needs_algorithm(self):
        with pytest.raises(ValidationError):
            ArtifactRef(repository="web", tag="v1", digest="abc123")

    def test_frozen(self, artifact_a):
        with pytest.raises(ValidationError):
            artifact_a.tag = "other"


class TestRolloutModels:
    def test_policy_rejects_negative_values(self):
        with pytest.raises(ValidationError):
            RolloutPolicy(max_unavailable=-1)

    def test_step_total_replicas(self, artifact_a, artifact_b):
        assert RolloutStep(index=0, artifact=artifact_b, replicas=2).total_replicas == 2
        step = RolloutStep(
            index=0, artifact=artifact_b, replicas=2, previous=artifact_a, previous_replicas=3
        )
        assert step.total_replicas == 5


class TestDeploymentRun:
    def test_defaults(self, workload, artifact_b):
        run = DeploymentRun(
            workload_id="web",
            revision=Revision(commit="b" * 40),
            target=artifact_b,
            workload=workload,
        )
        assert run.run_id.startswith("dr-")
        assert run.state == DeploymentState.PENDING
        assert run.current_step is None
        assert run.is_terminal is False
        assert run.revision.short == "b" * 12

    def test_current_and_remaining_steps(self, workload, artifact_b):
        steps = [RolloutStep(index=i, artifact=artifact_b, replicas=i + 1) for i in range(3)]
        run = DeploymentRun(
            workload_id="web",
            revision=Revision(commit="b" * 40),
            target=artifact_b,
            workload=workload,
            steps=steps,
            step_index=1,
        )
        assert run.current_step == steps[1]
        assert run.remaining_steps == 2


class TestLedgerEntry:
    def test_to_state(self):
        entry = LedgerEntry(run_id="r", workload_id="web", state_transition="verifying->succeeded")
        assert entry.to_state == "succeeded"
        assert LedgerEntry(run_id="r", workload_id="web", state_transition="abort_requested").to_state == ""
