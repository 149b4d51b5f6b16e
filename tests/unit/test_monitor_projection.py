"""Tests for StatusProjection: pure read-only view over store and ledger."""

from __future__ import annotations

import sqlite3

import pytest

from helmsman.errors import RunNotFoundError
from helmsman.models.artifacts import Revision
from helmsman.models.deployment import DeploymentState
from helmsman.monitor.projection import StatusProjection


@pytest.fixture
def projection(store, ledger) -> StatusProjection:
    return StatusProjection(store, ledger)


@pytest.fixture
def run_id(machine, workload, artifact_b, policy) -> str:
    run = machine.create_run(Revision(commit=artifact_b.tag), artifact_b, workload, policy)
    return run.run_id


class TestStatusProjection:
    def test_pending_snapshot(self, projection: StatusProjection, run_id, artifact_a, artifact_b):
        status = projection.snapshot(run_id)
        assert status.state == DeploymentState.PENDING
        assert status.revision == "b" * 12
        assert status.target_image == artifact_b.image
        assert status.previous_image == artifact_a.image
        assert status.total_steps == 0
        assert [h.transition for h in status.history] == ["->pending"]
        assert status.chain_valid is True
        assert status.is_terminal is False

    def test_progress_counts_verified_steps(self, projection: StatusProjection, machine, run_id):
        for _ in range(3):  # start, apply step 0, verify step 0
            machine.advance(run_id)
        status = projection.snapshot(run_id)
        assert status.state == DeploymentState.ROLLING_OUT
        assert (status.completed_steps, status.total_steps) == (1, 4)

    def test_succeeded_run(self, projection: StatusProjection, machine, run_id):
        machine.drive(run_id)
        status = projection.snapshot(run_id)
        assert status.is_terminal is True
        assert status.completed_steps == 4
        assert status.finished_at is not None
        assert status.last_updated == status.history[-1].timestamp

    def test_failure_and_abort_surface(self, projection: StatusProjection, machine, run_id):
        machine.abort(run_id, "operator")
        assert projection.snapshot(run_id).abort_requested is True
        machine.drive(run_id)
        status = projection.snapshot(run_id)
        assert status.state == DeploymentState.ROLLED_BACK
        assert status.error_code == "aborted"
        assert status.failure_reason == "aborted by operator"

    def test_tampered_ledger_marks_chain_invalid(self, projection: StatusProjection, machine, run_id, tmp_dir):
        machine.drive(run_id)
        with sqlite3.connect(str(tmp_dir / "ledger.db")) as conn:
            conn.execute(
                "UPDATE run_ledger SET detail = 'rewritten' WHERE run_id = ? "
                "AND state_transition = 'pending->rolling_out'",
                (run_id,),
            )
        assert projection.snapshot(run_id).chain_valid is False

    def test_missing_run_raises(self, projection: StatusProjection):
        with pytest.raises(RunNotFoundError):
            projection.snapshot("dr-missing")

    def test_list_runs(self, projection: StatusProjection, run_id):
        assert [r.run_id for r in projection.list_runs("web")] == [run_id]
        assert projection.list_runs("api") == []
