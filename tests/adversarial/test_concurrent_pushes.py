"""Adversarial tests: racing pushes never produce two active runs for a workload."""

from __future__ import annotations

import threading

import pytest

from helmsman.core.coordinator import PipelineCoordinator
from helmsman.core.retry_queue import RetryQueue
from helmsman.errors import DeploymentInProgress
from helmsman.models.artifacts import Revision
from helmsman.models.deployment import DeploymentRun, DeploymentState, PushOutcome

THREADS = 8


def _race(target, count: int = THREADS) -> tuple[list, list]:
    """Run ``target`` from ``count`` threads released at once."""
    barrier = threading.Barrier(count)
    results: list = []
    errors: list = []
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        try:
            value = target()
        except Exception as exc:  # collected for assertions
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=_worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


class TestRacingInserts:
    def test_only_one_insert_wins(self, store, workload, artifact_b):
        def _insert():
            return store.insert(
                DeploymentRun(
                    workload_id="web",
                    revision=Revision(commit=artifact_b.tag),
                    target=artifact_b,
                    previous=workload.image,
                    workload=workload,
                )
            )

        results, errors = _race(_insert)
        assert len(results) == 1
        assert len(errors) == THREADS - 1
        assert all(isinstance(exc, DeploymentInProgress) for exc in errors)
        assert all(exc.run_id == results[0].run_id for exc in errors)


class TestRacingPushes:
    def test_one_run_started_rest_parked(self, coordinator: PipelineCoordinator, make_push, cluster, artifact_b):
        results, errors = _race(lambda: coordinator.handle_push(make_push(), drive=False))

        assert [r.outcome for r in results] == [PushOutcome.STARTED]
        assert len(errors) == THREADS - 1
        assert all(isinstance(exc, DeploymentInProgress) for exc in errors)
        assert len(coordinator.runs("web")) == 1
        assert coordinator.retry_queue.depth() == THREADS - 1

        # Driving the first run works through every parked push in turn.
        coordinator.drive(results[0].run_id)
        runs = coordinator.runs("web")
        assert len(runs) == THREADS
        assert all(run.state == DeploymentState.SUCCEEDED for run in runs)
        assert coordinator.retry_queue.depth() == 0
        assert cluster.replica_counts("web") == {artifact_b.digest: 4}

    def test_two_coordinators_share_the_store(self, coordinator: PipelineCoordinator, settings, registry, cluster, store, ledger, clock, make_push):
        """Two processes over one database: the second sees the first's active run."""
        other = PipelineCoordinator(
            settings,
            registry,
            cluster,
            store=store,
            ledger=ledger,
            retry_queue=RetryQueue(),
            clock=clock,
            monotonic=clock,
            sleep=clock.sleep,
        )
        first = coordinator.handle_push(make_push(), drive=False)
        with pytest.raises(DeploymentInProgress) as excinfo:
            other.handle_push(make_push(commit="c" * 40), drive=False)
        assert excinfo.value.run_id == first.run_id
        assert [run.run_id for run in store.non_terminal_runs()] == [first.run_id]
