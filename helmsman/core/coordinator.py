"""Pipeline coordinator: the entry point for revision-push events.

The coordinator wires together the resolver, run store, ledger, retry queue,
verifier and deployment state machine.  For each push it:

1. applies the CI test gate,
2. parks the event if the workload already has an active run,
3. resolves the revision to an artifact (unbuilt revisions are retried
   later with exponential backoff, then given up),
4. creates, starts and drives a deployment run,
5. takes up the next parked event for the workload once the run ends.

A failed run is never retried automatically; a new push is a new run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager

from helmsman.bridge.cluster import ClusterClient
from helmsman.bridge.probes import Probe
from helmsman.bridge.registry import Registry
from helmsman.config import HelmsmanSettings, TestGate
from helmsman.core.deployment_machine import DeploymentMachine
from helmsman.core.production_guard import enforce_production_constraints
from helmsman.core.resolver import ArtifactResolver
from helmsman.core.retry_queue import DeferReason, QueuedPush, RetryQueue
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.core.verifier import HealthVerifier
from helmsman.errors import (
    ClusterApplyFailed,
    DeploymentInProgress,
    InvalidPolicy,
    NotBuilt,
    RegistryUnavailable,
)
from helmsman.models.deployment import (
    DeploymentRun,
    DeploymentState,
    PushEvent,
    PushOutcome,
    PushRecord,
)
from helmsman.models.workload import ProbeProtocol, WorkloadSpec

logger = logging.getLogger(__name__)

_OUTCOME_FOR_STATE: dict[DeploymentState, PushOutcome] = {
    DeploymentState.SUCCEEDED: PushOutcome.SUCCEEDED,
    DeploymentState.ROLLED_BACK: PushOutcome.ROLLED_BACK,
    DeploymentState.FAILED: PushOutcome.FAILED,
}


class PipelineCoordinator:
    """Accepts push events and owns the run lifecycle for each workload.

    Parameters
    ----------
    settings:
        Orchestrator configuration.  Checked by the production guard.
    registry:
        Image registry backend.
    cluster:
        Cluster backend.
    store, ledger, retry_queue:
        Persistence; built from ``settings`` paths when not provided.
    probes:
        Optional per-protocol probe overrides for the verifier.
    clock:
        Epoch-seconds clock for retry due times.
    monotonic:
        Clock for verification deadlines.
    sleep:
        Used for every backoff, pause and poll interval.
    """

    def __init__(
        self,
        settings: HelmsmanSettings,
        registry: Registry,
        cluster: ClusterClient,
        *,
        store: RunStore | None = None,
        ledger: RunLedger | None = None,
        retry_queue: RetryQueue | None = None,
        probes: Mapping[ProbeProtocol, Probe] | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        enforce_production_constraints(settings)

        self.settings = settings
        self.store = store or RunStore(settings.store_path)
        self.ledger = ledger or RunLedger(settings.ledger_path)
        self.retry_queue = retry_queue or RetryQueue(
            settings.retry_queue_path, max_depth=settings.retry_queue_depth
        )
        self.cluster = cluster
        self.resolver = ArtifactResolver(
            registry,
            max_attempts=settings.registry_max_attempts,
            backoff_seconds=settings.registry_backoff_seconds,
            sleep=sleep,
        )
        self.verifier = HealthVerifier(
            cluster,
            settings.verifier_config(),
            probes=probes,
            clock=monotonic,
            sleep=sleep,
        )
        self.machine = DeploymentMachine(
            self.store,
            self.ledger,
            cluster,
            self.verifier,
            apply_max_attempts=settings.apply_max_attempts,
            apply_backoff_seconds=settings.apply_backoff_seconds,
            sleep=sleep,
        )
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_push(self, event: PushEvent, *, drive: bool = True) -> PushRecord:
        """Handle one revision-push event.

        With ``drive=False`` the run is created and planned but left for the
        caller to drive (see ``drive``).

        Raises
        ------
        DeploymentInProgress
            The workload already has an active run.  The event has been
            parked and will be handled when that run ends.
        """
        if event.tests_passed is not True:
            if self.settings.test_gate == TestGate.ENFORCE:
                logger.warning(
                    "Rejecting push %s for %s: tests_passed=%s.",
                    event.revision.short,
                    event.workload_id,
                    event.tests_passed,
                )
                return self._record(
                    event,
                    PushOutcome.REJECTED_TESTS,
                    detail=f"tests_passed={event.tests_passed}",
                )
            logger.warning(
                "Push %s for %s has tests_passed=%s; deploying (advisory test gate).",
                event.revision.short,
                event.workload_id,
                event.tests_passed,
            )

        record = self._process(event, attempt=0, drive=drive)
        if record.outcome == PushOutcome.QUEUED:
            raise DeploymentInProgress(event.workload_id, record.run_id)
        return record

    def process_due(self, now: float | None = None) -> list[PushRecord]:
        """Re-handle unbuilt revisions whose retry time has come.

        Entries leave the queue one at a time, so an error while handling one
        leaves the rest queued.
        """
        now = self._clock() if now is None else now
        records: list[PushRecord] = []
        while True:
            due = self.retry_queue.pop_due(now, limit=1)
            if not due:
                return records
            item = due[0]
            logger.info(
                "Retrying push %s for %s (retry %d).",
                item.event.revision.short,
                item.event.workload_id,
                item.attempt,
            )
            with self._requeue_on_error(item):
                records.append(self._process(item.event, attempt=item.attempt, drive=True))

    def drive(self, run_id: str) -> DeploymentRun:
        """Drive a run to completion, then take up parked events for its workload."""
        run = self.machine.drive(run_id)
        self._drain_waiting(run.workload_id)
        return run

    def abort(self, run_id: str, reason: str = "") -> DeploymentRun:
        return self.machine.abort(run_id, reason)

    def recover(self) -> list[DeploymentRun]:
        """Resume interrupted runs after a restart, then drain parked events."""
        runs = self.machine.recover()
        for workload_id in dict.fromkeys(run.workload_id for run in runs):
            self._drain_waiting(workload_id)
        return runs

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def status(self, run_id: str) -> DeploymentRun:
        return self.store.get(run_id)

    def runs(self, workload_id: str | None = None) -> list[DeploymentRun]:
        return self.store.list_runs(workload_id)

    def push_records(self, workload_id: str | None = None) -> list[PushRecord]:
        return self.store.push_records(workload_id)

    # ------------------------------------------------------------------
    # Internal: one event
    # ------------------------------------------------------------------

    def _process(self, event: PushEvent, *, attempt: int, drive: bool) -> PushRecord:
        record = self._handle(event, attempt=attempt, drive=drive)
        # The run this event waited on may have ended while it was being parked.
        if drive:
            self._drain_waiting(event.workload_id)
        return record

    def _handle(self, event: PushEvent, *, attempt: int, drive: bool) -> PushRecord:
        workload_id = event.workload_id

        with self._lock:
            active = self.store.active_run(workload_id)
        if active is not None:
            return self._park(event, attempt, active.run_id)

        repository = self.settings.repository_for(workload_id)
        try:
            target = self.resolver.resolve(event.revision, repository)
        except NotBuilt as exc:
            return self._schedule_retry(event, attempt, exc)
        except RegistryUnavailable as exc:
            return self._record(
                event,
                PushOutcome.REGISTRY_UNAVAILABLE,
                attempts=attempt + 1,
                detail=str(exc),
            )

        try:
            workload = self._observe_workload(workload_id)
        except ClusterApplyFailed as exc:
            logger.error("Cannot read workload %s: %s", workload_id, exc)
            return self._record(
                event, PushOutcome.FAILED, attempts=attempt + 1, detail=str(exc)
            )

        with self._lock:
            try:
                run = self.machine.create_run(
                    event.revision, target, workload, self.settings.rollout_policy()
                )
            except DeploymentInProgress as exc:
                return self._park(event, attempt, exc.run_id)

        try:
            if drive:
                run = self.machine.drive(run.run_id)
            else:
                run = self.machine.start(run.run_id)
        except InvalidPolicy:
            run = self.store.get(run.run_id)

        outcome = _OUTCOME_FOR_STATE.get(run.state, PushOutcome.STARTED)
        return self._record(
            event,
            outcome,
            attempts=attempt + 1,
            run_id=run.run_id,
            detail=run.failure_reason or "",
        )

    def _observe_workload(self, workload_id: str) -> WorkloadSpec:
        """Current workload spec, with verifier thresholds from settings."""
        workload = self.cluster.read_workload(workload_id)
        readiness = workload.readiness.model_copy(
            update={
                "success_threshold": self.settings.success_threshold,
                "failure_threshold": self.settings.failure_threshold,
            }
        )
        return workload.model_copy(update={"readiness": readiness})

    def _park(self, event: PushEvent, attempt: int, run_id: str | None) -> PushRecord:
        self.retry_queue.push(
            QueuedPush(event=event, reason=DeferReason.IN_PROGRESS, attempt=attempt)
        )
        logger.info(
            "Workload %s is busy with run %s; queued push %s.",
            event.workload_id,
            run_id,
            event.revision.short,
        )
        return self._record(
            event,
            PushOutcome.QUEUED,
            attempts=attempt,
            run_id=run_id,
            detail=f"waiting for run {run_id}",
        )

    def _schedule_retry(self, event: PushEvent, attempt: int, exc: NotBuilt) -> PushRecord:
        policy = self.settings.retry_policy()
        if attempt >= policy.max_retries:
            logger.error(
                "Giving up on %s for %s after %d retries: %s",
                event.revision.short,
                event.workload_id,
                attempt,
                exc,
            )
            return self._record(
                event, PushOutcome.GAVE_UP, attempts=attempt + 1, detail=str(exc)
            )

        delay = policy.delay_for(attempt)
        self.retry_queue.push(
            QueuedPush(
                event=event,
                reason=DeferReason.NOT_BUILT,
                attempt=attempt + 1,
                due_at=self._clock() + delay,
            )
        )
        logger.info(
            "Revision %s not built yet; retry %d/%d in %.1fs.",
            event.revision.short,
            attempt + 1,
            policy.max_retries,
            delay,
        )
        return self._record(
            event,
            PushOutcome.RETRY_SCHEDULED,
            attempts=attempt + 1,
            detail=f"retry in {delay:.1f}s",
        )

    def _drain_waiting(self, workload_id: str) -> None:
        """Handle parked events for a workload in arrival order while it is free."""
        while self.store.active_run(workload_id) is None:
            item = self.retry_queue.pop_waiting(workload_id)
            if item is None:
                return
            logger.info(
                "Taking up queued push %s for %s.", item.event.revision.short, workload_id
            )
            with self._requeue_on_error(item):
                record = self._handle(item.event, attempt=item.attempt, drive=True)
            if record.outcome == PushOutcome.QUEUED:
                return

    @contextmanager
    def _requeue_on_error(self, item: QueuedPush) -> Iterator[None]:
        try:
            yield
        except Exception:
            # Parked events go back behind any that arrived since.
            logger.exception(
                "Handling queued push %s for %s failed; putting it back.",
                item.event.revision.short,
                item.event.workload_id,
            )
            self.retry_queue.push(item)
            raise

    def _record(
        self,
        event: PushEvent,
        outcome: PushOutcome,
        *,
        attempts: int = 0,
        run_id: str | None = None,
        detail: str = "",
    ) -> PushRecord:
        record = PushRecord(
            event_id=event.event_id,
            workload_id=event.workload_id,
            revision=event.revision,
            outcome=outcome,
            attempts=attempts,
            run_id=run_id,
            detail=detail,
        )
        return self.store.record_push(record)
