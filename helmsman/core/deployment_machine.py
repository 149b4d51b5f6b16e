"""Deployment run state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- At most one non-terminal run per workload (run store unique index)
- Every transition recorded in the run ledger and the run snapshot
  persisted before the next cluster side effect
- Resume recomputes the plan and refuses to continue on a mismatch
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from helmsman.bridge.cluster import ClusterClient
from helmsman.core.planner import RolloutPlanner
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.core.verifier import HealthVerifier
from helmsman.errors import (
    ClusterApplyFailed,
    ConsistencyError,
    HelmsmanError,
    InvalidPolicy,
    InvalidTransitionError,
    RollbackFailed,
    VerificationTimeout,
)
from helmsman.models.artifacts import ArtifactRef, Revision
from helmsman.models.deployment import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentRun,
    DeploymentState,
)
from helmsman.models.health import HealthStatus
from helmsman.models.ledger import LedgerEntry
from helmsman.models.rollout import RolloutPolicy, RolloutStep
from helmsman.models.workload import WorkloadSpec

logger = logging.getLogger(__name__)

# States in which an abort request diverts the run to rollback.
_ABORTABLE = frozenset(
    {DeploymentState.PENDING, DeploymentState.ROLLING_OUT, DeploymentState.VERIFYING}
)

ABORTED = "aborted"
UNHEALTHY = "unhealthy"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def request_abort(
    store: RunStore, ledger: RunLedger, run_id: str, reason: str = ""
) -> DeploymentRun:
    """Flag a run for abort and note the request in its ledger.

    Needs no cluster access, so any process sharing the store can call it;
    the process driving the run acts on the flag.

    Raises
    ------
    InvalidTransitionError
        If the run is already terminal.
    """
    run = store.get(run_id)
    if run.is_terminal:
        raise InvalidTransitionError(
            f"Cannot abort run {run_id}: it already finished {run.state.value}."
        )
    run = store.request_abort(run_id)
    ledger.append(
        LedgerEntry(
            run_id=run.run_id,
            workload_id=run.workload_id,
            state_transition="abort_requested",
            step_index=run.step_index,
            artifact_digest=run.target.digest,
            detail=reason,
        )
    )
    logger.warning("Abort requested for run %s%s.", run_id, f": {reason}" if reason else "")
    return run


class DeploymentMachine:
    """Drives deployment runs through their state machine.

    Parameters
    ----------
    store:
        Run snapshots; the source of truth for current state.
    ledger:
        Hash-chained transition history.
    cluster:
        Desired-state apply target.
    verifier:
        Health verifier used after every step and after rollback.
    planner:
        Rollout planner.  A default ``RolloutPlanner`` if not provided.
    apply_max_attempts, apply_backoff_seconds:
        Bounded retry of ``ClusterApplyFailed`` per step.
    sleep:
        Injected for tests; used for apply backoff and step pauses.
    """

    def __init__(
        self,
        store: RunStore,
        ledger: RunLedger,
        cluster: ClusterClient,
        verifier: HealthVerifier,
        planner: RolloutPlanner | None = None,
        *,
        apply_max_attempts: int = 3,
        apply_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._cluster = cluster
        self._verifier = verifier
        self._planner = planner or RolloutPlanner()
        self._apply_max_attempts = max(1, apply_max_attempts)
        self._apply_backoff = apply_backoff_seconds
        self._sleep = sleep

    @property
    def planner(self) -> RolloutPlanner:
        return self._planner

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def create_run(
        self,
        revision: Revision,
        target: ArtifactRef,
        workload: WorkloadSpec,
        policy: RolloutPolicy,
    ) -> DeploymentRun:
        """Persist a new Pending run.

        Raises
        ------
        DeploymentInProgress
            If the workload already has a non-terminal run.
        """
        run = DeploymentRun(
            workload_id=workload.workload_id,
            revision=revision,
            target=target,
            previous=workload.image,
            policy=policy,
            workload=workload,
        )
        self._store.insert(run)
        self._ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                workload_id=run.workload_id,
                state_transition=f"->{DeploymentState.PENDING.value}",
                artifact_digest=target.digest,
                detail=f"revision {revision.short} -> {target.image}",
            )
        )
        logger.info(
            "Created run %s: %s %s -> %s.",
            run.run_id,
            run.workload_id,
            workload.image.digest if workload.image else "<none>",
            target.digest,
        )
        return run

    def start(self, run_id: str) -> DeploymentRun:
        """Plan a Pending run and move it to RollingOut.

        An empty plan (workload already on the target) succeeds at once.

        Raises
        ------
        InvalidPolicy
            After moving the run to Failed.
        """
        run = self._store.get(run_id)
        if run.state != DeploymentState.PENDING:
            raise InvalidTransitionError(
                f"Cannot start run {run_id}: it is {run.state.value}, not pending."
            )
        try:
            steps = self._planner.plan(run.workload, run.target, run.policy)
        except InvalidPolicy as exc:
            self._fail(run, exc)
            raise

        plan_hash = self._planner.plan_hash(steps)
        if not steps:
            return self._transition(
                run,
                DeploymentState.SUCCEEDED,
                detail="workload already runs the target artifact",
                steps=steps,
                plan_hash=plan_hash,
            )
        return self._transition(
            run,
            DeploymentState.ROLLING_OUT,
            detail=f"planned {len(steps)} step(s), plan {plan_hash[:12]}",
            steps=steps,
            plan_hash=plan_hash,
            step_index=0,
        )

    def advance(self, run_id: str) -> DeploymentRun:
        """Perform exactly one state's work and return the updated run."""
        run = self._store.get(run_id)
        if run.is_terminal:
            return run

        if run.abort_requested and run.state in _ABORTABLE:
            logger.warning("Run %s: abort requested, rolling back.", run_id)
            return self._transition(
                run,
                DeploymentState.ROLLING_BACK,
                detail=ABORTED,
                failure_reason="aborted by operator",
                error_code=ABORTED,
            )

        if run.state == DeploymentState.PENDING:
            return self.start(run_id)
        if run.state == DeploymentState.ROLLING_OUT:
            return self._apply_current_step(run)
        if run.state == DeploymentState.VERIFYING:
            return self._verify_current_step(run)
        return self._roll_back(run)

    def drive(self, run_id: str) -> DeploymentRun:
        """Advance a run until it reaches a terminal state."""
        run = self._store.get(run_id)
        while not run.is_terminal:
            run = self.advance(run_id)
        logger.info(
            "Run %s finished %s%s.",
            run.run_id,
            run.state.value,
            f" ({run.failure_reason})" if run.failure_reason else "",
        )
        return run

    def abort(self, run_id: str, reason: str = "") -> DeploymentRun:
        """Request an abort; the driver rolls the run back before its next step.

        Raises
        ------
        InvalidTransitionError
            If the run is already terminal.
        """
        return request_abort(self._store, self._ledger, run_id, reason)

    def resume(self, run_id: str) -> DeploymentRun:
        """Continue a persisted run from its stored state and step index.

        Raises
        ------
        ConsistencyError
            If the recomputed plan differs from the persisted one.  The run
            is moved to Failed first.
        """
        run = self._store.get(run_id)
        if run.is_terminal:
            return run

        if run.state != DeploymentState.PENDING:
            self._check_plan(run)

        logger.info(
            "Resuming run %s in %s at step %d/%d.",
            run.run_id,
            run.state.value,
            run.step_index + 1,
            len(run.steps),
        )
        return self.drive(run_id)

    def recover(self) -> list[DeploymentRun]:
        """Resume every non-terminal run in the store (process restart)."""
        results: list[DeploymentRun] = []
        for run in self._store.non_terminal_runs():
            try:
                results.append(self.resume(run.run_id))
            except HelmsmanError as exc:
                logger.error("Could not recover run %s: %s", run.run_id, exc)
                results.append(self._store.get(run.run_id))
        return results

    # ------------------------------------------------------------------
    # State work
    # ------------------------------------------------------------------

    def _apply_current_step(self, run: DeploymentRun) -> DeploymentRun:
        step = self._require_step(run)
        try:
            self._apply(run.workload_id, step, restore_first=False)
        except ClusterApplyFailed as exc:
            return self._step_failed(run, exc.error_code, str(exc))
        return self._transition(
            run,
            DeploymentState.VERIFYING,
            detail=self._describe(step),
        )

    def _verify_current_step(self, run: DeploymentRun) -> DeploymentRun:
        step = self._require_step(run)
        verdict = self._verifier.verify(
            run.workload_id,
            step,
            run.workload.readiness,
            should_stop=lambda: self._store.is_abort_requested(run.run_id),
        )

        if verdict.status == HealthStatus.HEALTHY:
            detail = (
                f"step {step.index} healthy "
                f"({verdict.healthy_replicas}/{verdict.required_replicas})"
            )
            if run.step_index + 1 >= len(run.steps):
                return self._transition(run, DeploymentState.SUCCEEDED, detail=detail)
            advanced = self._transition(
                run,
                DeploymentState.ROLLING_OUT,
                detail=detail,
                step_index=run.step_index + 1,
            )
            if step.pause_seconds > 0:
                self._sleep(step.pause_seconds)
            return advanced

        if verdict.status == HealthStatus.UNKNOWN:
            # Verification was stopped for an abort; the next advance handles it.
            return self._store.get(run.run_id)

        if verdict.reason.startswith(VerificationTimeout.error_code):
            return self._step_failed(run, VerificationTimeout.error_code, verdict.reason)
        return self._step_failed(
            run,
            UNHEALTHY,
            f"step {step.index} unhealthy: {verdict.unhealthy_replicas} replica(s) "
            f"failing, at most {step.max_unhealthy} tolerated",
        )

    def _roll_back(self, run: DeploymentRun) -> DeploymentRun:
        step = self._planner.rollback_step(run)
        try:
            self._apply(run.workload_id, step, restore_first=True)
        except ClusterApplyFailed as exc:
            return self._rollback_failed(run, str(exc))

        verdict = self._verifier.verify(run.workload_id, step, run.workload.readiness)
        if verdict.status != HealthStatus.HEALTHY:
            return self._rollback_failed(
                run,
                verdict.reason
                or f"{verdict.unhealthy_replicas} restored replica(s) unhealthy",
            )
        return self._transition(
            run,
            DeploymentState.ROLLED_BACK,
            detail=f"restored {self._describe(step)}",
        )

    def _step_failed(self, run: DeploymentRun, error_code: str, reason: str) -> DeploymentRun:
        if run.policy.rollback_enabled:
            logger.warning("Run %s: %s; rolling back.", run.run_id, reason)
            return self._transition(
                run,
                DeploymentState.ROLLING_BACK,
                detail=reason,
                failure_reason=reason,
                error_code=error_code,
            )
        logger.error("Run %s failed: %s (rollback disabled).", run.run_id, reason)
        return self._transition(
            run,
            DeploymentState.FAILED,
            detail=reason,
            failure_reason=reason,
            error_code=error_code,
        )

    def _rollback_failed(self, run: DeploymentRun, reason: str) -> DeploymentRun:
        message = f"rollback failed: {reason}"
        if run.failure_reason:
            message += f" (after: {run.failure_reason})"
        logger.critical(
            "Run %s: %s. Workload %s needs manual recovery.",
            run.run_id,
            message,
            run.workload_id,
        )
        return self._transition(
            run,
            DeploymentState.FAILED,
            detail=message,
            failure_reason=message,
            error_code=RollbackFailed.error_code,
        )

    def _fail(self, run: DeploymentRun, exc: HelmsmanError) -> DeploymentRun:
        logger.error("Run %s failed: %s", run.run_id, exc)
        return self._transition(
            run,
            DeploymentState.FAILED,
            detail=str(exc),
            failure_reason=str(exc),
            error_code=exc.error_code,
        )

    # ------------------------------------------------------------------
    # Cluster apply
    # ------------------------------------------------------------------

    def _apply(self, workload_id: str, step: RolloutStep, *, restore_first: bool) -> None:
        """Apply one step's desired state.

        Forward steps scale the previous artifact down before scaling the
        target up.  Rollback scales the restored artifact up first.
        """
        changes: list[tuple[ArtifactRef, int]] = []
        if step.previous is not None:
            changes.append((step.previous, step.previous_replicas))
        changes.append((step.artifact, step.replicas))
        if restore_first:
            changes.reverse()

        for artifact, replicas in changes:
            self._set_with_retry(workload_id, replicas, artifact)

    def _set_with_retry(self, workload_id: str, replicas: int, artifact: ArtifactRef) -> None:
        for attempt in range(self._apply_max_attempts):
            try:
                self._cluster.set_workload(workload_id, replicas, artifact)
                return
            except ClusterApplyFailed as exc:
                if attempt + 1 >= self._apply_max_attempts:
                    raise
                delay = self._apply_backoff * (2 ** attempt)
                logger.warning(
                    "Apply %s x %s to %s failed (attempt %d/%d): %s; retrying in %.2fs.",
                    replicas,
                    artifact.digest,
                    workload_id,
                    attempt + 1,
                    self._apply_max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Transition core
    # ------------------------------------------------------------------

    def _transition(
        self,
        run: DeploymentRun,
        target_state: DeploymentState,
        *,
        detail: str = "",
        **updates: object,
    ) -> DeploymentRun:
        """Validate, record, and persist one state transition."""
        allowed = VALID_TRANSITIONS.get(run.state, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition run {run.run_id} from {run.state.value} to "
                f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
            )

        now = _utcnow()
        fields: dict[str, object] = {"state": target_state, "updated_at": now, **updates}
        if target_state in TERMINAL_STATES:
            fields["finished_at"] = now
        updated = run.model_copy(update=fields)

        step = updated.current_step
        self._ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                workload_id=run.workload_id,
                state_transition=f"{run.state.value}->{target_state.value}",
                step_index=updated.step_index,
                artifact_digest=step.artifact.digest if step else run.target.digest,
                detail=detail,
            )
        )
        self._store.save(updated)
        logger.info(
            "Run %s: %s -> %s%s",
            run.run_id,
            run.state.value,
            target_state.value,
            f" ({detail})" if detail else "",
        )
        return updated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_plan(self, run: DeploymentRun) -> None:
        try:
            recomputed = self._planner.plan(run.workload, run.target, run.policy)
        except InvalidPolicy as exc:
            error = ConsistencyError(f"persisted policy no longer plans: {exc}")
            self._fail(run, error)
            raise error from exc

        recomputed_hash = self._planner.plan_hash(recomputed)
        stored_hash = self._planner.plan_hash(run.steps)
        if recomputed_hash != run.plan_hash or stored_hash != run.plan_hash:
            error = ConsistencyError(
                f"plan for run {run.run_id} does not match its persisted plan "
                f"(stored {run.plan_hash[:12]}, recomputed {recomputed_hash[:12]})"
            )
            self._fail(run, error)
            raise error

    def _require_step(self, run: DeploymentRun) -> RolloutStep:
        step = run.current_step
        if step is None:
            raise ConsistencyError(
                f"run {run.run_id} is {run.state.value} at step {run.step_index} "
                f"but has {len(run.steps)} step(s)"
            )
        return step

    @staticmethod
    def _describe(step: RolloutStep) -> str:
        text = f"step {step.index}: {step.replicas} x {step.artifact.digest}"
        if step.previous is not None:
            text += f", {step.previous_replicas} x {step.previous.digest}"
        return text
