"""Rollout planner: turns (current workload, target artifact, policy) into steps.

The planner is pure.  It reads no clock and uses no randomness, so the same
inputs always produce the same step sequence.  The state machine relies on
this to resume a persisted run: it recomputes the plan and compares it to
the stored one.

Rolling update bounds
---------------------
With ``N`` desired replicas, ``u = max_unavailable`` and ``s = max_surge``,
each step moves from ``(new, old)`` replicas to::

    old' = min(old, max(0, N - u - new))
    new' = max(new, min(N, N + s - old'))

The old set is scaled down first, then the new set up.  The next step
scales the old set down as if every replica of this step were ready, so a
forward rolling step only verifies Healthy once all of its replicas are
healthy; any unhealthy one fails the step.  Previous-artifact replicas are
ready and a step's new replicas are ready only once verified, so at every
point ``N - ready <= u`` and ``total - N <= s``.

Recreate steps and the rollback step tolerate ``u`` unready replicas.
"""

from __future__ import annotations

import logging

from helmsman.core.hasher import compute_plan_hash
from helmsman.errors import InvalidPolicy
from helmsman.models.artifacts import ArtifactRef
from helmsman.models.deployment import DeploymentRun
from helmsman.models.rollout import RolloutPolicy, RolloutStep, RolloutStrategy
from helmsman.models.workload import WorkloadSpec

logger = logging.getLogger(__name__)


class RolloutPlanner:
    """Computes ordered, deterministic rollout plans."""

    # ------------------------------------------------------------------
    # Forward plans
    # ------------------------------------------------------------------

    def plan(
        self,
        current: WorkloadSpec,
        target: ArtifactRef,
        policy: RolloutPolicy,
    ) -> list[RolloutStep]:
        """Return the ordered steps that move ``current`` onto ``target``.

        An empty list means the workload already runs ``target``.

        Raises
        ------
        InvalidPolicy
            If ``max_unavailable`` and ``max_surge`` are both zero, or the
            desired replica count is negative.
        """
        self.validate(current, policy)

        if target.same_artifact(current.image):
            return []

        if policy.strategy == RolloutStrategy.RECREATE:
            steps = self._plan_recreate(current, target, policy)
        else:
            steps = self._plan_rolling(current, target, policy)

        logger.debug(
            "Planned %d step(s) for %s -> %s (%s).",
            len(steps),
            current.workload_id,
            target.digest,
            policy.strategy.value,
        )
        return steps

    @staticmethod
    def validate(current: WorkloadSpec, policy: RolloutPolicy) -> None:
        if current.replicas < 0:
            raise InvalidPolicy(
                f"Desired replica count for {current.workload_id} is negative "
                f"({current.replicas})."
            )
        if policy.max_unavailable == 0 and policy.max_surge == 0:
            raise InvalidPolicy(
                "max_unavailable and max_surge are both 0; no rollout progress is possible."
            )

    def _plan_rolling(
        self, current: WorkloadSpec, target: ArtifactRef, policy: RolloutPolicy
    ) -> list[RolloutStep]:
        desired = current.replicas
        unavailable = policy.max_unavailable
        surge = policy.max_surge
        previous = current.image

        new = 0
        old = desired if previous is not None else 0
        targets: list[tuple[int, int]] = []
        while True:
            old_next = min(old, max(0, desired - unavailable - new))
            new_next = max(new, min(desired, desired + surge - old_next))
            targets.append((new_next, old_next))
            new, old = new_next, old_next
            if new == desired and old == 0:
                break

        return [
            self._make_step(
                index=i,
                artifact=target,
                replicas=new_count,
                previous=previous,
                previous_replicas=old_count,
                policy=policy,
                last=i == len(targets) - 1,
                require_all=True,
            )
            for i, (new_count, old_count) in enumerate(targets)
        ]

    def _plan_recreate(
        self, current: WorkloadSpec, target: ArtifactRef, policy: RolloutPolicy
    ) -> list[RolloutStep]:
        scale_down = self._make_step(
            index=0,
            artifact=target,
            replicas=0,
            previous=current.image,
            previous_replicas=0,
            policy=policy,
            last=False,
        )
        scale_up = self._make_step(
            index=1,
            artifact=target,
            replicas=current.replicas,
            previous=current.image,
            previous_replicas=0,
            policy=policy,
            last=True,
        )
        return [scale_down, scale_up]

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_step(self, run: DeploymentRun) -> RolloutStep:
        """Single step restoring the previous artifact across all replicas.

        The forward planner is not re-run.  With no previous artifact
        (first deployment) the rollback only scales the target down to zero.
        """
        if run.previous is None:
            return RolloutStep(index=0, artifact=run.target, replicas=0)
        return self._make_step(
            index=0,
            artifact=run.previous,
            replicas=run.workload.replicas,
            previous=run.target,
            previous_replicas=0,
            policy=run.policy,
            last=True,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def plan_hash(steps: list[RolloutStep]) -> str:
        return compute_plan_hash(steps)

    @staticmethod
    def _make_step(
        *,
        index: int,
        artifact: ArtifactRef,
        replicas: int,
        previous: ArtifactRef | None,
        previous_replicas: int,
        policy: RolloutPolicy,
        last: bool,
        require_all: bool = False,
    ) -> RolloutStep:
        if require_all:
            min_healthy = replicas
        else:
            min_healthy = max(replicas - policy.max_unavailable, 1 if replicas > 0 else 0)
        return RolloutStep(
            index=index,
            artifact=artifact,
            replicas=replicas,
            previous=previous,
            previous_replicas=previous_replicas if previous is not None else 0,
            pause_seconds=0.0 if last else policy.step_pause_seconds,
            min_healthy=min_healthy,
            max_unhealthy=replicas - min_healthy,
        )
