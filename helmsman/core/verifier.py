"""Health verifier: threshold-based readiness classification for one step.

Each replica running the step's artifact is probed on every poll.  A
replica is healthy after ``success_threshold`` consecutive successes and
unhealthy after ``failure_threshold`` consecutive failures.  The step is:

- Healthy once ``step.min_healthy`` replicas are individually healthy,
- Unhealthy once more than ``step.max_unhealthy`` are individually unhealthy,
- Unknown otherwise.  Unknown is the only verdict that leads to another poll.

A probe transport error counts as one failed check for that replica.
``verify`` turns a deadline overrun into an Unhealthy verdict.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping

from helmsman.bridge.cluster import ClusterClient
from helmsman.bridge.probes import Probe, ProbeError, probe_for
from helmsman.config import VerifierConfig
from helmsman.errors import HelmsmanError, VerificationTimeout
from helmsman.models.health import HealthStatus, HealthVerdict
from helmsman.models.rollout import RolloutStep
from helmsman.models.workload import ProbeProtocol, ReadinessCheck

logger = logging.getLogger(__name__)


class _Streak:
    __slots__ = ("successes", "failures")

    def __init__(self) -> None:
        self.successes = 0
        self.failures = 0

    def record(self, ok: bool) -> None:
        if ok:
            self.successes += 1
            self.failures = 0
        else:
            self.failures += 1
            self.successes = 0


class VerificationSession:
    """Per-replica consecutive check counters for one verification window.

    A session is opened per step and discarded once the step reaches a
    terminal verdict; nothing in it is persisted.
    """

    def __init__(self, workload_id: str, step: RolloutStep, readiness: ReadinessCheck) -> None:
        self.workload_id = workload_id
        self.step = step
        self.readiness = readiness
        self.streaks: dict[str, _Streak] = {}
        self.polls = 0

    def healthy_count(self) -> int:
        threshold = self.readiness.success_threshold
        return sum(1 for s in self.streaks.values() if s.successes >= threshold)

    def unhealthy_count(self) -> int:
        threshold = self.readiness.failure_threshold
        return sum(1 for s in self.streaks.values() if s.failures >= threshold)


class HealthVerifier:
    """Polls replica readiness and classifies a rollout step.

    Parameters
    ----------
    cluster:
        Source of the per-replica readiness listing.
    config:
        Poll interval and verification deadline.
    probes:
        Optional per-protocol probe overrides; defaults from
        ``helmsman.bridge.probes``.
    clock, sleep:
        Injected for tests; default to ``time.monotonic`` / ``time.sleep``.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: VerifierConfig | None = None,
        *,
        probes: Mapping[ProbeProtocol, Probe] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cluster = cluster
        self.config = config or VerifierConfig()
        self._probes = dict(probes or {})
        self._clock = clock
        self._sleep = sleep

    def open_session(
        self, workload_id: str, step: RolloutStep, readiness: ReadinessCheck
    ) -> VerificationSession:
        return VerificationSession(workload_id, step, readiness)

    # ------------------------------------------------------------------
    # Single poll
    # ------------------------------------------------------------------

    def poll(self, session: VerificationSession) -> HealthVerdict:
        """Probe every replica of the step's artifact once and classify."""
        session.polls += 1
        step = session.step
        probe = self._probes.get(session.readiness.protocol) or probe_for(
            session.readiness.protocol
        )

        try:
            listing = self._cluster.readiness_of(session.workload_id)
        except (HelmsmanError, OSError) as exc:
            logger.warning(
                "Readiness read for %s failed (%s); counting a failed check per replica.",
                session.workload_id,
                exc,
            )
            for streak in session.streaks.values():
                streak.record(False)
            return self._classify(session)

        replicas = [r for r in listing if r.artifact_digest == step.artifact.digest]
        present = {r.replica_id for r in replicas}
        for gone in set(session.streaks) - present:
            del session.streaks[gone]

        for replica in replicas:
            try:
                ok = probe.check(replica, session.readiness)
            except (ProbeError, OSError) as exc:
                logger.debug("Probe of %s failed: %s", replica.replica_id, exc)
                ok = False
            session.streaks.setdefault(replica.replica_id, _Streak()).record(ok)

        return self._classify(session)

    def _classify(self, session: VerificationSession) -> HealthVerdict:
        step = session.step
        healthy = session.healthy_count()
        unhealthy = session.unhealthy_count()
        failure_threshold = session.readiness.failure_threshold

        if healthy >= step.min_healthy:
            status = HealthStatus.HEALTHY
        elif unhealthy > step.max_unhealthy:
            status = HealthStatus.UNHEALTHY
        else:
            status = HealthStatus.UNKNOWN

        live = [s for s in session.streaks.values() if s.failures < failure_threshold]
        return HealthVerdict(
            status=status,
            consecutive_successes=min((s.successes for s in live), default=0),
            consecutive_failures=max(
                (s.failures for s in session.streaks.values()), default=0
            ),
            healthy_replicas=healthy,
            unhealthy_replicas=unhealthy,
            required_replicas=step.min_healthy,
        )

    # ------------------------------------------------------------------
    # Bounded verification loop
    # ------------------------------------------------------------------

    def verify(
        self,
        workload_id: str,
        step: RolloutStep,
        readiness: ReadinessCheck,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> HealthVerdict:
        """Poll until a terminal verdict or the deadline.

        An overrun deadline is reported as Unhealthy with a
        ``verification_timeout`` reason.  When ``should_stop`` returns
        True between polls, the last (Unknown) verdict is returned with
        reason ``stopped``.
        """
        session = self.open_session(workload_id, step, readiness)
        started = self._clock()
        timeout = self.config.timeout_seconds

        while True:
            verdict = self.poll(session)
            if verdict.is_terminal:
                logger.info(
                    "Step %d of %s verified %s (%d/%d healthy, %d unhealthy).",
                    step.index,
                    workload_id,
                    verdict.status.value,
                    verdict.healthy_replicas,
                    verdict.required_replicas,
                    verdict.unhealthy_replicas,
                )
                return verdict

            elapsed = self._clock() - started
            if elapsed >= timeout:
                logger.warning(
                    "Step %d of %s did not verify within %.1fs.",
                    step.index,
                    workload_id,
                    timeout,
                )
                return verdict.model_copy(
                    update={
                        "status": HealthStatus.UNHEALTHY,
                        "reason": f"{VerificationTimeout.error_code}: no verdict "
                        f"after {timeout:.1f}s ({session.polls} polls)",
                    }
                )

            if should_stop is not None and should_stop():
                return verdict.model_copy(update={"reason": "stopped"})

            self._sleep(min(self.config.poll_interval_seconds, timeout - elapsed))
