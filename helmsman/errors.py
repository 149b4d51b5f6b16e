"""Error taxonomy for the deployment orchestrator.

Every error carries a stable ``error_code`` that is written to the run record
when the error ends a deployment, so the failure reason stays queryable after
the process that hit it is gone.

Transient errors (``RegistryUnavailable``, ``ClusterApplyFailed``) are retried
inside the component that owns the I/O.  Policy and persistence errors
(``InvalidPolicy``, ``ConsistencyError``) are never retried.
"""

from __future__ import annotations


class HelmsmanError(RuntimeError):
    """Base class for all orchestrator errors."""

    error_code: str = "helmsman_error"


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class NotBuilt(HelmsmanError):
    """No artifact has been published for the requested revision yet."""

    error_code = "not_built"


class RegistryUnavailable(HelmsmanError):
    """The image registry could not be reached."""

    error_code = "registry_unavailable"


class RegistryNotFound(HelmsmanError):
    """The registry has no manifest for the requested repository/tag."""

    error_code = "registry_not_found"


# ---------------------------------------------------------------------------
# Planning and execution
# ---------------------------------------------------------------------------


class InvalidPolicy(HelmsmanError):
    """The rollout policy cannot make progress or the workload spec is invalid."""

    error_code = "invalid_policy"


class DeploymentInProgress(HelmsmanError):
    """A non-terminal run already owns the workload."""

    error_code = "deployment_in_progress"

    def __init__(self, workload_id: str, run_id: str | None = None) -> None:
        self.workload_id = workload_id
        self.run_id = run_id
        detail = f" (run {run_id})" if run_id else ""
        super().__init__(
            f"Workload {workload_id!r} already has a deployment in progress{detail}."
        )


class ClusterApplyFailed(HelmsmanError):
    """The cluster rejected or failed to acknowledge a desired-state update."""

    error_code = "cluster_apply_failed"


class VerificationTimeout(HelmsmanError):
    """Health verification did not reach a verdict before its deadline."""

    error_code = "verification_timeout"


class RollbackFailed(HelmsmanError):
    """The restored state did not verify healthy.

    The workload may be degraded and needs manual recovery.
    """

    error_code = "rollback_failed"


class ConsistencyError(HelmsmanError):
    """The persisted plan does not match the plan recomputed on resume."""

    error_code = "consistency_error"


class InvalidTransitionError(HelmsmanError):
    """Raised when a requested state transition is not valid."""

    error_code = "invalid_transition"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class RunNotFoundError(HelmsmanError, KeyError):
    """No deployment run with the given id exists in the store."""

    error_code = "run_not_found"


class LedgerIntegrityError(HelmsmanError):
    """Raised when the ledger hash chain is broken."""

    error_code = "ledger_integrity"


class RetryQueueFull(HelmsmanError):
    """The deferred-event queue reached its configured depth."""

    error_code = "retry_queue_full"
