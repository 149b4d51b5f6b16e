"""StatusProjection: pure read-only view over the run store and ledger.

The store answers "where is the run now"; the ledger answers "how did it
get there".  Every call re-reads both.  StatusProjection never maintains
its own state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.errors import LedgerIntegrityError
from helmsman.models.deployment import DeploymentRun, DeploymentState
from helmsman.models.ledger import LedgerEntry


class TransitionRecord(BaseModel):
    """One line of a run's history, derived from a ledger entry."""

    model_config = ConfigDict(frozen=True)

    transition: str
    step_index: int = 0
    artifact_digest: str = ""
    detail: str = ""
    timestamp: datetime


class RunStatus(BaseModel):
    """A frozen, point-in-time snapshot of a deployment run.

    Computed fresh on every ``snapshot()`` call and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    workload_id: str
    revision: str
    state: DeploymentState
    step_index: int = 0
    total_steps: int = 0
    target_image: str
    previous_image: str | None = None
    failure_reason: str | None = None
    error_code: str | None = None
    abort_requested: bool = False
    history: list[TransitionRecord] = []
    chain_valid: bool = True
    created_at: datetime
    finished_at: datetime | None = None
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            DeploymentState.SUCCEEDED,
            DeploymentState.ROLLED_BACK,
            DeploymentState.FAILED,
        )

    @property
    def completed_steps(self) -> int:
        """Steps verified healthy so far."""
        if self.state == DeploymentState.SUCCEEDED:
            return self.total_steps
        return min(self.step_index, self.total_steps)


class StatusProjection:
    """Pure read-only projection over the run store and ledger.

    Parameters
    ----------
    store:
        Run snapshots.
    ledger:
        Transition history.
    """

    def __init__(self, store: RunStore, ledger: RunLedger) -> None:
        self._store = store
        self._ledger = ledger

    def snapshot(self, run_id: str) -> RunStatus:
        """Produce a point-in-time status of one run.

        Raises
        ------
        RunNotFoundError
            If the store has no such run.
        """
        run = self._store.get(run_id)
        entries = self._ledger.get_run_entries(run_id)
        return self._build(run, entries, chain_valid=self._check_chain_valid(run_id))

    def list_runs(self, workload_id: str | None = None) -> list[DeploymentRun]:
        return self._store.list_runs(workload_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build(
        run: DeploymentRun, entries: list[LedgerEntry], *, chain_valid: bool
    ) -> RunStatus:
        history = [
            TransitionRecord(
                transition=entry.state_transition,
                step_index=entry.step_index,
                artifact_digest=entry.artifact_digest,
                detail=entry.detail,
                timestamp=entry.timestamp_utc,
            )
            for entry in entries
        ]
        last_updated = entries[-1].timestamp_utc if entries else run.updated_at
        return RunStatus(
            run_id=run.run_id,
            workload_id=run.workload_id,
            revision=run.revision.short,
            state=run.state,
            step_index=run.step_index,
            total_steps=len(run.steps),
            target_image=run.target.image,
            previous_image=run.previous.image if run.previous else None,
            failure_reason=run.failure_reason,
            error_code=run.error_code,
            abort_requested=run.abort_requested,
            history=history,
            chain_valid=chain_valid,
            created_at=run.created_at,
            finished_at=run.finished_at,
            last_updated=last_updated,
        )

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
