"""SQLite-backed store of deployment run snapshots and push records.

Each run is stored as a JSON snapshot of the frozen ``DeploymentRun`` model,
rewritten on every transition.  A partial unique index on ``workload_id``
over non-terminal rows enforces the one-active-run-per-workload invariant
at the database level, so it holds across threads and processes.

The abort flag lives in its own column.  Snapshot rewrites never touch it,
so an abort requested while another process drives the run is not lost.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from helmsman.errors import DeploymentInProgress, RunNotFoundError
from helmsman.models.deployment import DeploymentRun, PushRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS deployment_runs (
    run_id           TEXT PRIMARY KEY,
    workload_id      TEXT NOT NULL,
    state            TEXT NOT NULL,
    terminal         INTEGER NOT NULL DEFAULT 0,
    abort_requested  INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    payload_json     TEXT NOT NULL
);
"""

_CREATE_IDX_ACTIVE = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_active_workload
    ON deployment_runs(workload_id) WHERE terminal = 0;
"""

_CREATE_IDX_WORKLOAD = """
CREATE INDEX IF NOT EXISTS idx_runs_workload
    ON deployment_runs(workload_id, created_at);
"""

_CREATE_PUSHES = """
CREATE TABLE IF NOT EXISTS push_records (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id      TEXT NOT NULL,
    workload_id   TEXT NOT NULL,
    outcome       TEXT NOT NULL,
    run_id        TEXT,
    payload_json  TEXT NOT NULL
);
"""

_SELECT_RUN = "SELECT payload_json, abort_requested FROM deployment_runs"


class RunStore:
    """Persistent snapshots of deployment runs.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_RUNS)
            conn.execute(_CREATE_IDX_ACTIVE)
            conn.execute(_CREATE_IDX_WORKLOAD)
            conn.execute(_CREATE_PUSHES)
            conn.commit()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, run: DeploymentRun) -> DeploymentRun:
        """Insert a new run.

        Raises
        ------
        DeploymentInProgress
            If the workload already has a non-terminal run.
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO deployment_runs
                        (run_id, workload_id, state, terminal, abort_requested,
                         created_at, updated_at, payload_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.run_id,
                        run.workload_id,
                        run.state.value,
                        int(run.is_terminal),
                        int(run.abort_requested),
                        run.created_at.isoformat(),
                        run.updated_at.isoformat(),
                        run.model_dump_json(),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            active = self.active_run(run.workload_id)
            if active is not None:
                raise DeploymentInProgress(run.workload_id, active.run_id) from exc
            raise
        logger.debug("Stored new run %s for workload %s.", run.run_id, run.workload_id)
        return run

    def save(self, run: DeploymentRun) -> DeploymentRun:
        """Overwrite the snapshot of an existing run.

        The stored abort flag is left as is.
        """
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE deployment_runs
                   SET state = ?, terminal = ?, updated_at = ?, payload_json = ?
                 WHERE run_id = ?
                """,
                (
                    run.state.value,
                    int(run.is_terminal),
                    run.updated_at.isoformat(),
                    run.model_dump_json(),
                    run.run_id,
                ),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise RunNotFoundError(run.run_id)
        return run

    def request_abort(self, run_id: str) -> DeploymentRun:
        """Flag a run for abort; the driving process acts on it."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE deployment_runs SET abort_requested = 1 WHERE run_id = ?",
                (run_id,),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise RunNotFoundError(run_id)
        return self.get(run_id)

    def record_push(self, record: PushRecord) -> PushRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO push_records (event_id, workload_id, outcome, run_id, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.event_id,
                    record.workload_id,
                    record.outcome.value,
                    record.run_id,
                    record.model_dump_json(),
                ),
            )
            conn.commit()
        return record

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> DeploymentRun:
        with self._connect() as conn:
            row = conn.execute(f"{_SELECT_RUN} WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        return self._row_to_run(row)

    def find(self, run_id: str) -> DeploymentRun | None:
        try:
            return self.get(run_id)
        except RunNotFoundError:
            return None

    def is_abort_requested(self, run_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT abort_requested FROM deployment_runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        return bool(row and row[0])

    def active_run(self, workload_id: str) -> DeploymentRun | None:
        """Return the non-terminal run owning a workload, if any."""
        with self._connect() as conn:
            row = conn.execute(
                f"{_SELECT_RUN} WHERE workload_id = ? AND terminal = 0",
                (workload_id,),
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, workload_id: str | None = None) -> list[DeploymentRun]:
        """All runs, newest first, optionally for one workload."""
        query = _SELECT_RUN
        params: tuple[str, ...] = ()
        if workload_id is not None:
            query += " WHERE workload_id = ?"
            params = (workload_id,)
        query += " ORDER BY created_at DESC, rowid DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    def non_terminal_runs(self) -> list[DeploymentRun]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{_SELECT_RUN} WHERE terminal = 0 ORDER BY created_at ASC"
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def push_records(self, workload_id: str | None = None) -> list[PushRecord]:
        """Recorded push outcomes in arrival order."""
        query = "SELECT payload_json FROM push_records"
        params: tuple[str, ...] = ()
        if workload_id is not None:
            query += " WHERE workload_id = ?"
            params = (workload_id,)
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [PushRecord.model_validate_json(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_run(row: tuple) -> DeploymentRun:
        payload_json, abort_requested = row
        run = DeploymentRun.model_validate_json(payload_json)
        if bool(abort_requested) != run.abort_requested:
            run = run.model_copy(update={"abort_requested": bool(abort_requested)})
        return run
