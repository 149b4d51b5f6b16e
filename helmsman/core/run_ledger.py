"""Transition ledger: every state change of every run, sealed and chained.

The run store only keeps the newest snapshot of a run.  The ledger keeps the
path the run took to get there, one row per transition, and each row carries
the hash of the row before it for the same run.  Editing or removing a row
behind the ledger's back makes :meth:`RunLedger.verify_chain` fail.

Rows are only ever inserted.  Nothing in this module updates or deletes.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from helmsman.core.hasher import compute_entry_hash
from helmsman.errors import LedgerIntegrityError
from helmsman.models.ledger import LedgerEntry

# Column order for inserts and for rebuilding entries; matches LedgerEntry.
_COLUMNS = (
    "entry_id",
    "run_id",
    "workload_id",
    "state_transition",
    "step_index",
    "artifact_digest",
    "detail",
    "timestamp_utc",
    "previous_entry_hash",
    "entry_hash",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    workload_id           TEXT NOT NULL,
    state_transition      TEXT NOT NULL,
    step_index            INTEGER NOT NULL DEFAULT 0,
    artifact_digest       TEXT NOT NULL DEFAULT '',
    detail                TEXT NOT NULL DEFAULT '',
    timestamp_utc         TEXT NOT NULL,
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS idx_ledger_run ON run_ledger(run_id, id);
"""

_INSERT = "INSERT INTO run_ledger ({}) VALUES ({})".format(
    ", ".join(_COLUMNS), ", ".join("?" for _ in _COLUMNS)
)


def _seal(entry: LedgerEntry, previous_hash: str) -> LedgerEntry:
    linked = entry.model_copy(
        update={"previous_entry_hash": previous_hash, "entry_hash": ""}
    )
    return linked.model_copy(
        update={"entry_hash": compute_entry_hash(linked.model_dump(mode="json"))}
    )


def _from_row(row: sqlite3.Row) -> LedgerEntry:
    values = {name: row[name] for name in _COLUMNS}
    values["timestamp_utc"] = datetime.fromisoformat(values["timestamp_utc"])
    return LedgerEntry(**values)


class RunLedger:
    """Append-only transition ledger stored in one SQLite file.

    Parameters
    ----------
    db_path:
        Location of the ledger database.  Parent directories are created.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Link ``entry`` to the head of its run's chain and store it.

        The head lookup and the insert share one ``BEGIN IMMEDIATE``
        transaction, so two writers on the same run cannot both link to the
        same predecessor.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            head = conn.execute(
                "SELECT entry_hash FROM run_ledger WHERE run_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (entry.run_id,),
            ).fetchone()
            sealed = _seal(entry, head["entry_hash"] if head else "")
            row = sealed.model_dump(mode="json")
            row["timestamp_utc"] = sealed.timestamp_utc.isoformat()
            conn.execute(_INSERT, tuple(row[name] for name in _COLUMNS))
            conn.commit()
        return sealed

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Entries for ``run_id`` in the order they were appended."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
        return [_from_row(row) for row in rows]

    def get_latest(self, run_id: str) -> LedgerEntry | None:
        """Head of the run's chain, or None if the run has no entries."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return _from_row(row) if row else None

    def get_all_run_ids(self) -> list[str]:
        """Run ids with ledger entries, most recently written first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id FROM run_ledger GROUP BY run_id ORDER BY MAX(id) DESC"
            ).fetchall()
        return [row["run_id"] for row in rows]

    def verify_chain(self, run_id: str) -> bool:
        """Recompute every seal of a run and check each back-link.

        Returns ``True`` for an intact (or empty) chain; raises
        :class:`LedgerIntegrityError` naming the first bad entry otherwise.
        """
        expected_link = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != expected_link:
                raise LedgerIntegrityError(
                    f"Broken link at entry {entry.entry_id}: points to "
                    f"{entry.previous_entry_hash!r}, chain head was {expected_link!r}"
                )
            if _seal(entry, expected_link).entry_hash != entry.entry_hash:
                raise LedgerIntegrityError(
                    f"Seal mismatch at entry {entry.entry_id}: contents were "
                    "changed after it was appended"
                )
            expected_link = entry.entry_hash
        return True
