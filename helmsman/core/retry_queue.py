"""Deferred push-event queue: retry backoff and per-workload waiting lines.

Two kinds of entries share the queue:

1. ``not_built``: the revision had no artifact yet; the entry becomes due
   at ``due_at`` (exponential backoff computed by the coordinator).
2. ``in_progress``: the workload was busy; the entry waits until the
   active run ends and is taken in FIFO order per workload.

Two backends are available:

1. **SQLite queue** (``db_path`` provided): persistent, survives restart.
2. **In-memory list** (``db_path`` is None): volatile, for tests and
   single-process use.

The queue is bounded (default 1024 entries) to prevent unbounded growth.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from helmsman.errors import RetryQueueFull
from helmsman.models.deployment import PushEvent

logger = logging.getLogger(__name__)


class DeferReason(str, Enum):
    NOT_BUILT = "not_built"
    IN_PROGRESS = "in_progress"


class QueuedPush(BaseModel):
    """A push event parked for later handling."""

    model_config = ConfigDict(frozen=True)

    event: PushEvent
    reason: DeferReason
    attempt: int = 0  # NotBuilt retries already performed
    due_at: float = 0.0  # epoch seconds; ignored for IN_PROGRESS entries


class RetryQueue:
    """Bounded queue of deferred push events.

    Parameters
    ----------
    db_path:
        Path to a SQLite database file for persistent storage.  When
        ``None``, an in-memory list is used (volatile).
    max_depth:
        Maximum number of queued entries across both reasons.
    """

    def __init__(self, db_path: Path | None = None, *, max_depth: int = 1024) -> None:
        self._max_depth = max_depth
        self._lock = threading.Lock()
        self._db: sqlite3.Connection | None = None
        self._memory: list[QueuedPush] = []

        if db_path is not None:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = sqlite3.connect(str(db_path), check_same_thread=False)
            self._db.execute(
                "CREATE TABLE IF NOT EXISTS retry_queue ("
                "  id INTEGER PRIMARY KEY AUTOINCREMENT,"
                "  workload_id TEXT NOT NULL,"
                "  reason TEXT NOT NULL,"
                "  due_at REAL NOT NULL,"
                "  payload TEXT NOT NULL"
                ")"
            )
            self._db.commit()
            logger.info(
                "RetryQueue: using SQLite queue at %s (max_depth=%d).",
                db_path,
                max_depth,
            )
        else:
            logger.debug("RetryQueue: using in-memory queue (max_depth=%d).", max_depth)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_persistent(self) -> bool:
        return self._db is not None

    def depth(self, reason: DeferReason | None = None) -> int:
        """Number of entries waiting, optionally for one reason."""
        with self._lock:
            if self._db is not None:
                if reason is None:
                    row = self._db.execute("SELECT COUNT(*) FROM retry_queue").fetchone()
                else:
                    row = self._db.execute(
                        "SELECT COUNT(*) FROM retry_queue WHERE reason = ?",
                        (reason.value,),
                    ).fetchone()
                return row[0] if row else 0
            if reason is None:
                return len(self._memory)
            return sum(1 for item in self._memory if item.reason == reason)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, item: QueuedPush) -> None:
        """Park an event.

        Raises
        ------
        RetryQueueFull
            If the queue already holds ``max_depth`` entries.
        """
        with self._lock:
            if self._db is not None:
                depth = self._db.execute("SELECT COUNT(*) FROM retry_queue").fetchone()[0]
                if depth >= self._max_depth:
                    raise RetryQueueFull(
                        f"Retry queue is full (depth={depth}). "
                        f"Event {item.event.event_id} dropped."
                    )
                self._db.execute(
                    "INSERT INTO retry_queue (workload_id, reason, due_at, payload) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        item.event.workload_id,
                        item.reason.value,
                        item.due_at,
                        item.model_dump_json(),
                    ),
                )
                self._db.commit()
            else:
                if len(self._memory) >= self._max_depth:
                    raise RetryQueueFull(
                        f"Retry queue is full (depth={len(self._memory)}). "
                        f"Event {item.event.event_id} dropped."
                    )
                self._memory.append(item)
        logger.debug(
            "RetryQueue: parked event %s for %s (reason=%s, attempt=%d).",
            item.event.event_id,
            item.event.workload_id,
            item.reason.value,
            item.attempt,
        )

    def pop_due(self, now: float, limit: int | None = None) -> list[QueuedPush]:
        """Remove and return NOT_BUILT entries due at or before ``now``.

        Oldest due time first; at most ``limit`` entries when given.
        """
        with self._lock:
            if self._db is not None:
                rows = self._db.execute(
                    "SELECT id, payload FROM retry_queue "
                    "WHERE reason = ? AND due_at <= ? ORDER BY due_at, id LIMIT ?",
                    (DeferReason.NOT_BUILT.value, now, -1 if limit is None else limit),
                ).fetchall()
                self._delete_rows([row[0] for row in rows])
                return [QueuedPush.model_validate_json(row[1]) for row in rows]

            due = sorted(
                (
                    item
                    for item in self._memory
                    if item.reason == DeferReason.NOT_BUILT and item.due_at <= now
                ),
                key=lambda item: item.due_at,
            )[:limit]
            for item in due:
                self._memory.remove(item)
            return due

    def pop_waiting(self, workload_id: str) -> QueuedPush | None:
        """Remove and return the oldest IN_PROGRESS entry for a workload."""
        with self._lock:
            if self._db is not None:
                row = self._db.execute(
                    "SELECT id, payload FROM retry_queue "
                    "WHERE reason = ? AND workload_id = ? ORDER BY id LIMIT 1",
                    (DeferReason.IN_PROGRESS.value, workload_id),
                ).fetchone()
                if row is None:
                    return None
                self._delete_rows([row[0]])
                return QueuedPush.model_validate_json(row[1])

            for item in self._memory:
                if (
                    item.reason == DeferReason.IN_PROGRESS
                    and item.event.workload_id == workload_id
                ):
                    self._memory.remove(item)
                    return item
            return None

    def next_due_at(self) -> float | None:
        """Earliest due time among NOT_BUILT entries, if any."""
        with self._lock:
            if self._db is not None:
                row = self._db.execute(
                    "SELECT MIN(due_at) FROM retry_queue WHERE reason = ?",
                    (DeferReason.NOT_BUILT.value,),
                ).fetchone()
                return row[0] if row else None
            due = [i.due_at for i in self._memory if i.reason == DeferReason.NOT_BUILT]
            return min(due) if due else None

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None
            self._memory.clear()

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> RetryQueue:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        backend = "sqlite" if self._db is not None else "memory"
        return f"RetryQueue(backend={backend}, max_depth={self._max_depth})"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _delete_rows(self, row_ids: list[int]) -> None:
        if not row_ids or self._db is None:
            return
        self._db.executemany(
            "DELETE FROM retry_queue WHERE id = ?", [(rid,) for rid in row_ids]
        )
        self._db.commit()
