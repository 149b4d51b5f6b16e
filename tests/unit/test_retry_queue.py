"""Unit tests for the retry queue: SQLite persistence and in-memory fallback."""

from __future__ import annotations

from pathlib import Path

import pytest

from helmsman.core.retry_queue import DeferReason, QueuedPush, RetryQueue
from helmsman.errors import RetryQueueFull
from helmsman.models.artifacts import Revision
from helmsman.models.deployment import PushEvent


def _queued(
    commit: str = "b" * 40,
    workload_id: str = "web",
    reason: DeferReason = DeferReason.NOT_BUILT,
    due_at: float = 0.0,
    attempt: int = 1,
) -> QueuedPush:
    return QueuedPush(
        event=PushEvent(revision=Revision(commit=commit), workload_id=workload_id),
        reason=reason,
        attempt=attempt,
        due_at=due_at,
    )


@pytest.fixture(params=["memory", "sqlite"])
def queue(request, tmp_path: Path):
    db_path = tmp_path / "queue.db" if request.param == "sqlite" else None
    q = RetryQueue(db_path, max_depth=3)
    yield q
    q.close()


class TestRetryQueue:
    def test_backend_selection(self, tmp_path: Path):
        assert RetryQueue().is_persistent is False
        with RetryQueue(tmp_path / "q.db") as persistent:
            assert persistent.is_persistent is True

    def test_pop_due_respects_due_time(self, queue: RetryQueue):
        queue.push(_queued(due_at=20.0, commit="c" * 40))
        queue.push(_queued(due_at=10.0))
        assert queue.pop_due(5.0) == []
        assert queue.next_due_at() == 10.0
        due = queue.pop_due(15.0)
        assert [item.event.revision.commit for item in due] == ["b" * 40]
        assert queue.depth() == 1

    def test_pop_due_limit_takes_oldest_first(self, queue: RetryQueue):
        queue.push(_queued(due_at=20.0, commit="c" * 40))
        queue.push(_queued(due_at=10.0))
        [first] = queue.pop_due(30.0, limit=1)
        assert first.event.revision.commit == "b" * 40
        assert queue.depth(DeferReason.NOT_BUILT) == 1

    def test_pop_due_ignores_waiting_entries(self, queue: RetryQueue):
        queue.push(_queued(reason=DeferReason.IN_PROGRESS))
        assert queue.pop_due(1e12) == []
        assert queue.next_due_at() is None
        assert queue.depth(DeferReason.IN_PROGRESS) == 1

    def test_pop_waiting_is_fifo_per_workload(self, queue: RetryQueue):
        queue.push(_queued("b" * 40, reason=DeferReason.IN_PROGRESS))
        queue.push(_queued("c" * 40, workload_id="api", reason=DeferReason.IN_PROGRESS))
        queue.push(_queued("d" * 40, reason=DeferReason.IN_PROGRESS))
        assert queue.pop_waiting("web").event.revision.commit == "b" * 40
        assert queue.pop_waiting("web").event.revision.commit == "d" * 40
        assert queue.pop_waiting("web") is None
        assert queue.pop_waiting("api") is not None

    def test_bounded_depth(self, queue: RetryQueue):
        for _ in range(3):
            queue.push(_queued())
        with pytest.raises(RetryQueueFull):
            queue.push(_queued())

    def test_attempt_survives_queueing(self, queue: RetryQueue):
        queue.push(_queued(attempt=2, due_at=1.0))
        [item] = queue.pop_due(1.0)
        assert item.attempt == 2
        assert item.reason == DeferReason.NOT_BUILT


class TestSqlitePersistence:
    def test_entries_survive_reopen(self, tmp_path: Path):
        db_path = tmp_path / "queue.db"
        with RetryQueue(db_path) as q:
            q.push(_queued(due_at=5.0))
        with RetryQueue(db_path) as reopened:
            assert reopened.depth() == 1
            assert len(reopened.pop_due(5.0)) == 1
