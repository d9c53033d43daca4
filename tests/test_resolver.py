"""Tests for blocked-task resolution and escalation."""

import tempfile
from pathlib import Path

import pytest

from wave_orchestrator.core import ledger
from wave_orchestrator.core import locks
from wave_orchestrator.core import resolver
from wave_orchestrator.core.errors import InvalidTransitionError
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.db.models import TaskStatus


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


def block(db, title="Task", notes="waiting on review"):
    task = ledger.create_task(db, title)
    locks.claim(db, task.id, "worker-1")
    return locks.release(db, task.id, "worker-1", "blocked", notes=notes)


class TestUnblock:
    def test_resolved_returns_to_todo(self, db):
        task = block(db)
        result = resolver.attempt_unblock(db, task.id, lambda t: False, actor="alice")
        assert result == resolver.UnblockResult.RESOLVED

        task = ledger.get_task(db, task.id)
        assert task.status == TaskStatus.TODO
        assert task.owner is None
        assert task.blocked_cycle is None
        assert ledger.get_task_events(db, task.id)[-1].event_type == "unblocked"

    def test_still_blocked_leaves_task(self, db):
        task = block(db)
        seen = []

        def check(t):
            seen.append(t.notes)
            return True

        result = resolver.attempt_unblock(db, task.id, check)
        assert result == resolver.UnblockResult.STILL_BLOCKED
        assert seen == ["waiting on review"]
        assert ledger.get_task(db, task.id).status == TaskStatus.BLOCKED
        assert ledger.get_task_events(db, task.id)[-1].event_type == "unblock_attempted"

    def test_unblocked_task_can_be_claimed_again(self, db):
        task = block(db)
        resolver.attempt_unblock(db, task.id, lambda t: False)
        assert locks.claim(db, task.id, "worker-2").owner == "worker-2"

    def test_unblock_requires_blocked(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(InvalidTransitionError):
            resolver.attempt_unblock(db, task.id, lambda t: False)


class TestEscalation:
    def test_escalate_sets_flag(self, db):
        task = block(db)
        escalated = resolver.escalate(db, task.id)
        assert escalated.escalated
        assert escalated.escalated_at is not None
        assert escalated.status == TaskStatus.BLOCKED

    def test_escalate_is_idempotent(self, db):
        task = block(db)
        first = resolver.escalate(db, task.id)
        second = resolver.escalate(db, task.id)
        assert second.updated_at == first.updated_at
        events = [e.event_type for e in ledger.get_task_events(db, task.id)]
        assert events.count("escalated") == 1

    def test_escalate_requires_blocked(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(InvalidTransitionError):
            resolver.escalate(db, task.id)

    def test_unblock_clears_escalation(self, db):
        task = block(db)
        resolver.escalate(db, task.id)
        resolver.attempt_unblock(db, task.id, lambda t: False)
        assert not ledger.get_task(db, task.id).escalated

    def test_close_cycle_escalates_after_one_full_cycle(self, db):
        task = block(db)
        assert task.blocked_cycle == 0

        assert resolver.close_cycle(db) == []
        assert resolver.current_cycle(db) == 1
        assert [t.id for t in resolver.close_cycle(db)] == [task.id]
        assert resolver.current_cycle(db) == 2

    def test_close_cycle_respects_threshold(self, db):
        task = block(db)
        for _ in range(3):
            assert resolver.close_cycle(db, escalate_after=3) == []
        assert [t.id for t in resolver.close_cycle(db, escalate_after=3)] == [task.id]

    def test_blocked_later_uses_later_cycle(self, db):
        resolver.close_cycle(db)
        resolver.close_cycle(db)
        task = block(db)
        assert task.blocked_cycle == 2
        assert resolver.close_cycle(db) == []
        assert [t.id for t in resolver.close_cycle(db)] == [task.id]

    def test_escalate_stalled(self, db):
        first = block(db, "First")
        second = block(db, "Second")
        resolver.escalate(db, first.id)
        assert [t.id for t in resolver.escalate_stalled(db)] == [second.id]


class TestCancelBlocked:
    def test_cancel(self, db):
        task = block(db)
        cancelled = resolver.cancel_blocked(db, task.id, "obsolete", actor="alice")
        assert cancelled.status == TaskStatus.CANCELLED
        assert "Cancelled by alice: obsolete" in cancelled.notes

    def test_cancel_requires_blocked(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(InvalidTransitionError):
            resolver.cancel_blocked(db, task.id, "obsolete")

    def test_list_blocked(self, db):
        block(db, "One")
        ledger.create_task(db, "Free")
        block(db, "Two")
        assert [t.title for t in resolver.list_blocked(db)] == ["One", "Two"]
