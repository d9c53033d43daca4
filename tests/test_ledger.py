"""Tests for ledger reads, writes and dependency edits."""

import tempfile
import warnings
from pathlib import Path

import pytest

from wave_orchestrator.core import ledger
from wave_orchestrator.core import locks
from wave_orchestrator.core.errors import (
    CyclicDependencyError,
    DuplicateTitleWarning,
    InvalidTransitionError,
    NotFoundError,
    NotOwnerError,
    StaleWriteError,
)
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.db.models import Difficulty, TaskStatus


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestTimestamps:
    def test_format_is_utc_with_microseconds(self):
        stamp = ledger.format_ts(ledger.utcnow())
        assert stamp.endswith("+00:00")
        assert len(stamp.split(".")[1]) == len("000000+00:00")

    def test_naive_values_read_as_utc(self):
        parsed = ledger.parse_ts("2026-01-01T10:00:00")
        assert ledger.format_ts(parsed) == "2026-01-01T10:00:00.000000+00:00"

    def test_next_timestamp_is_strictly_later(self):
        future = ledger.parse_ts("2999-01-01T00:00:00+00:00")
        assert ledger.next_timestamp(future) > future


class TestTaskCRUD:
    def test_create_task(self, db):
        task = ledger.create_task(db, "Build login page", "Forms and validation")
        assert task.id == 1
        assert task.title == "Build login page"
        assert task.status == TaskStatus.TODO
        assert task.owner is None
        assert task.difficulty == Difficulty.MEDIUM
        assert task.dependencies == set()
        assert task.created_at == task.updated_at

    def test_ids_are_sequential(self, db):
        t1 = ledger.create_task(db, "One")
        t2 = ledger.create_task(db, "Two")
        assert t2.id == t1.id + 1

    def test_create_with_difficulty(self, db):
        task = ledger.create_task(db, "Hard thing", difficulty="hard")
        assert task.difficulty == Difficulty.HARD

    def test_empty_title_rejected(self, db):
        with pytest.raises(ValueError):
            ledger.create_task(db, "   ")

    def test_unknown_difficulty_rejected(self, db):
        with pytest.raises(ValueError):
            ledger.create_task(db, "Task", difficulty="trivial")

    def test_duplicate_title_warns_but_creates(self, db):
        ledger.create_task(db, "Same")
        with pytest.warns(DuplicateTitleWarning):
            second = ledger.create_task(db, "Same")
        assert second.id == 2
        assert len(ledger.list_tasks(db)) == 2

    def test_unique_title_does_not_warn(self, db):
        ledger.create_task(db, "First")
        with warnings.catch_warnings():
            warnings.simplefilter("error", DuplicateTitleWarning)
            ledger.create_task(db, "Second")

    def test_create_with_dependencies(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B")
        c = ledger.create_task(db, "C", dependencies=[a.id, b.id])
        assert c.dependencies == {a.id, b.id}

    def test_create_with_unknown_dependency(self, db):
        with pytest.raises(NotFoundError) as exc:
            ledger.create_task(db, "Orphan", dependencies=[42])
        assert exc.value.task_id == 42
        assert ledger.list_tasks(db) == []

    def test_get_missing_task(self, db):
        with pytest.raises(NotFoundError):
            ledger.get_task(db, 999)

    def test_list_filters(self, db):
        a = ledger.create_task(db, "A")
        ledger.create_task(db, "B")
        ledger.update_task(db, a.id, a.updated_at, status="cancelled")
        assert [t.title for t in ledger.list_tasks(db, status="todo")] == ["B"]
        assert [t.title for t in ledger.list_tasks(db, status=TaskStatus.CANCELLED)] == ["A"]
        assert len(ledger.list_tasks(db, status=["todo", "cancelled"])) == 2

    def test_list_is_oldest_first(self, db):
        for title in ("first", "second", "third"):
            ledger.create_task(db, title)
        assert [t.title for t in ledger.list_tasks(db)] == ["first", "second", "third"]

    def test_count_tasks(self, db):
        ledger.create_task(db, "A")
        ledger.create_task(db, "B")
        assert ledger.count_tasks(db, TaskStatus.TODO) == 2
        assert ledger.count_tasks(db, "done") == 0


class TestUpdate:
    def test_update_fields(self, db):
        task = ledger.create_task(db, "Draft")
        updated = ledger.update_task(
            db, task.id, task.updated_at, title="Final", difficulty="easy", description="d"
        )
        assert updated.title == "Final"
        assert updated.difficulty == Difficulty.EASY
        assert updated.description == "d"
        assert updated.updated_at > task.updated_at

    def test_stale_write_rejected(self, db):
        task = ledger.create_task(db, "Shared")
        ledger.update_task(db, task.id, task.updated_at, title="First writer")
        with pytest.raises(StaleWriteError):
            ledger.update_task(db, task.id, task.updated_at, title="Second writer")
        assert ledger.get_task(db, task.id).title == "First writer"

    def test_expected_stamp_accepts_string(self, db):
        task = ledger.create_task(db, "Task")
        stamp = ledger.format_ts(task.updated_at)
        updated = ledger.update_task(db, task.id, stamp, title="Renamed")
        assert updated.title == "Renamed"

    def test_unknown_field_rejected(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(ValueError):
            ledger.update_task(db, task.id, task.updated_at, owner="sneaky")

    def test_cannot_enter_in_progress_without_claim(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(InvalidTransitionError):
            ledger.update_task(db, task.id, task.updated_at, status="in-progress")

    def test_held_task_status_goes_through_release(self, db):
        task = ledger.create_task(db, "Task")
        claimed = locks.claim(db, task.id, "worker-1")
        for status in ("done", "todo", "cancelled"):
            with pytest.raises(NotOwnerError):
                ledger.update_task(db, task.id, claimed.updated_at, status=status)
        with pytest.raises(NotOwnerError):
            ledger.update_task(db, task.id, claimed.updated_at, actor="worker-2", status="done")
        with pytest.raises(InvalidTransitionError):
            ledger.update_task(db, task.id, claimed.updated_at, actor="worker-1", status="done")

        current = ledger.get_task(db, task.id)
        assert current.status == TaskStatus.IN_PROGRESS
        assert current.owner == "worker-1"

        reviewed = locks.release(db, task.id, "worker-1", "in-review")
        with pytest.raises(NotOwnerError):
            ledger.update_task(db, task.id, reviewed.updated_at, status="cancelled")
        assert ledger.get_task(db, task.id).status == TaskStatus.IN_REVIEW

    def test_held_task_fields_stay_editable(self, db):
        task = ledger.create_task(db, "Task")
        claimed = locks.claim(db, task.id, "worker-1")
        updated = ledger.update_task(db, task.id, claimed.updated_at, title="Renamed")
        assert updated.title == "Renamed"
        assert updated.status == TaskStatus.IN_PROGRESS

    def test_blocked_requires_notes(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(InvalidTransitionError):
            ledger.update_task(db, task.id, task.updated_at, status="blocked")
        blocked = ledger.update_task(
            db, task.id, task.updated_at, status="blocked", notes="waiting on credentials"
        )
        assert blocked.status == TaskStatus.BLOCKED
        assert blocked.blocked_cycle == 0

    def test_terminal_tasks_cannot_move(self, db):
        task = ledger.create_task(db, "Task")
        cancelled = ledger.update_task(db, task.id, task.updated_at, status="cancelled")
        with pytest.raises(InvalidTransitionError):
            ledger.update_task(db, task.id, cancelled.updated_at, status="todo")

    def test_noop_update_keeps_stamp(self, db):
        task = ledger.create_task(db, "Task")
        same = ledger.update_task(db, task.id, task.updated_at, title="Task")
        assert same.updated_at == task.updated_at

    def test_update_with_retry_reapplies_on_conflict(self, db):
        task = ledger.create_task(db, "Counter", description="0")
        calls = []

        def mutate(current):
            calls.append(current.updated_at)
            if len(calls) == 1:
                # Another writer sneaks in between the read and the write.
                ledger.update_task(db, task.id, current.updated_at, title="Bumped")
            return {"description": str(int(current.description) + 1)}

        updated = ledger.update_with_retry(db, task.id, mutate)
        assert len(calls) == 2
        assert updated.description == "1"
        assert updated.title == "Bumped"

    def test_append_note(self, db):
        task = ledger.create_task(db, "Task")
        ledger.append_note(db, task.id, "first")
        updated = ledger.append_note(db, task.id, "second")
        assert updated.notes == "first\nsecond"

    def test_append_empty_note_rejected(self, db):
        task = ledger.create_task(db, "Task")
        with pytest.raises(ValueError):
            ledger.append_note(db, task.id, "  ")


class TestDependencies:
    def test_add_and_remove(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B")
        updated = ledger.add_dependency(db, b.id, a.id)
        assert updated.dependencies == {a.id}
        updated = ledger.remove_dependency(db, b.id, a.id)
        assert updated.dependencies == set()

    def test_add_existing_is_noop(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B", dependencies=[a.id])
        again = ledger.add_dependency(db, b.id, a.id)
        assert again.updated_at == b.updated_at

    def test_self_dependency_rejected(self, db):
        a = ledger.create_task(db, "A")
        with pytest.raises(CyclicDependencyError) as exc:
            ledger.add_dependency(db, a.id, a.id)
        assert exc.value.cycle == [a.id, a.id]

    def test_cycle_rejected_with_path(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B", dependencies=[a.id])
        c = ledger.create_task(db, "C", dependencies=[b.id])
        with pytest.raises(CyclicDependencyError) as exc:
            ledger.add_dependency(db, a.id, c.id)
        assert exc.value.cycle == [a.id, c.id, b.id, a.id]
        assert ledger.get_task(db, a.id).dependencies == set()

    def test_unknown_dependency(self, db):
        a = ledger.create_task(db, "A")
        with pytest.raises(NotFoundError):
            ledger.add_dependency(db, a.id, 99)

    def test_unknown_task(self, db):
        a = ledger.create_task(db, "A")
        with pytest.raises(NotFoundError):
            ledger.add_dependency(db, 99, a.id)

    def test_cannot_add_to_finished_task(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B")
        ledger.update_task(db, b.id, b.updated_at, status="cancelled")
        with pytest.raises(InvalidTransitionError):
            ledger.add_dependency(db, b.id, a.id)


class TestEvents:
    def test_history_is_recorded(self, db):
        a = ledger.create_task(db, "A")
        b = ledger.create_task(db, "B")
        ledger.add_dependency(db, b.id, a.id, actor="alice")
        task = ledger.get_task(db, b.id)
        ledger.update_task(db, b.id, task.updated_at, status="cancelled", actor="alice")

        events = ledger.get_task_events(db, b.id)
        assert [e.event_type for e in events] == ["created", "dependency_added", "status_changed"]
        assert events[1].new_value == str(a.id)
        assert events[2].old_value == "todo"
        assert events[2].new_value == "cancelled"
        assert events[2].actor == "alice"
        assert events[2].created_at is not None

    def test_wave_cycle_starts_at_zero(self, db):
        assert ledger.get_wave_cycle(db) == 0
