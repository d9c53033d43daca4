"""Tests for ledger export and import."""

import io
import json
import tempfile
from pathlib import Path

import pytest

from wave_orchestrator.core import ledger
from wave_orchestrator.core import locks
from wave_orchestrator.core.errors import CyclicDependencyError, LedgerError, NotFoundError
from wave_orchestrator.core.serialization import (
    export_ledger,
    import_ledger,
    task_from_record,
    task_to_record,
)
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.db.models import TaskStatus


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def db(tmp_dir):
    conn = init_db(tmp_dir / "source.db")
    yield conn
    conn.close()


@pytest.fixture
def target(tmp_dir):
    conn = init_db(tmp_dir / "target.db")
    yield conn
    conn.close()


def record(task_id, deps=(), status="todo", owner=None):
    return {
        "id": task_id,
        "title": f"Task {task_id}",
        "status": status,
        "owner": owner,
        "dependencies": list(deps),
        "created_at": "2026-01-01T00:00:00.000000+00:00",
        "updated_at": "2026-01-01T00:00:00.000000+00:00",
    }


def document(*records):
    return io.StringIO(json.dumps({"version": 1, "tasks": list(records)}))


class TestRecords:
    def test_record_uses_plain_values(self, db):
        a = ledger.create_task(db, "A", difficulty="hard")
        b = ledger.create_task(db, "B", dependencies=[a.id])
        rec = task_to_record(b)
        assert rec["status"] == "todo"
        assert rec["difficulty"] == "medium"
        assert rec["dependencies"] == [a.id]
        assert rec["created_at"].endswith("+00:00")
        json.dumps(rec)

    def test_record_round_trip(self, db):
        task = ledger.create_task(db, "A")
        locks.claim(db, task.id, "worker-1")
        task = locks.release(db, task.id, "worker-1", "blocked", notes="stuck")
        assert task_from_record(task_to_record(task)) == task


class TestExportImport:
    def test_round_trip_between_ledgers(self, db, target):
        a = ledger.create_task(db, "Schema", "tables")
        b = ledger.create_task(db, "API", dependencies=[a.id])
        locks.claim(db, a.id, "worker-1")
        locks.release(db, a.id, "worker-1", "done")

        buffer = io.StringIO()
        assert export_ledger(db, buffer) == 2
        buffer.seek(0)
        assert import_ledger(target, buffer) == 2

        for original in (ledger.get_task(db, a.id), ledger.get_task(db, b.id)):
            copy = ledger.get_task(target, original.id)
            assert task_to_record(copy) == task_to_record(original)
        assert ledger.get_task_events(target, b.id)[-1].event_type == "imported"

    def test_new_tasks_continue_after_imported_ids(self, target):
        import_ledger(target, document(record(5)))
        assert ledger.create_task(target, "Next").id == 6

    def test_rejects_unknown_version(self, target):
        with pytest.raises(LedgerError):
            import_ledger(target, io.StringIO(json.dumps({"version": 99, "tasks": []})))

    def test_rejects_existing_ids(self, target):
        ledger.create_task(target, "Existing")
        with pytest.raises(LedgerError):
            import_ledger(target, document(record(1)))

    def test_rejects_repeated_ids(self, target):
        with pytest.raises(LedgerError):
            import_ledger(target, document(record(1), record(1)))

    def test_rejects_unknown_dependency(self, target):
        with pytest.raises(NotFoundError):
            import_ledger(target, document(record(1, deps=[9])))
        assert ledger.list_tasks(target) == []

    def test_dependency_on_existing_task(self, target):
        existing = ledger.create_task(target, "Existing")
        import_ledger(target, document(record(10, deps=[existing.id])))
        assert ledger.get_task(target, 10).dependencies == {existing.id}

    def test_rejects_cycle(self, target):
        with pytest.raises(CyclicDependencyError):
            import_ledger(target, document(record(1, deps=[2]), record(2, deps=[1])))
        assert ledger.list_tasks(target) == []

    def test_rejects_unowned_in_progress(self, target):
        with pytest.raises(LedgerError):
            import_ledger(target, document(record(1, status="in-progress")))

    def test_keeps_claims(self, target):
        import_ledger(target, document(record(1, status="in-progress", owner="worker-1")))
        task = ledger.get_task(target, 1)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.owner == "worker-1"

    def test_rejects_in_progress_with_unfinished_dependency(self, target):
        with pytest.raises(LedgerError) as exc:
            import_ledger(target, document(
                record(1),
                record(2, deps=[1], status="in-progress", owner="worker-1"),
            ))
        assert "dependencies are not done: 1" in str(exc.value)
        assert ledger.list_tasks(target) == []

    def test_rejects_in_review_behind_existing_todo(self, target):
        existing = ledger.create_task(target, "Existing")
        with pytest.raises(LedgerError):
            import_ledger(target, document(
                record(10, deps=[existing.id], status="in-review", owner="worker-1"),
            ))
        assert [t.id for t in ledger.list_tasks(target)] == [existing.id]

    def test_in_progress_behind_done_dependency(self, target):
        import_ledger(target, document(
            record(1, status="done", owner="worker-1"),
            record(2, deps=[1], status="in-progress", owner="worker-2"),
        ))
        assert ledger.get_task(target, 2).status == TaskStatus.IN_PROGRESS
