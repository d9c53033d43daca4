"""Ledger persistence format: one JSON record per task.

Enums are stored as their string values, timestamps as ISO-8601 and
dependencies as sorted id lists, so a record round-trips exactly.
"""

import json
import logging
import sqlite3
from dataclasses import replace
from typing import IO

from wave_orchestrator.core.errors import LedgerError, NotFoundError
from wave_orchestrator.core.graph import DependencyGraph, check_acyclic
from wave_orchestrator.core.ledger import (
    _log_event,
    format_ts,
    iter_tasks,
    parse_ts,
)
from wave_orchestrator.db.models import HELD_STATUSES, Difficulty, Task, TaskStatus

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def task_to_record(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "owner": task.owner,
        "difficulty": task.difficulty.value,
        "notes": task.notes,
        "dependencies": sorted(task.dependencies),
        "created_at": format_ts(task.created_at) if task.created_at else None,
        "updated_at": format_ts(task.updated_at) if task.updated_at else None,
        "completed_at": format_ts(task.completed_at) if task.completed_at else None,
        "blocked_cycle": task.blocked_cycle,
        "escalated": task.escalated,
        "escalated_at": format_ts(task.escalated_at) if task.escalated_at else None,
    }


def task_from_record(record: dict) -> Task:
    return Task(
        id=int(record["id"]),
        title=record["title"],
        description=record.get("description", ""),
        status=TaskStatus(record["status"]),
        owner=record.get("owner"),
        difficulty=Difficulty(record.get("difficulty", Difficulty.MEDIUM.value)),
        notes=record.get("notes", ""),
        dependencies={int(d) for d in record.get("dependencies", [])},
        created_at=parse_ts(record.get("created_at")),
        updated_at=parse_ts(record.get("updated_at")),
        completed_at=parse_ts(record.get("completed_at")),
        blocked_cycle=record.get("blocked_cycle"),
        escalated=bool(record.get("escalated", False)),
        escalated_at=parse_ts(record.get("escalated_at")),
    )


def export_ledger(db: sqlite3.Connection, fp: IO[str]) -> int:
    """Write every task to ``fp``. Returns the number of tasks written."""
    records = [task_to_record(t) for t in iter_tasks(db)]
    json.dump({"version": FORMAT_VERSION, "tasks": records}, fp, indent=2)
    fp.write("\n")
    return len(records)


def import_ledger(db: sqlite3.Connection, fp: IO[str]) -> int:
    """Load tasks exported by ``export_ledger``, keeping their ids.

    The whole document is validated before anything is written: ids must be
    new, dependencies must resolve and must not form a cycle, and a task
    that is in-progress or in-review must have every dependency done.
    """
    document = json.load(fp)
    if document.get("version") != FORMAT_VERSION:
        raise LedgerError(f"Unsupported ledger format version: {document.get('version')!r}")
    tasks = [task_from_record(r) for r in document.get("tasks", [])]

    incoming = {t.id for t in tasks}
    if len(incoming) != len(tasks):
        raise LedgerError("Ledger document repeats task ids")
    existing = {
        row["id"]: TaskStatus(row["status"])
        for row in db.execute("SELECT id, status FROM tasks")
    }
    clashes = sorted(incoming.intersection(existing))
    if clashes:
        raise LedgerError(f"Tasks already exist: {', '.join(str(i) for i in clashes)}")

    statuses = {**existing, **{t.id: t.status for t in tasks}}
    for task in tasks:
        if task.status == TaskStatus.IN_PROGRESS and not task.owner:
            raise LedgerError(f"Task {task.id} is in-progress without an owner")
        if task.created_at is None or task.updated_at is None:
            raise LedgerError(f"Task {task.id} is missing timestamps")
        if task.updated_at < task.created_at:
            raise LedgerError(f"Task {task.id} was updated before it was created")
        for dep_id in sorted(task.dependencies):
            if dep_id not in statuses:
                raise NotFoundError(dep_id, f"dependency of task {task.id}")
        if task.status in HELD_STATUSES:
            pending = [d for d in sorted(task.dependencies) if statuses[d] != TaskStatus.DONE]
            if pending:
                ids = ", ".join(str(d) for d in pending)
                raise LedgerError(
                    f"Task {task.id} is {task.status.value} but dependencies are not done: {ids}"
                )

    # Existing tasks never point at new ids, so any cycle lies inside the import.
    check_acyclic(DependencyGraph.from_tasks(
        replace(
            t,
            status=TaskStatus.TODO,
            dependencies={d for d in t.dependencies if d in incoming},
        )
        for t in tasks
    ))

    for task in sorted(tasks, key=lambda t: t.id):
        record = task_to_record(task)
        db.execute(
            """INSERT INTO tasks (id, title, description, status, owner, difficulty, notes,
                                  blocked_cycle, escalated, escalated_at,
                                  created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id, task.title, task.description, record["status"], task.owner,
                record["difficulty"], task.notes, task.blocked_cycle,
                1 if task.escalated else 0, record["escalated_at"],
                record["created_at"], record["updated_at"], record["completed_at"],
            ),
        )
    for task in tasks:
        for dep_id in sorted(task.dependencies):
            db.execute(
                "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                (task.id, dep_id),
            )
        _log_event(db, task.id, "imported", None, task.status.value)
    db.commit()
    logger.info("Imported %d tasks", len(tasks))
    return len(tasks)
