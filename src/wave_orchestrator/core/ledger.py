"""Ledger store: the durable record of every task.

All writes go through a compare-and-swap on ``updated_at``. A writer passes
the ``updated_at`` it last read; if another writer got there first the
update matches no row and the caller gets ``StaleWriteError`` and must
re-read. Nothing here holds an in-process lock, so separate processes can
share one database file.
"""

import logging
import sqlite3
import warnings
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timedelta, timezone

from wave_orchestrator.core.errors import (
    CyclicDependencyError,
    DuplicateTitleWarning,
    InvalidTransitionError,
    NotFoundError,
    NotOwnerError,
    StaleWriteError,
)
from wave_orchestrator.db.models import (
    ALLOWED_TRANSITIONS,
    HELD_STATUSES,
    Difficulty,
    Task,
    TaskEvent,
    TaskStatus,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"title", "description", "difficulty", "status", "notes"})


# ── Timestamps ───────────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Render a timestamp the way it is stored and compared."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_timestamp(previous: datetime | None) -> datetime:
    """Current time, nudged forward so it is strictly after ``previous``."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _as_stamp(value: datetime | str) -> str:
    if isinstance(value, str):
        return format_ts(parse_ts(value))
    return format_ts(value)


# ── Reads ────────────────────────────────────────────────────────────────────


def get_task(db: sqlite3.Connection, task_id: int) -> Task:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise NotFoundError(task_id)
    task = _row_to_task(row)
    task.dependencies = _load_dependencies(db, task.id)
    return task


def task_exists(db: sqlite3.Connection, task_id: int) -> bool:
    row = db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return row is not None


def iter_tasks(
    db: sqlite3.Connection,
    status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
    owner: str | None = None,
    escalated: bool | None = None,
) -> Iterator[Task]:
    """Yield tasks oldest first. Each call starts a fresh query."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if status is not None:
        statuses = _status_values(status)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if owner is not None:
        query += " AND owner = ?"
        params.append(owner)

    if escalated is not None:
        query += " AND escalated = ?"
        params.append(1 if escalated else 0)

    query += " ORDER BY created_at ASC, id ASC"
    for row in db.execute(query, params):
        task = _row_to_task(row)
        task.dependencies = _load_dependencies(db, task.id)
        yield task


def list_tasks(
    db: sqlite3.Connection,
    status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
    owner: str | None = None,
    escalated: bool | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    return list(iter_tasks(db, status=status, owner=owner, escalated=escalated))


def count_tasks(db: sqlite3.Connection, status: TaskStatus | str) -> int:
    row = db.execute(
        "SELECT COUNT(*) AS n FROM tasks WHERE status = ?", (TaskStatus(status).value,)
    ).fetchone()
    return row["n"]


def get_task_events(db: sqlite3.Connection, task_id: int) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            actor=r["actor"],
            created_at=parse_ts(r["created_at"]),
        )
        for r in rows
    ]


def get_wave_cycle(db: sqlite3.Connection) -> int:
    """Number of wave cycles closed so far."""
    row = db.execute(
        "SELECT value FROM scheduler_state WHERE key = 'wave_cycle'"
    ).fetchone()
    return int(row["value"]) if row else 0


# ── Writes ───────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    dependencies: Iterable[int] | None = None,
    difficulty: Difficulty | str = Difficulty.MEDIUM,
) -> Task:
    """Create a new task in ``todo``.

    Every dependency must already exist. A repeated title only warns.
    """
    title = title.strip()
    if not title:
        raise ValueError("Task title must not be empty")
    difficulty = Difficulty(difficulty)
    deps = set(dependencies or ())

    for dep_id in sorted(deps):
        if not task_exists(db, dep_id):
            raise NotFoundError(dep_id, "declared dependency")

    duplicate = db.execute(
        "SELECT id FROM tasks WHERE title = ? ORDER BY id LIMIT 1", (title,)
    ).fetchone()
    if duplicate:
        warnings.warn(
            DuplicateTitleWarning(f"Task {duplicate['id']} already has the title {title!r}"),
            stacklevel=2,
        )

    now = format_ts(utcnow())
    cursor = db.execute(
        """INSERT INTO tasks (title, description, difficulty, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?)""",
        (title, description, difficulty.value, now, now),
    )
    task_id = cursor.lastrowid

    for dep_id in sorted(deps):
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, TaskStatus.TODO.value)
    db.commit()
    logger.debug("Created task %s: %s", task_id, title)
    return get_task(db, task_id)


def update_task(
    db: sqlite3.Connection,
    task_id: int,
    expected_updated_at: datetime | str,
    actor: str | None = None,
    **changes,
) -> Task:
    """Apply ``changes`` if the task still has ``expected_updated_at``.

    Entering ``in-progress`` is only possible through ``locks.claim``, and a
    held task leaves it only through ``locks.release`` (its owner) or
    ``locks.force_cancel`` (an operator). Entering ``blocked`` needs a
    non-empty ``notes`` value in the same call.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    task = get_task(db, task_id)
    expected = _as_stamp(expected_updated_at)
    current = format_ts(task.updated_at)
    if current != expected:
        raise StaleWriteError(task_id, expected, current)

    columns: dict = {}
    events: list[tuple] = []

    if "title" in changes:
        title = changes["title"].strip()
        if not title:
            raise ValueError("Task title must not be empty")
        if title != task.title:
            columns["title"] = title
            events.append(("title_changed", task.title, title))

    if "description" in changes and changes["description"] != task.description:
        columns["description"] = changes["description"]

    if "difficulty" in changes:
        difficulty = Difficulty(changes["difficulty"])
        if difficulty != task.difficulty:
            columns["difficulty"] = difficulty.value
            events.append(("difficulty_changed", task.difficulty.value, difficulty.value))

    if "notes" in changes and changes["notes"] != task.notes:
        columns["notes"] = changes["notes"]
        events.append(("notes_changed", None, changes["notes"]))

    if "status" in changes:
        new_status = TaskStatus(changes["status"])
        if new_status != task.status:
            if task.status in HELD_STATUSES:
                if actor != task.owner:
                    raise NotOwnerError(task_id, actor or "anonymous", task.owner)
                raise InvalidTransitionError(
                    task_id, f"use release to move a task out of {task.status.value}"
                )
            if new_status == TaskStatus.IN_PROGRESS:
                raise InvalidTransitionError(task_id, "use claim to move a task to in-progress")
            if new_status == TaskStatus.BLOCKED and not (changes.get("notes") or "").strip():
                raise InvalidTransitionError(task_id, "blocked tasks need notes explaining the blocker")
            columns.update(transition_columns(db, task, new_status))
            events.append(("status_changed", task.status.value, new_status.value))

    if not columns:
        return task

    return compare_and_swap(db, task_id, expected, columns, events, actor=actor)


def update_with_retry(
    db: sqlite3.Connection,
    task_id: int,
    mutate: Callable[[Task], dict],
    attempts: int = 5,
    actor: str | None = None,
) -> Task:
    """Re-read and re-apply ``mutate`` until the write is not stale."""
    for attempt in range(1, attempts + 1):
        task = get_task(db, task_id)
        changes = mutate(task)
        try:
            return update_task(db, task_id, task.updated_at, actor=actor, **changes)
        except StaleWriteError:
            if attempt == attempts:
                raise
            logger.debug("Stale write on task %s, retrying (attempt %d)", task_id, attempt)
    raise AssertionError("unreachable")


def append_note(
    db: sqlite3.Connection,
    task_id: int,
    text: str,
    actor: str | None = None,
) -> Task:
    """Append a line to a task's notes."""
    text = text.strip()
    if not text:
        raise ValueError("Note text must not be empty")

    def mutate(task: Task) -> dict:
        return {"notes": f"{task.notes}\n{text}" if task.notes else text}

    return update_with_retry(db, task_id, mutate, actor=actor)


def add_dependency(
    db: sqlite3.Connection,
    task_id: int,
    depends_on_id: int,
    actor: str | None = None,
) -> Task:
    """Make ``task_id`` depend on ``depends_on_id``, refusing cycles."""
    task = get_task(db, task_id)
    if not task_exists(db, depends_on_id):
        raise NotFoundError(depends_on_id, "declared dependency")
    if depends_on_id == task_id:
        raise CyclicDependencyError([task_id, task_id])
    if depends_on_id in task.dependencies:
        return task
    if task.status not in (TaskStatus.TODO, TaskStatus.BLOCKED):
        raise InvalidTransitionError(
            task_id, f"cannot add dependencies while {task.status.value}"
        )

    path = _dependency_path(db, depends_on_id, task_id)
    if path:
        raise CyclicDependencyError([task_id, *path])

    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    return compare_and_swap(
        db, task_id, task.updated_at, {},
        [("dependency_added", None, str(depends_on_id))], actor=actor,
    )


def remove_dependency(
    db: sqlite3.Connection,
    task_id: int,
    depends_on_id: int,
    actor: str | None = None,
) -> Task:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if depends_on_id not in task.dependencies:
        return task
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    return compare_and_swap(
        db, task_id, task.updated_at, {},
        [("dependency_removed", str(depends_on_id), None)], actor=actor,
    )


def compare_and_swap(
    db: sqlite3.Connection,
    task_id: int,
    expected_updated_at: datetime | str,
    columns: dict,
    events: Iterable[tuple] = (),
    actor: str | None = None,
) -> Task:
    """Write ``columns`` only if ``updated_at`` still matches.

    Always advances ``updated_at``. Statements already issued on ``db`` in
    the same transaction are rolled back with the write on conflict.
    """
    expected = _as_stamp(expected_updated_at)
    values = dict(columns)
    values["updated_at"] = format_ts(next_timestamp(parse_ts(expected)))

    set_clause = ", ".join(f"{k} = ?" for k in values)
    cursor = db.execute(
        f"UPDATE tasks SET {set_clause} WHERE id = ? AND updated_at = ?",
        [*values.values(), task_id, expected],
    )
    if cursor.rowcount != 1:
        db.rollback()
        row = db.execute("SELECT updated_at FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFoundError(task_id)
        raise StaleWriteError(task_id, expected, row["updated_at"])

    for event_type, old_value, new_value in events:
        _log_event(db, task_id, event_type, old_value, new_value, actor)
    db.commit()
    return get_task(db, task_id)


def transition_columns(
    db: sqlite3.Connection,
    task: Task,
    new_status: TaskStatus,
    owner: str | None = None,
) -> dict:
    """Columns to write for a lifecycle move, after checking it is allowed."""
    if new_status not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransitionError(
            task.id, f"cannot move from {task.status.value} to {new_status.value}"
        )

    columns: dict = {"status": new_status.value}
    if new_status == TaskStatus.IN_PROGRESS:
        columns["owner"] = owner
    elif new_status == TaskStatus.TODO:
        columns["owner"] = None

    if new_status == TaskStatus.BLOCKED:
        columns["blocked_cycle"] = get_wave_cycle(db)
        columns["escalated"] = 0
        columns["escalated_at"] = None
    elif task.status == TaskStatus.BLOCKED:
        columns["blocked_cycle"] = None
        columns["escalated"] = 0
        columns["escalated_at"] = None

    if new_status == TaskStatus.DONE:
        columns["completed_at"] = format_ts(utcnow())
    return columns


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dependency_path(db: sqlite3.Connection, start: int, target: int) -> list[int] | None:
    """Ids from ``start`` to ``target`` following depends-on edges, if reachable."""
    parents: dict[int, int | None] = {start: None}
    frontier = [start]
    while frontier:
        next_frontier = []
        for node in frontier:
            for dep in sorted(_load_dependencies(db, node)):
                if dep in parents:
                    continue
                parents[dep] = node
                if dep == target:
                    path = [dep]
                    while parents[path[-1]] is not None:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                next_frontier.append(dep)
        frontier = next_frontier
    return None


def _status_values(status) -> list[str]:
    if isinstance(status, str):
        return [TaskStatus(status).value]
    return [TaskStatus(s).value for s in status]


def _load_dependencies(db: sqlite3.Connection, task_id: int) -> set[int]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return {r["depends_on_task_id"] for r in rows}


def _log_event(
    db: sqlite3.Connection,
    task_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor: str | None = None,
):
    db.execute(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, actor)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, event_type, old_value, new_value, actor),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=TaskStatus(row["status"]),
        owner=row["owner"],
        difficulty=Difficulty(row["difficulty"]),
        notes=row["notes"] or "",
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        completed_at=parse_ts(row["completed_at"]),
        blocked_cycle=row["blocked_cycle"],
        escalated=bool(row["escalated"]),
        escalated_at=parse_ts(row["escalated_at"]),
    )
