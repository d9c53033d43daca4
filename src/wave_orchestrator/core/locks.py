"""Claim and release: at most one owner per task.

A claim is one conditional UPDATE against the ledger row. There is no
separate lock table, so the lock can never drift from the task status.
The concurrency cap is checked by the same statement, so two workers
racing for the last free slot cannot both win it.
"""

import logging
import sqlite3
from datetime import datetime, timedelta

from wave_orchestrator.core.errors import (
    AlreadyClaimedError,
    CapacityReachedError,
    DependenciesNotDoneError,
    InvalidTransitionError,
    NotOwnerError,
    StaleWriteError,
)
from wave_orchestrator.core.ledger import (
    _log_event,
    compare_and_swap,
    count_tasks,
    format_ts,
    get_task,
    iter_tasks,
    next_timestamp,
    transition_columns,
    utcnow,
)
from wave_orchestrator.db.models import HELD_STATUSES, Task, TaskStatus

logger = logging.getLogger(__name__)

_CLAIM_SQL = """
UPDATE tasks SET status = 'in-progress', owner = ?, updated_at = ?
WHERE id = ?
  AND status = 'todo'
  AND (owner IS NULL OR owner = '')
  AND updated_at = ?
  AND NOT EXISTS (
      SELECT 1 FROM task_dependencies d
      JOIN tasks dep ON dep.id = d.depends_on_task_id
      WHERE d.task_id = ? AND dep.status != 'done'
  )
  AND (? IS NULL OR (SELECT COUNT(*) FROM tasks WHERE status = 'in-progress') < ?)
"""


def claim(
    db: sqlite3.Connection,
    task_id: int,
    worker_id: str,
    max_concurrency: int | None = None,
) -> Task:
    """Take ownership of a ``todo`` task whose dependencies are all done.

    The status, owner, dependency and cap checks run inside the UPDATE
    itself. When it matches nothing the row is re-read to report why.
    ``max_concurrency`` of ``None`` leaves the claim uncapped.
    """
    worker_id = (worker_id or "").strip()
    if not worker_id:
        raise ValueError("worker_id must not be empty")

    while True:
        task = get_task(db, task_id)
        if task.status != TaskStatus.TODO or task.owner:
            raise AlreadyClaimedError(task_id, task.status.value, task.owner)
        pending = pending_dependencies(db, task_id)
        if pending:
            raise DependenciesNotDoneError(task_id, pending)
        if (
            max_concurrency is not None
            and count_tasks(db, TaskStatus.IN_PROGRESS) >= max_concurrency
        ):
            raise CapacityReachedError(task_id, max_concurrency)

        expected = format_ts(task.updated_at)
        stamp = format_ts(next_timestamp(task.updated_at))
        cursor = db.execute(
            _CLAIM_SQL,
            (worker_id, stamp, task_id, expected, task_id, max_concurrency, max_concurrency),
        )
        if cursor.rowcount == 1:
            _log_event(
                db, task_id, "claimed", TaskStatus.TODO.value, worker_id, actor=worker_id
            )
            db.commit()
            logger.info("Worker %s claimed task %s", worker_id, task_id)
            return get_task(db, task_id)

        db.rollback()
        logger.debug("Claim of task %s by %s matched no row, re-reading", task_id, worker_id)


def release(
    db: sqlite3.Connection,
    task_id: int,
    worker_id: str,
    final_status: TaskStatus | str,
    notes: str = "",
) -> Task:
    """Move a held task out of ``in-progress`` (or ``in-review``).

    Only the current owner may do this. ``blocked`` needs notes. Returning
    to ``todo`` clears the owner; other statuses keep it for audit.
    """
    final = TaskStatus(final_status)
    if final == TaskStatus.IN_PROGRESS:
        raise InvalidTransitionError(task_id, "release needs a status other than in-progress")
    notes = notes.strip()
    if final == TaskStatus.BLOCKED and not notes:
        raise InvalidTransitionError(task_id, "blocked tasks need notes explaining the blocker")

    while True:
        task = get_task(db, task_id)
        if task.owner != worker_id:
            raise NotOwnerError(task_id, worker_id, task.owner)
        if task.status not in HELD_STATUSES:
            raise InvalidTransitionError(
                task_id, f"{task.status.value} task is not held by {worker_id}"
            )

        columns = transition_columns(db, task, final)
        if notes:
            columns["notes"] = f"{task.notes}\n{notes}" if task.notes else notes
        try:
            released = compare_and_swap(
                db, task_id, task.updated_at, columns,
                [("released", task.status.value, final.value)], actor=worker_id,
            )
        except StaleWriteError:
            logger.debug("Release of task %s raced another write, re-reading", task_id)
            continue
        logger.info("Worker %s released task %s as %s", worker_id, task_id, final.value)
        return released


def heartbeat(db: sqlite3.Connection, task_id: int, worker_id: str) -> Task:
    """Bump ``updated_at`` on a claimed task so it does not look stale."""
    while True:
        task = get_task(db, task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.owner != worker_id:
            raise NotOwnerError(task_id, worker_id, task.owner)
        try:
            return compare_and_swap(db, task_id, task.updated_at, {})
        except StaleWriteError:
            continue


def pending_dependencies(db: sqlite3.Connection, task_id: int) -> list[int]:
    """Dependencies of ``task_id`` that are not done yet."""
    rows = db.execute(
        """SELECT d.depends_on_task_id FROM task_dependencies d
           JOIN tasks dep ON dep.id = d.depends_on_task_id
           WHERE d.task_id = ? AND dep.status != 'done'
           ORDER BY d.depends_on_task_id""",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


# ── Operator actions ─────────────────────────────────────────────────────────


def list_stale_claims(
    db: sqlite3.Connection,
    stale_after: timedelta,
    now: datetime | None = None,
) -> list[Task]:
    """In-progress tasks not updated within ``stale_after``."""
    cutoff = (now or utcnow()) - stale_after
    return [
        t for t in iter_tasks(db, status=TaskStatus.IN_PROGRESS)
        if t.updated_at < cutoff
    ]


def force_release(
    db: sqlite3.Connection,
    task_id: int,
    stale_after: timedelta,
    now: datetime | None = None,
    actor: str = "operator",
) -> Task:
    """Return a stale claim to ``todo``.

    Raises ``StaleWriteError`` if the owner touched the task in the meantime.
    """
    task = get_task(db, task_id)
    if task.status != TaskStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            task_id, f"only in-progress tasks can be force-released, got {task.status.value}"
        )
    idle = (now or utcnow()) - task.updated_at
    if idle < stale_after:
        raise InvalidTransitionError(
            task_id, f"claim by {task.owner} is not stale (idle {idle}, window {stale_after})"
        )

    columns = transition_columns(db, task, TaskStatus.TODO)
    note = f"Force-released from {task.owner} by {actor} after {idle} idle"
    columns["notes"] = f"{task.notes}\n{note}" if task.notes else note
    released = compare_and_swap(
        db, task_id, task.updated_at, columns,
        [("force_released", task.owner, None)], actor=actor,
    )
    logger.warning("Task %s force-released from %s by %s", task_id, task.owner, actor)
    return released


def force_cancel(
    db: sqlite3.Connection,
    task_id: int,
    reason: str,
    actor: str = "operator",
) -> Task:
    """Cancel any non-terminal task, including one held by a worker."""
    reason = reason.strip()
    if not reason:
        raise ValueError("A cancellation reason is required")
    task = get_task(db, task_id)
    columns = transition_columns(db, task, TaskStatus.CANCELLED)
    note = f"Cancelled by {actor}: {reason}"
    columns["notes"] = f"{task.notes}\n{note}" if task.notes else note
    cancelled = compare_and_swap(
        db, task_id, task.updated_at, columns,
        [("status_changed", task.status.value, TaskStatus.CANCELLED.value)], actor=actor,
    )
    logger.warning("Task %s cancelled by %s: %s", task_id, actor, reason)
    return cancelled
