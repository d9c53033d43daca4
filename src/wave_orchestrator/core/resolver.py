"""Blocked-task handling: surface stalled work, never resolve it silently.

Escalation only sets a flag for an operator. Nothing here cancels or
reassigns a task on its own.
"""

import logging
import sqlite3
from collections.abc import Callable
from enum import Enum

from wave_orchestrator.core import locks
from wave_orchestrator.core.errors import InvalidTransitionError, StaleWriteError
from wave_orchestrator.core.ledger import (
    _log_event,
    compare_and_swap,
    format_ts,
    get_task,
    get_wave_cycle,
    list_tasks,
    transition_columns,
    utcnow,
)
from wave_orchestrator.db.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class UnblockResult(str, Enum):
    RESOLVED = "resolved"
    STILL_BLOCKED = "still-blocked"


def list_blocked(db: sqlite3.Connection) -> list[Task]:
    """Blocked tasks, oldest first, with their escalation flags."""
    return list_tasks(db, status=TaskStatus.BLOCKED)


def current_cycle(db: sqlite3.Connection) -> int:
    return get_wave_cycle(db)


def attempt_unblock(
    db: sqlite3.Connection,
    task_id: int,
    still_blocked: Callable[[Task], bool],
    actor: str = "operator",
) -> UnblockResult:
    """Re-check a blocker and send the task back to ``todo`` if it cleared.

    ``still_blocked`` receives the task (with its notes) and decides whether
    the recorded blocker still holds.
    """
    task = get_task(db, task_id)
    if task.status != TaskStatus.BLOCKED:
        raise InvalidTransitionError(task_id, f"task is {task.status.value}, not blocked")

    if still_blocked(task):
        _log_event(db, task_id, "unblock_attempted", None, UnblockResult.STILL_BLOCKED.value, actor)
        db.commit()
        logger.info("Task %s is still blocked", task_id)
        return UnblockResult.STILL_BLOCKED

    columns = transition_columns(db, task, TaskStatus.TODO)
    compare_and_swap(
        db, task_id, task.updated_at, columns,
        [("unblocked", TaskStatus.BLOCKED.value, TaskStatus.TODO.value)], actor=actor,
    )
    logger.info("Task %s unblocked by %s", task_id, actor)
    return UnblockResult.RESOLVED


def escalate(db: sqlite3.Connection, task_id: int, actor: str = "scheduler") -> Task:
    """Flag a blocked task for operator attention."""
    while True:
        task = get_task(db, task_id)
        if task.status != TaskStatus.BLOCKED:
            raise InvalidTransitionError(
                task_id, f"only blocked tasks can be escalated, got {task.status.value}"
            )
        if task.escalated:
            return task
        try:
            escalated = compare_and_swap(
                db, task_id, task.updated_at,
                {"escalated": 1, "escalated_at": format_ts(utcnow())},
                [("escalated", None, task.notes)], actor=actor,
            )
        except StaleWriteError:
            continue
        logger.warning("Task %s escalated: %s", task_id, task.notes or "(no notes)")
        return escalated


def cancel_blocked(
    db: sqlite3.Connection,
    task_id: int,
    reason: str,
    actor: str = "operator",
) -> Task:
    """Operator decision to give up on a blocked task."""
    task = get_task(db, task_id)
    if task.status != TaskStatus.BLOCKED:
        raise InvalidTransitionError(task_id, f"task is {task.status.value}, not blocked")
    return locks.force_cancel(db, task_id, reason, actor=actor)


def close_cycle(db: sqlite3.Connection, escalate_after: int = 1) -> list[Task]:
    """Advance the wave cycle and escalate tasks blocked for too long.

    A task blocked during cycle ``c`` is escalated when cycle
    ``c + escalate_after`` closes, i.e. after that many full cycles.
    """
    while True:
        closing = get_wave_cycle(db)
        cursor = db.execute(
            "UPDATE scheduler_state SET value = ? WHERE key = 'wave_cycle' AND value = ?",
            (str(closing + 1), str(closing)),
        )
        if cursor.rowcount == 1:
            db.commit()
            break
        db.rollback()

    escalated = []
    for task in list_blocked(db):
        if task.escalated or task.blocked_cycle is None:
            continue
        if closing - task.blocked_cycle >= escalate_after:
            escalated.append(escalate(db, task.id))
    logger.info("Closed wave cycle %d, escalated %d task(s)", closing, len(escalated))
    return escalated


def escalate_stalled(db: sqlite3.Connection) -> list[Task]:
    """Escalate every blocked task when nothing else can make progress."""
    return [escalate(db, t.id) for t in list_blocked(db) if not t.escalated]
