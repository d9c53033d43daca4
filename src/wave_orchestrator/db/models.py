"""Data models for the task ledger."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    IN_REVIEW = "in-review"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    CRITICAL = "critical"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})
HELD_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.TODO, TaskStatus.BLOCKED, TaskStatus.IN_REVIEW,
        TaskStatus.DONE, TaskStatus.CANCELLED,
    }),
    TaskStatus.BLOCKED: frozenset({TaskStatus.TODO, TaskStatus.CANCELLED}),
    TaskStatus.IN_REVIEW: frozenset({
        TaskStatus.TODO, TaskStatus.BLOCKED, TaskStatus.DONE, TaskStatus.CANCELLED,
    }),
    TaskStatus.DONE: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


@dataclass
class Task:
    id: int
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    owner: str | None = None
    difficulty: Difficulty = Difficulty.MEDIUM
    notes: str = ""
    dependencies: set[int] = field(default_factory=set)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_cycle: int | None = None
    escalated: bool = False
    escalated_at: datetime | None = None

    @property
    def sort_key(self) -> tuple:
        """Scheduling order: oldest first, then lowest id."""
        return (self.created_at or _EPOCH, self.id)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    actor: str | None = None
    created_at: datetime | None = None
