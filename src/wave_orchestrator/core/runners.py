"""Task runners: what a worker does between claim and release."""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from wave_orchestrator.db.models import Task, TaskStatus

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 500


@dataclass
class TaskOutcome:
    status: TaskStatus
    notes: str = ""

    def __post_init__(self):
        self.status = TaskStatus(self.status)

    @classmethod
    def done(cls, notes: str = "") -> "TaskOutcome":
        return cls(TaskStatus.DONE, notes)

    @classmethod
    def blocked(cls, notes: str) -> "TaskOutcome":
        return cls(TaskStatus.BLOCKED, notes)


class ShellRunner:
    """Run one command per task.

    The task is described to the command through ``WV_TASK_ID``,
    ``WV_TASK_TITLE`` and ``WV_TASK_OWNER``. Exit status 0 marks the task
    done; anything else blocks it with the tail of the output as notes.
    """

    def __init__(self, command: str, timeout: float | None = None, cwd: Path | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("command must not be empty")
        self.timeout = timeout
        self.cwd = cwd

    def __call__(self, task: Task) -> TaskOutcome:
        env = {
            **os.environ,
            "WV_TASK_ID": str(task.id),
            "WV_TASK_TITLE": task.title,
            "WV_TASK_OWNER": task.owner or "",
        }
        logger.info("Running %s for task %s", shlex.join(self.argv), task.id)
        try:
            proc = subprocess.run(
                self.argv,
                env=env,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return TaskOutcome.blocked(f"Command timed out after {self.timeout}s")
        except OSError as e:
            return TaskOutcome.blocked(f"Command failed to start: {e}")

        if proc.returncode == 0:
            return TaskOutcome.done()

        output = (proc.stderr or proc.stdout or "").strip()
        tail = output[-OUTPUT_TAIL_CHARS:] if output else "(no output)"
        return TaskOutcome.blocked(f"Command exited with {proc.returncode}: {tail}")
