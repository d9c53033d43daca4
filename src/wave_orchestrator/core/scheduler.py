"""Wave scheduler: dispatch ready tasks under a global concurrency cap.

Waves overlap. A task starts as soon as its own dependencies are done,
even while unrelated tasks from an earlier wave are still running. The cap
counts every ``in-progress`` task in the ledger, not only this scheduler's.
"""

import logging
import os
import socket
import sqlite3
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from wave_orchestrator.config import Config
from wave_orchestrator.core import graph as graph_mod
from wave_orchestrator.core import locks
from wave_orchestrator.core import resolver
from wave_orchestrator.core.errors import (
    AlreadyClaimedError,
    CapacityReachedError,
    DependenciesNotDoneError,
    InvalidTransitionError,
    NotOwnerError,
)
from wave_orchestrator.core.ledger import count_tasks, get_task, list_tasks
from wave_orchestrator.core.runners import TaskOutcome
from wave_orchestrator.db.models import Task, TaskStatus

logger = logging.getLogger(__name__)

Runner = Callable[[Task], TaskOutcome]


class WaveState(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    AWAITING = "awaiting"
    CLOSED = "closed"


@dataclass
class Wave:
    number: int
    task_ids: list[int] = field(default_factory=list)
    state: WaveState = WaveState.PENDING


@dataclass
class RunReport:
    done: list[int] = field(default_factory=list)
    blocked: list[int] = field(default_factory=list)
    in_review: list[int] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    returned: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    lost: list[int] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)
    stranded: list[int] = field(default_factory=list)
    waiting_on: list[int] = field(default_factory=list)
    waves: list[Wave] = field(default_factory=list)

    def record(self, task: Task):
        bucket = {
            TaskStatus.DONE: self.done,
            TaskStatus.BLOCKED: self.blocked,
            TaskStatus.IN_REVIEW: self.in_review,
            TaskStatus.CANCELLED: self.cancelled,
            TaskStatus.TODO: self.returned,
        }.get(task.status)
        if bucket is not None:
            bucket.append(task.id)


class WaveScheduler:
    def __init__(
        self,
        db: sqlite3.Connection,
        max_concurrency: int = 3,
        worker_id: str | None = None,
        poll_interval: float = 0.5,
        escalate_after: int = 1,
        on_escalate: Callable[[Task], None] | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.db = db
        self.max_concurrency = max_concurrency
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.poll_interval = poll_interval
        self.escalate_after = escalate_after
        self.on_escalate = on_escalate
        self.waves: list[Wave] = []
        self._task_wave: dict[int, Wave] = {}
        self._inflight: set[int] = set()

    @classmethod
    def from_config(cls, db: sqlite3.Connection, config: Config, **kwargs) -> "WaveScheduler":
        options = {
            "max_concurrency": config.max_concurrency,
            "worker_id": config.worker_id,
            "poll_interval": config.poll_interval,
            "escalate_after": config.escalate_after,
        }
        options.update(kwargs)
        return cls(db, **options)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def capacity(self) -> int:
        """Free slots under the system-wide cap."""
        in_progress = count_tasks(self.db, TaskStatus.IN_PROGRESS)
        return max(0, self.max_concurrency - in_progress)

    def claim_batch(
        self, skipped: list[int] | None = None, limit: int | None = None
    ) -> list[Task]:
        """Claim ready tasks in scheduling order until the cap is reached.

        A lost claim race skips that task for this round only. The cap is
        enforced again by each claim, so a slot taken by another worker
        since ``capacity`` was read ends the round.
        """
        plan = graph_mod.plan(self.db)
        capacity = self.capacity()
        if limit is not None:
            capacity = min(capacity, limit)
        claimed: list[Task] = []

        for candidate in plan.ready():
            if capacity <= 0:
                break
            try:
                task = locks.claim(
                    self.db, candidate.id, self.worker_id, self.max_concurrency
                )
            except CapacityReachedError as e:
                logger.debug("Stopping this round at task %s: %s", candidate.id, e)
                break
            except (AlreadyClaimedError, DependenciesNotDoneError) as e:
                logger.debug("Skipping task %s this round: %s", candidate.id, e)
                if skipped is not None:
                    skipped.append(candidate.id)
                continue
            self._assign_wave(task)
            claimed.append(task)
            capacity -= 1

        for wave in self.waves:
            if wave.state == WaveState.DISPATCHED:
                wave.state = WaveState.AWAITING
        if claimed:
            logger.info("Dispatched tasks %s", [t.id for t in claimed])
        return claimed

    def _assign_wave(self, task: Task) -> Wave:
        dep_waves = [self._task_wave[d].number for d in task.dependencies if d in self._task_wave]
        if dep_waves:
            number = max(dep_waves) + 1
        else:
            open_waves = [w for w in self.waves if w.state != WaveState.CLOSED]
            if open_waves:
                number = open_waves[0].number
            else:
                number = self.waves[-1].number + 1 if self.waves else 0

        wave = self._wave(number)
        while wave.state == WaveState.CLOSED:
            wave = self._wave(wave.number + 1)

        wave.task_ids.append(task.id)
        if wave.state == WaveState.PENDING:
            wave.state = WaveState.DISPATCHED
        self._task_wave[task.id] = wave
        return wave

    def _wave(self, number: int) -> Wave:
        for wave in self.waves:
            if wave.number == number:
                return wave
        wave = Wave(number=number)
        self.waves.append(wave)
        self.waves.sort(key=lambda w: w.number)
        return wave

    # ── Wave closing ─────────────────────────────────────────────────────────

    def close_finished_waves(self, report: RunReport | None = None) -> list[Wave]:
        """Close waves, in order, whose members have all left in-progress.

        Each close advances the ledger's wave cycle and escalates tasks that
        stayed blocked too long.
        """
        closed = []
        for wave in self.waves:
            if wave.state == WaveState.CLOSED:
                continue
            if not wave.task_ids or not self._wave_finished(wave):
                break
            wave.state = WaveState.CLOSED
            closed.append(wave)
            logger.info("Wave %d closed (%d tasks)", wave.number, len(wave.task_ids))
            escalated = resolver.close_cycle(self.db, self.escalate_after)
            self._escalated(escalated, report)
        return closed

    def _wave_finished(self, wave: Wave) -> bool:
        for task_id in wave.task_ids:
            if task_id in self._inflight:
                return False
            if get_task(self.db, task_id).status == TaskStatus.IN_PROGRESS:
                return False
        return True

    def _escalated(self, tasks: list[Task], report: RunReport | None):
        for task in tasks:
            if report is not None:
                report.escalated.append(task.id)
            if self.on_escalate is None:
                continue
            try:
                self.on_escalate(task)
            except Exception:
                logger.exception("Escalation notification failed for task %s", task.id)

    # ── Execution ────────────────────────────────────────────────────────────

    def run(self, runner: Runner) -> RunReport:
        """Claim, execute and release tasks until nothing more can start.

        ``runner`` is called on a worker thread and must not use this
        scheduler's database connection. A ``CyclicDependencyError`` stops
        dispatch at once; tasks already running are still released.
        """
        report = RunReport(waves=self.waves)
        futures: dict[Future, Task] = {}
        logger.info(
            "Scheduler %s starting (max_concurrency=%d)", self.worker_id, self.max_concurrency
        )

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="wave-worker"
        ) as pool:
            try:
                while True:
                    for task in self.claim_batch(report.skipped):
                        futures[pool.submit(runner, task)] = task
                        self._inflight.add(task.id)
                    self.close_finished_waves(report)
                    if not futures:
                        break
                    finished, _ = wait(
                        futures, timeout=self.poll_interval, return_when=FIRST_COMPLETED
                    )
                    for future in finished:
                        self._finish(futures.pop(future), future, report)
            finally:
                for future in list(futures):
                    future_task = futures.pop(future)
                    self._finish(future_task, future, report)

        self._wrap_up(report)
        return report

    def _finish(self, task: Task, future: Future, report: RunReport):
        try:
            outcome = future.result()
        except Exception as e:
            logger.exception("Runner failed on task %s", task.id)
            outcome = TaskOutcome.blocked(f"Runner error: {e}")
        finally:
            self._inflight.discard(task.id)

        if outcome.status == TaskStatus.IN_PROGRESS:
            outcome = TaskOutcome.blocked("Runner returned without finishing the task")
        elif outcome.status == TaskStatus.BLOCKED and not outcome.notes.strip():
            outcome = TaskOutcome.blocked("Runner reported the task blocked without a reason")

        try:
            released = locks.release(
                self.db, task.id, self.worker_id, outcome.status, outcome.notes
            )
        except (NotOwnerError, InvalidTransitionError) as e:
            logger.warning("Task %s was taken away before release: %s", task.id, e)
            report.lost.append(task.id)
            return
        report.record(released)

    def _wrap_up(self, report: RunReport):
        plan = graph_mod.plan(self.db)
        report.stranded = [t.id for t in plan.stranded]
        report.waiting_on = [t.id for t in list_tasks(self.db, status=TaskStatus.IN_PROGRESS)]

        blocked = resolver.list_blocked(self.db)
        if blocked and not plan.ready() and not report.waiting_on:
            logger.warning(
                "Scheduling stalled on blocked tasks %s", [t.id for t in blocked]
            )
            self._escalated(resolver.escalate_stalled(self.db), report)

        logger.info(
            "Scheduler %s finished: %d done, %d blocked, %d escalated",
            self.worker_id, len(report.done), len(report.blocked), len(report.escalated),
        )
