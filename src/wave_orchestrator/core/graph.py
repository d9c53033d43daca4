"""Dependency graph snapshots and wave partitioning.

A graph is built fresh from the ledger for each scheduling decision and
thrown away afterwards. Edge ``A -> B`` means B depends on A.
"""

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field

from wave_orchestrator.core.errors import CyclicDependencyError, NotFoundError
from wave_orchestrator.core.ledger import get_task, iter_tasks
from wave_orchestrator.db.models import TERMINAL_STATUSES, Task, TaskStatus

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = tuple(s for s in TaskStatus if s not in TERMINAL_STATUSES)


@dataclass
class DependencyGraph:
    tasks: dict[int, Task]
    dependents: dict[int, list[int]]

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        """Build a graph; every dependency of an active task must be present."""
        by_id = {t.id: t for t in tasks}
        dependents: dict[int, list[int]] = {tid: [] for tid in by_id}
        for task in sorted(by_id.values(), key=lambda t: t.id):
            if task.status in TERMINAL_STATUSES:
                continue
            for dep_id in sorted(task.dependencies):
                if dep_id not in by_id:
                    raise NotFoundError(dep_id, f"dependency of task {task.id}")
                dependents[dep_id].append(task.id)
        return cls(tasks=by_id, dependents=dependents)

    def dependencies_of(self, task_id: int) -> list[int]:
        task = self.tasks[task_id]
        if task.status in TERMINAL_STATUSES:
            return []
        return sorted(task.dependencies)


@dataclass
class WavePlan:
    waves: list[list[Task]] = field(default_factory=list)
    stranded: list[Task] = field(default_factory=list)

    def ready(self) -> list[Task]:
        """Claimable tasks, in scheduling order."""
        if not self.waves:
            return []
        return [t for t in self.waves[0] if t.status == TaskStatus.TODO]

    def wave_of(self, task_id: int) -> int | None:
        for index, wave in enumerate(self.waves):
            if any(t.id == task_id for t in wave):
                return index
        return None

    def wave_ids(self) -> list[list[int]]:
        return [[t.id for t in wave] for wave in self.waves]


def build_graph(db: sqlite3.Connection) -> DependencyGraph:
    """Snapshot active tasks plus every task they depend on."""
    tasks = {t.id: t for t in iter_tasks(db, status=ACTIVE_STATUSES)}
    referenced: dict[int, int] = {}
    for task in tasks.values():
        for dep_id in task.dependencies:
            if dep_id not in tasks:
                referenced.setdefault(dep_id, task.id)

    for dep_id, referrer in sorted(referenced.items()):
        try:
            tasks[dep_id] = get_task(db, dep_id)
        except NotFoundError:
            raise NotFoundError(dep_id, f"dependency of task {referrer}") from None

    return DependencyGraph.from_tasks(tasks.values())


def find_cycle(graph: DependencyGraph) -> list[int] | None:
    """Return one dependency cycle as ``[a, b, ..., a]``, or None.

    Iterative depth-first search with white/grey/black marking.
    """
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(graph.tasks, white)

    for root in sorted(graph.tasks):
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        stack = [iter(graph.dependencies_of(root))]
        while stack:
            for child in stack[-1]:
                if color[child] == grey:
                    return path[path.index(child):] + [child]
                if color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append(iter(graph.dependencies_of(child)))
                    break
            else:
                color[path.pop()] = black
                stack.pop()
    return None


def check_acyclic(graph: DependencyGraph):
    cycle = find_cycle(graph)
    if cycle:
        raise CyclicDependencyError(cycle)


def compute_waves(graph: DependencyGraph) -> WavePlan:
    """Partition active tasks into waves of satisfied dependencies.

    Wave 0 holds tasks whose dependencies are all done. Wave k holds tasks
    whose remaining dependencies all sit in waves 0..k-1. Tasks behind a
    cancelled dependency can never run and are reported as stranded.
    """
    active = {tid: t for tid, t in graph.tasks.items() if t.status not in TERMINAL_STATUSES}
    remaining = {
        tid: {d for d in t.dependencies if graph.tasks[d].status != TaskStatus.DONE}
        for tid, t in active.items()
    }

    stranded = {
        tid for tid, deps in remaining.items()
        if any(graph.tasks[d].status == TaskStatus.CANCELLED for d in deps)
    }
    queue = list(stranded)
    while queue:
        node = queue.pop()
        for child in graph.dependents.get(node, []):
            if child in active and child not in stranded:
                stranded.add(child)
                queue.append(child)

    plan = WavePlan(stranded=sorted((active[t] for t in stranded), key=lambda t: t.sort_key))
    current = [tid for tid, deps in remaining.items() if not deps and tid not in stranded]
    placed: set[int] = set()
    while current:
        wave = sorted((active[tid] for tid in current), key=lambda t: t.sort_key)
        plan.waves.append(wave)
        placed.update(current)
        following = []
        for task in wave:
            for child in graph.dependents.get(task.id, []):
                if child not in active or child in stranded or child in placed:
                    continue
                remaining[child].discard(task.id)
                if not remaining[child] and child not in following:
                    following.append(child)
        current = following

    unplaced = set(active) - placed - stranded
    if unplaced:
        check_acyclic(graph)
        raise CyclicDependencyError(sorted(unplaced))

    logger.debug(
        "Planned %d waves (%d stranded): %s",
        len(plan.waves), len(plan.stranded), plan.wave_ids(),
    )
    return plan


def plan(db: sqlite3.Connection) -> WavePlan:
    """Build, validate and partition the current ledger."""
    graph = build_graph(db)
    check_acyclic(graph)
    return compute_waves(graph)
