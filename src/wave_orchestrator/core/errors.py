"""Ledger error taxonomy.

Race outcomes (``AlreadyClaimedError``, ``CapacityReachedError``,
``StaleWriteError``) are recovered by the scheduler with retry-or-skip. Structural errors (``CyclicDependencyError``,
``NotFoundError`` on a declared dependency) halt scheduling and need a human
to correct the ledger.
"""


class LedgerError(Exception):
    """Base class for all ledger failures."""


class NotFoundError(LedgerError):
    """Raised when a referenced task id does not exist."""

    def __init__(self, task_id: int, context: str | None = None):
        self.task_id = task_id
        message = f"Task not found: {task_id}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class StaleWriteError(LedgerError):
    """Raised when a task changed between the caller's read and write."""

    def __init__(self, task_id: int, expected: str, actual: str):
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale write on task {task_id}: expected updated_at {expected}, found {actual}"
        )


class AlreadyClaimedError(LedgerError):
    """Raised when a claim loses the race or the task is not claimable."""

    def __init__(self, task_id: int, status: str, owner: str | None):
        self.task_id = task_id
        self.status = status
        self.owner = owner
        holder = f" by {owner}" if owner else ""
        super().__init__(f"Task {task_id} cannot be claimed: status is {status}{holder}")


class CapacityReachedError(LedgerError):
    """Raised when a claim would push the ledger past its concurrency cap."""

    def __init__(self, task_id: int, max_concurrency: int):
        self.task_id = task_id
        self.max_concurrency = max_concurrency
        super().__init__(
            f"Task {task_id} cannot be claimed: {max_concurrency} tasks already in progress"
        )


class NotOwnerError(LedgerError):
    """Raised when a worker releases or mutates a task it does not own."""

    def __init__(self, task_id: int, worker_id: str, owner: str | None):
        self.task_id = task_id
        self.worker_id = worker_id
        self.owner = owner
        super().__init__(
            f"Worker {worker_id} does not own task {task_id} (owner: {owner or 'none'})"
        )


class CyclicDependencyError(LedgerError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[int]):
        self.cycle = list(cycle)
        path = " -> ".join(str(t) for t in self.cycle)
        super().__init__(f"Cyclic dependency between tasks: {path}")


class InvalidTransitionError(LedgerError):
    """Raised for a status change the task lifecycle does not allow."""

    def __init__(self, task_id: int, message: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id}: {message}")


class DependenciesNotDoneError(InvalidTransitionError):
    """Raised when a claim is attempted before every dependency is done."""

    def __init__(self, task_id: int, pending: list[int]):
        self.pending = sorted(pending)
        ids = ", ".join(str(t) for t in self.pending)
        super().__init__(task_id, f"dependencies not done: {ids}")


class DuplicateTitleWarning(UserWarning):
    """Issued when a new task repeats the title of an existing one."""
