from __future__ import annotations

from .enums import CascadeEdge


class TaskCoreError(Exception):
    """Base class for errors raised by the recurrence and cascade core."""


class TaskNotFound(TaskCoreError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidRecurrenceRule(TaskCoreError, ValueError):
    """Malformed recurrence settings, rejected before anything is written."""


class InvalidStatusChange(TaskCoreError):
    pass


class LockTimeout(TaskCoreError):
    def __init__(self, user_id: int, waited: float) -> None:
        super().__init__(f"Generation lock for user {user_id} not acquired after {waited:.1f}s")
        self.user_id = user_id
        self.waited = waited


class CascadeSideEffectFailed(TaskCoreError):
    """A cascade side effect failed after the primary status change was committed.

    Never raised out of the service; it is rendered into the warning list of
    the status change result.
    """

    def __init__(self, edge: CascadeEdge, task_id: int, reason: str) -> None:
        super().__init__(f"{edge.value} cascade for task {task_id} failed: {reason}")
        self.edge = edge
        self.task_id = task_id
        self.reason = reason
