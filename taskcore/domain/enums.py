from __future__ import annotations

from enum import IntEnum, StrEnum


class TaskStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    DONE = "done"
    ARCHIVED = "archived"


OPEN_STATUSES = frozenset({TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.WAITING})


class RecurrenceType(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MONTHLY_WEEKDAY = "monthly_weekday"
    MONTHLY_LAST_DAY = "monthly_last_day"
    YEARLY = "yearly"


class PriorityLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2


class CascadeEdge(StrEnum):
    """Structural edge a cascaded status change travelled along."""

    PARENT = "parent"
    SUBTASK = "subtask"
    TEMPLATE = "template"
