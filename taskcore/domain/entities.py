from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from .enums import CascadeEdge, RecurrenceType, TaskStatus


@dataclass(frozen=True)
class TaskEntity:
    id: int | None
    uid: str
    user_id: int
    name: str
    note: str
    status: TaskStatus
    priority: int
    due_date: Optional[date]
    today: bool
    parent_task_id: int | None
    recurring_parent_id: int | None
    recurrence_type: RecurrenceType
    recurrence_interval: int
    recurrence_end_date: Optional[date]
    recurrence_weekday: int | None
    recurrence_month_day: int | None
    recurrence_week_of_month: int | None
    completion_based: bool
    last_generated_date: Optional[date]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]

    @property
    def is_instance(self) -> bool:
        return self.recurring_parent_id is not None

    @property
    def is_template(self) -> bool:
        return self.recurring_parent_id is None and self.recurrence_type != RecurrenceType.NONE

    @property
    def is_subtask(self) -> bool:
        return self.parent_task_id is not None

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE


@dataclass(frozen=True)
class CascadeChange:
    task_id: int
    edge: CascadeEdge
    old_status: TaskStatus | None
    new_status: TaskStatus


@dataclass(frozen=True)
class StatusChangeResult:
    task: TaskEntity
    cascaded_changes: list[CascadeChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_task: TaskEntity | None = None
