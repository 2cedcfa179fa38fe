from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from taskcore.domain.entities import TaskEntity
from taskcore.domain.enums import RecurrenceType, TaskStatus

from .db import SessionLocal
from .models import TaskModel, new_uid

STATUS_DONE = TaskStatus.DONE.value
STATUS_ARCHIVED = TaskStatus.ARCHIVED.value
RECURRENCE_NONE = RecurrenceType.NONE.value

DETACHED_RECURRENCE = {
    "recurring_parent_id": None,
    "recurrence_type": RECURRENCE_NONE,
    "recurrence_interval": 1,
    "recurrence_end_date": None,
    "recurrence_weekday": None,
    "recurrence_month_day": None,
    "recurrence_week_of_month": None,
    "completion_based": False,
    "last_generated_date": None,
}


def _recurrence_type(value: str | None) -> RecurrenceType:
    try:
        return RecurrenceType(value or RECURRENCE_NONE)
    except ValueError:
        return RecurrenceType.NONE


def _to_entity(model: TaskModel) -> TaskEntity:
    return TaskEntity(
        id=model.id,
        uid=model.uid,
        user_id=model.user_id,
        name=model.name,
        note=model.note or "",
        status=TaskStatus(model.status),
        priority=model.priority,
        due_date=model.due_date,
        today=bool(model.today),
        parent_task_id=model.parent_task_id,
        recurring_parent_id=model.recurring_parent_id,
        recurrence_type=_recurrence_type(model.recurrence_type),
        recurrence_interval=model.recurrence_interval or 1,
        recurrence_end_date=model.recurrence_end_date,
        recurrence_weekday=model.recurrence_weekday,
        recurrence_month_day=model.recurrence_month_day,
        recurrence_week_of_month=model.recurrence_week_of_month,
        completion_based=bool(model.completion_based),
        last_generated_date=model.last_generated_date,
        created_at=model.created_at,
        updated_at=model.updated_at,
        completed_at=model.completed_at,
    )


def _normalize(data: dict) -> dict:
    normalized = dict(data)
    for key in ("status", "recurrence_type"):
        value = normalized.get(key)
        if value is not None and hasattr(value, "value"):
            normalized[key] = value.value
    return normalized


class TaskRepository:
    """Task store.

    Each call runs in its own session unless the repository was handed out by
    ``transaction()``, in which case every call shares that session and the
    commit happens once on exit.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal, session: Session | None = None) -> None:
        self._session_factory = session_factory
        self._bound = session

    @contextmanager
    def transaction(self) -> Iterator["TaskRepository"]:
        if self._bound is not None:
            yield self
            return
        with self._session_factory() as session:
            with session.begin():
                yield type(self)(self._session_factory, session=session)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._bound is not None:
            yield self._bound
            return
        with self._session_factory() as session:
            yield session
            session.commit()

    def get_task(self, task_id: int) -> Optional[TaskEntity]:
        with self._session() as session:
            task = session.get(TaskModel, task_id, populate_existing=True)
            return _to_entity(task) if task else None

    def get_task_by_uid(self, uid: str) -> Optional[TaskEntity]:
        with self._session() as session:
            task = session.scalar(select(TaskModel).where(TaskModel.uid == uid))
            return _to_entity(task) if task else None

    def create_task(self, data: dict) -> TaskEntity:
        with self._session() as session:
            values = _normalize(data)
            if not values.get("uid"):
                values["uid"] = new_uid()
            task = TaskModel(**values)
            session.add(task)
            session.flush()
            session.refresh(task)
            return _to_entity(task)

    def update_task(self, task_id: int, data: dict) -> Optional[TaskEntity]:
        with self._session() as session:
            task = session.get(TaskModel, task_id)
            if not task:
                return None
            for key, value in _normalize(data).items():
                setattr(task, key, value)
            session.flush()
            session.refresh(task)
            return _to_entity(task)

    def delete_task(self, task_id: int) -> None:
        with self._session() as session:
            session.execute(
                delete(TaskModel)
                .where(TaskModel.parent_task_id == task_id)
                .execution_options(synchronize_session="fetch")
            )
            task = session.get(TaskModel, task_id)
            if not task:
                return
            session.delete(task)
            session.flush()

    def list_templates(self, user_id: int, today: date) -> list[TaskEntity]:
        """Live recurring templates of a user whose end date is not already behind ``today``."""
        with self._session() as session:
            stmt = (
                select(TaskModel)
                .where(
                    TaskModel.user_id == user_id,
                    TaskModel.recurring_parent_id.is_(None),
                    TaskModel.recurrence_type != RECURRENCE_NONE,
                    TaskModel.status != STATUS_ARCHIVED,
                    or_(
                        TaskModel.recurrence_end_date.is_(None),
                        TaskModel.recurrence_end_date >= today,
                    ),
                )
                .order_by(TaskModel.id.asc())
            )
            return [_to_entity(task) for task in session.scalars(stmt)]

    def list_instances(self, template_id: int) -> list[TaskEntity]:
        with self._session() as session:
            stmt = (
                select(TaskModel)
                .where(TaskModel.recurring_parent_id == template_id)
                .order_by(TaskModel.due_date.is_(None), TaskModel.due_date.asc(), TaskModel.id.asc())
            )
            return [_to_entity(task) for task in session.scalars(stmt)]

    def find_instance(self, template_id: int, due_date: date) -> Optional[TaskEntity]:
        with self._session() as session:
            task = session.scalar(
                select(TaskModel).where(
                    TaskModel.recurring_parent_id == template_id,
                    TaskModel.due_date == due_date,
                )
            )
            return _to_entity(task) if task else None

    def has_open_instance(self, template_id: int) -> bool:
        with self._session() as session:
            found = session.scalar(
                select(TaskModel.id)
                .where(
                    TaskModel.recurring_parent_id == template_id,
                    TaskModel.status.notin_([STATUS_DONE, STATUS_ARCHIVED]),
                )
                .limit(1)
            )
            return found is not None

    def latest_completed_instance(self, template_id: int) -> Optional[TaskEntity]:
        with self._session() as session:
            task = session.scalar(
                select(TaskModel)
                .where(
                    TaskModel.recurring_parent_id == template_id,
                    TaskModel.status == STATUS_DONE,
                    TaskModel.completed_at.is_not(None),
                )
                .order_by(TaskModel.completed_at.desc(), TaskModel.id.desc())
                .limit(1)
            )
            return _to_entity(task) if task else None

    def list_subtasks(self, parent_id: int) -> list[TaskEntity]:
        with self._session() as session:
            stmt = (
                select(TaskModel)
                .where(TaskModel.parent_task_id == parent_id)
                .order_by(TaskModel.created_at.asc(), TaskModel.id.asc())
                .execution_options(populate_existing=True)
            )
            return [_to_entity(task) for task in session.scalars(stmt)]

    def update_subtasks(
        self,
        parent_id: int,
        data: dict,
        statuses: Iterable[TaskStatus | str] | None = None,
    ) -> int:
        """Bulk-update the direct subtasks of ``parent_id``, optionally only those in ``statuses``."""
        stmt = update(TaskModel).where(TaskModel.parent_task_id == parent_id)
        if statuses is not None:
            stmt = stmt.where(TaskModel.status.in_([str(status) for status in statuses]))
        with self._session() as session:
            result = session.execute(
                stmt.values(**_normalize(data)).execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0

    def delete_future_instances(self, template_id: int, today: date) -> int:
        """Delete instances due after ``today`` (or never scheduled) together with their subtasks."""
        future = select(TaskModel.id).where(
            TaskModel.recurring_parent_id == template_id,
            or_(TaskModel.due_date.is_(None), TaskModel.due_date > today),
        )
        with self._session() as session:
            future_ids = list(session.scalars(future))
            if not future_ids:
                return 0
            session.execute(
                delete(TaskModel)
                .where(TaskModel.parent_task_id.in_(future_ids))
                .execution_options(synchronize_session="fetch")
            )
            result = session.execute(
                delete(TaskModel)
                .where(TaskModel.id.in_(future_ids))
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0

    def detach_instances(self, template_id: int) -> int:
        """Turn the remaining instances of a template into ordinary tasks."""
        with self._session() as session:
            result = session.execute(
                update(TaskModel)
                .where(TaskModel.recurring_parent_id == template_id)
                .values(**DETACHED_RECURRENCE)
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0
