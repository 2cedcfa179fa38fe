from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from taskcore.domain.clock import utcnow

from .db import Base


def new_uid() -> str:
    return uuid.uuid4().hex


class TaskModel(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("recurring_parent_id", "due_date", name="uq_tasks_recurring_parent_due"),
    )

    id = Column(Integer, primary_key=True)
    uid = Column(String(32), nullable=False, unique=True, default=new_uid)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    note = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="not_started", index=True)
    priority = Column(Integer, nullable=False, default=0)
    due_date = Column(Date, nullable=True)
    today = Column(Boolean, nullable=False, default=False)
    parent_task_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True
    )
    recurring_parent_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    recurrence_type = Column(String(20), nullable=False, default="none")
    recurrence_interval = Column(Integer, nullable=False, default=1)
    recurrence_end_date = Column(Date, nullable=True)
    recurrence_weekday = Column(Integer, nullable=True)
    recurrence_month_day = Column(Integer, nullable=True)
    recurrence_week_of_month = Column(Integer, nullable=True)
    completion_based = Column(Boolean, nullable=False, default=False)
    last_generated_date = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)


class GenerationLockModel(Base):
    """Cross-process lease serializing instance generation for one user."""

    __tablename__ = "generation_locks"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    locked_at = Column(DateTime, nullable=False, default=utcnow)
    locked_by = Column(String(64), nullable=False)
