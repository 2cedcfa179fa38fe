"""Shared fixtures.

DATABASE_URL must exist before taskcore.config is imported; each test then
gets its own file-backed SQLite database.
"""
from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from taskcore.infra import models  # noqa: F401
from taskcore.infra.db import Base
from taskcore.infra.locks import GenerationLock
from taskcore.infra.repository import TaskRepository
from taskcore.services.task_service import TaskService

# Wednesday
NOW = datetime(2026, 3, 11, 9, 0)
TODAY = NOW.date()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tasks.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def repo(session_factory) -> TaskRepository:
    return TaskRepository(session_factory)


@pytest.fixture
def lock(session_factory) -> GenerationLock:
    return GenerationLock(session_factory, wait_seconds=5, stale_seconds=300)


@pytest.fixture
def service(repo, lock) -> TaskService:
    return TaskService(repo, lock=lock, timezone_resolver=lambda _user_id: "UTC", horizon_days=7)


@pytest.fixture
def make_task(repo):
    def _make(**fields):
        data = {"user_id": 1, "name": "Task"}
        data.update(fields)
        return repo.create_task(data)

    return _make
