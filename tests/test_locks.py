from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from taskcore.domain.clock import utcnow
from taskcore.domain.errors import LockTimeout
from taskcore.infra.locks import GenerationLock, KeyedLockTable
from taskcore.infra.models import GenerationLockModel


def _insert_lease(session_factory, user_id: int, owner: str, age: timedelta) -> None:
    with session_factory() as session:
        session.add(GenerationLockModel(user_id=user_id, locked_at=utcnow() - age, locked_by=owner))
        session.commit()


def _lease_owner(session_factory, user_id: int) -> str | None:
    with session_factory() as session:
        return session.scalar(select(GenerationLockModel.locked_by).where(GenerationLockModel.user_id == user_id))


def test_keyed_table_drops_released_keys() -> None:
    table = KeyedLockTable()

    assert table.acquire(1, timeout=1)
    assert table.acquire(2, timeout=1)
    assert len(table) == 2
    table.release(1)
    table.release(2)

    assert len(table) == 0


def test_keyed_table_times_out_on_held_key() -> None:
    table = KeyedLockTable()
    table.acquire(1, timeout=1)
    outcome: list[bool] = []

    waiter = threading.Thread(target=lambda: outcome.append(table.acquire(1, timeout=0.1)))
    waiter.start()
    waiter.join()

    assert outcome == [False]
    table.release(1)
    assert len(table) == 0


def test_lease_row_exists_only_while_held(session_factory) -> None:
    lock = GenerationLock(session_factory, wait_seconds=1, stale_seconds=300)

    with lock.hold(7):
        assert _lease_owner(session_factory, 7) == lock.worker_id

    assert _lease_owner(session_factory, 7) is None


def test_different_users_do_not_block_each_other(session_factory) -> None:
    lock = GenerationLock(session_factory, wait_seconds=0.2, stale_seconds=300)

    with lock.hold(1):
        assert lock.with_user_lock(2, lambda: "ran") == "ran"


def test_fresh_foreign_lease_times_out(session_factory) -> None:
    _insert_lease(session_factory, 1, "other-host:1:abcd", timedelta(seconds=1))
    lock = GenerationLock(session_factory, wait_seconds=0.2, stale_seconds=300)

    with pytest.raises(LockTimeout) as excinfo:
        lock.with_user_lock(1, lambda: None)

    assert excinfo.value.user_id == 1
    assert _lease_owner(session_factory, 1) == "other-host:1:abcd"


def test_stale_lease_is_taken_over(session_factory, caplog) -> None:
    _insert_lease(session_factory, 1, "crashed:1:dead", timedelta(minutes=10))
    lock = GenerationLock(session_factory, wait_seconds=1, stale_seconds=300)

    with caplog.at_level(logging.WARNING, logger="taskcore.infra.locks"):
        assert lock.with_user_lock(1, lambda: "ran") == "ran"

    assert "looks abandoned" in caplog.text
    assert _lease_owner(session_factory, 1) is None


def test_same_user_waits_in_process(session_factory) -> None:
    lock = GenerationLock(session_factory, wait_seconds=0.2, stale_seconds=300)
    errors: list[Exception] = []

    def contender() -> None:
        try:
            lock.with_user_lock(1, lambda: None)
        except LockTimeout as exc:
            errors.append(exc)

    with lock.hold(1):
        thread = threading.Thread(target=contender)
        thread.start()
        thread.join()

    assert len(errors) == 1


def test_lease_released_when_work_fails(session_factory) -> None:
    lock = GenerationLock(session_factory, wait_seconds=1, stale_seconds=300)

    def fail() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        lock.with_user_lock(1, fail)

    assert _lease_owner(session_factory, 1) is None
    assert lock.with_user_lock(1, lambda: "again") == "again"
