"""Per-user serialization of recurring instance generation.

Two layers: a keyed table of in-process locks so threads of one worker queue
up cheaply, and a lease row in ``generation_locks`` so separate worker
processes sharing the database exclude each other as well.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterator, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from taskcore.config import SETTINGS
from taskcore.domain.clock import utcnow
from taskcore.domain.errors import LockTimeout

from .db import SessionLocal
from .models import GenerationLockModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_SECONDS = 0.05


class KeyedLockTable:
    """Lazily created locks keyed by user id, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._refcounts: dict[int, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def acquire(self, key: int, timeout: float) -> bool:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refcounts[key] = self._refcounts.get(key, 0) + 1
        acquired = lock.acquire(timeout=max(timeout, 0))
        if not acquired:
            self._unref(key)
        return acquired

    def release(self, key: int) -> None:
        with self._guard:
            lock = self._locks[key]
        lock.release()
        self._unref(key)

    def _unref(self, key: int) -> None:
        with self._guard:
            remaining = self._refcounts[key] - 1
            if remaining:
                self._refcounts[key] = remaining
            else:
                del self._refcounts[key]
                del self._locks[key]


def _worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"[:64]


class GenerationLock:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        wait_seconds: float | None = None,
        stale_seconds: float | None = None,
        local_locks: KeyedLockTable | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._wait_seconds = SETTINGS.lock_wait_seconds if wait_seconds is None else wait_seconds
        self._stale_seconds = SETTINGS.lock_stale_seconds if stale_seconds is None else stale_seconds
        self._local = local_locks or KeyedLockTable()
        self.worker_id = _worker_id()

    def with_user_lock(self, user_id: int, fn: Callable[[], T]) -> T:
        with self.hold(user_id):
            return fn()

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        started = time.monotonic()
        if not self._local.acquire(user_id, self._wait_seconds):
            raise LockTimeout(user_id, time.monotonic() - started)
        try:
            self._acquire_lease(user_id, started)
            try:
                yield
            finally:
                self._release_lease(user_id)
        finally:
            self._local.release(user_id)

    def _acquire_lease(self, user_id: int, started: float) -> None:
        while True:
            if self._try_insert(user_id) or self._try_take_over(user_id):
                return
            waited = time.monotonic() - started
            if waited >= self._wait_seconds:
                raise LockTimeout(user_id, waited)
            time.sleep(min(POLL_INTERVAL_SECONDS, self._wait_seconds - waited))

    def _try_insert(self, user_id: int) -> bool:
        with self._session_factory() as session:
            session.add(GenerationLockModel(user_id=user_id, locked_at=utcnow(), locked_by=self.worker_id))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def _try_take_over(self, user_id: int) -> bool:
        with self._session_factory() as session:
            lease = session.get(GenerationLockModel, user_id)
            if lease is None:
                return False
            now = utcnow()
            if now - lease.locked_at < timedelta(seconds=self._stale_seconds):
                return False
            previous_owner, previous_at = lease.locked_by, lease.locked_at
            result = session.execute(
                update(GenerationLockModel)
                .where(
                    GenerationLockModel.user_id == user_id,
                    GenerationLockModel.locked_by == previous_owner,
                    GenerationLockModel.locked_at == previous_at,
                )
                .values(locked_at=now, locked_by=self.worker_id)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount != 1:
                return False
        logger.warning(
            "Generation lock for user %s held by %s since %s looks abandoned, taking it over",
            user_id,
            previous_owner,
            previous_at,
        )
        return True

    def _release_lease(self, user_id: int) -> None:
        with self._session_factory() as session:
            result = session.execute(
                delete(GenerationLockModel)
                .where(
                    GenerationLockModel.user_id == user_id,
                    GenerationLockModel.locked_by == self.worker_id,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount != 1:
                logger.warning("Generation lock for user %s was no longer owned by %s on release", user_id, self.worker_id)
