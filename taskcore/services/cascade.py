from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from taskcore.domain import recurrence
from taskcore.domain.clock import local_today
from taskcore.domain.entities import CascadeChange, TaskEntity
from taskcore.domain.enums import OPEN_STATUSES, CascadeEdge, TaskStatus
from taskcore.domain.errors import CascadeSideEffectFailed
from taskcore.infra.locks import GenerationLock
from taskcore.infra.repository import TaskRepository

from .materializer import RecurrenceMaterializer

logger = logging.getLogger(__name__)


class CompletionCascade:
    """Side effects of a task entering or leaving ``done``.

    Propagation is one level deep in each direction. A parent completed or
    reopened because of its subtask never propagates further, and subtasks
    changed because of their parent are bulk-updated without running the
    cascade for each of them.
    """

    def __init__(
        self,
        repo: TaskRepository,
        materializer: RecurrenceMaterializer,
        lock: GenerationLock,
    ) -> None:
        self._repo = repo
        self._materializer = materializer
        self._lock = lock

    def run(
        self,
        task: TaskEntity,
        old_status: TaskStatus,
        now: datetime,
        zone: ZoneInfo,
    ) -> tuple[list[CascadeChange], list[str], TaskEntity | None]:
        """Apply the cascade for a status change that is already committed.

        Returns the cascaded changes, warnings for side effects that failed,
        and the next recurring instance when one was generated.
        """
        changes: list[CascadeChange] = []
        warnings: list[str] = []
        completed = [task] if task.is_done else []

        try:
            with self._repo.transaction() as repo:
                structural, cascaded_done = self._propagate(repo, task, old_status, now)
            changes.extend(structural)
            completed.extend(cascaded_done)
        except Exception as exc:  # noqa: BLE001
            edge = CascadeEdge.PARENT if task.is_subtask else CascadeEdge.SUBTASK
            logger.exception("Cascade along %s edge failed for task %s", edge.value, task.id)
            warnings.append(str(CascadeSideEffectFailed(edge, task.id, str(exc))))

        next_task = None
        for done_task in completed:
            if not done_task.is_instance:
                continue
            try:
                instance = self._generate_next(done_task, now, zone)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Generating the next instance after task %s failed", done_task.id)
                warnings.append(str(CascadeSideEffectFailed(CascadeEdge.TEMPLATE, done_task.id, str(exc))))
                continue
            if instance is not None:
                next_task = instance
                changes.append(CascadeChange(instance.id, CascadeEdge.TEMPLATE, None, instance.status))

        if changes:
            logger.info("Status change of task %s cascaded to %d task(s)", task.id, len(changes))
        return changes, warnings, next_task

    def _propagate(
        self,
        repo: TaskRepository,
        task: TaskEntity,
        old_status: TaskStatus,
        now: datetime,
    ) -> tuple[list[CascadeChange], list[TaskEntity]]:
        changes: list[CascadeChange] = []
        cascaded_done: list[TaskEntity] = []

        if task.is_done:
            if task.parent_task_id is not None:
                completed = self._complete_parent_if_finished(repo, task.parent_task_id, now)
                if completed is not None:
                    previous, parent = completed
                    changes.append(CascadeChange(parent.id, CascadeEdge.PARENT, previous, parent.status))
                    cascaded_done.append(parent)
            changes.extend(self._complete_subtasks(repo, task.id, now))
        elif old_status == TaskStatus.DONE:
            if task.parent_task_id is not None:
                reopened = self._reopen_parent(repo, task.parent_task_id)
                if reopened is not None:
                    changes.append(reopened)
            changes.extend(self._reopen_subtasks(repo, task.id))

        return changes, cascaded_done

    def _complete_parent_if_finished(
        self,
        repo: TaskRepository,
        parent_id: int,
        now: datetime,
    ) -> tuple[TaskStatus, TaskEntity] | None:
        siblings = repo.list_subtasks(parent_id)
        if not siblings or not all(sibling.is_done for sibling in siblings):
            return None
        parent = repo.get_task(parent_id)
        if parent is None or parent.status not in OPEN_STATUSES or parent.is_template:
            return None
        updated = repo.update_task(parent_id, {"status": TaskStatus.DONE.value, "completed_at": now})
        return parent.status, updated

    def _reopen_parent(self, repo: TaskRepository, parent_id: int) -> CascadeChange | None:
        parent = repo.get_task(parent_id)
        if parent is None or not parent.is_done:
            return None
        repo.update_task(parent_id, {"status": TaskStatus.NOT_STARTED.value, "completed_at": None})
        return CascadeChange(parent_id, CascadeEdge.PARENT, TaskStatus.DONE, TaskStatus.NOT_STARTED)

    def _complete_subtasks(self, repo: TaskRepository, parent_id: int, now: datetime) -> list[CascadeChange]:
        targets = [sub for sub in repo.list_subtasks(parent_id) if sub.status in OPEN_STATUSES]
        if not targets:
            return []
        repo.update_subtasks(
            parent_id,
            {"status": TaskStatus.DONE.value, "completed_at": now},
            statuses=OPEN_STATUSES,
        )
        return [CascadeChange(sub.id, CascadeEdge.SUBTASK, sub.status, TaskStatus.DONE) for sub in targets]

    def _reopen_subtasks(self, repo: TaskRepository, parent_id: int) -> list[CascadeChange]:
        targets = [sub for sub in repo.list_subtasks(parent_id) if sub.is_done]
        if not targets:
            return []
        repo.update_subtasks(
            parent_id,
            {"status": TaskStatus.NOT_STARTED.value, "completed_at": None},
            statuses=[TaskStatus.DONE],
        )
        return [
            CascadeChange(sub.id, CascadeEdge.SUBTASK, TaskStatus.DONE, TaskStatus.NOT_STARTED)
            for sub in targets
        ]

    def _generate_next(self, done_task: TaskEntity, now: datetime, zone: ZoneInfo) -> TaskEntity | None:
        template = self._repo.get_task(done_task.recurring_parent_id)
        if template is None or not template.completion_based:
            return None
        rule = recurrence.rule_from_task(template)
        if rule is None:
            return None
        today = local_today(zone, now)
        return self._lock.with_user_lock(
            template.user_id,
            lambda: self._materializer.materialize_completion_based(template, rule, today, zone),
        )
