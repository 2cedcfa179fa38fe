from __future__ import annotations

import logging
from datetime import date, datetime
from zoneinfo import ZoneInfo

from taskcore.config import SETTINGS
from taskcore.domain import recurrence
from taskcore.domain.clock import TimezoneResolver, local_today, resolve_zone, utcnow
from taskcore.domain.entities import StatusChangeResult, TaskEntity
from taskcore.domain.enums import RecurrenceType, TaskStatus
from taskcore.domain.errors import InvalidRecurrenceRule, InvalidStatusChange, TaskNotFound
from taskcore.domain.recurrence import RULE_FIELDS
from taskcore.infra.locks import GenerationLock
from taskcore.infra.repository import TaskRepository

from .cascade import CompletionCascade
from .materializer import RecurrenceMaterializer

logger = logging.getLogger(__name__)

# edits to these on a template are copied into regenerated instances
INHERITED_FIELDS = ("name", "priority", "note")
STATUS_FIELDS = ("status", "completed_at")
REOPEN_STATUSES = (TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS)


def _default_timezone(_user_id: int) -> str:
    return SETTINGS.default_timezone


class TaskService:
    def __init__(
        self,
        repo: TaskRepository,
        lock: GenerationLock | None = None,
        timezone_resolver: TimezoneResolver | None = None,
        horizon_days: int | None = None,
    ) -> None:
        self._repo = repo
        self._lock = lock or GenerationLock()
        self._timezone_resolver = timezone_resolver or _default_timezone
        self._horizon_days = SETTINGS.horizon_days if horizon_days is None else horizon_days
        self._materializer = RecurrenceMaterializer(repo)
        self._cascade = CompletionCascade(repo, self._materializer, self._lock)

    def get_task(self, task_id: int) -> TaskEntity | None:
        return self._repo.get_task(task_id)

    def ensure_recurring_tasks(
        self,
        user_id: int,
        horizon_days: int | None = None,
        now: datetime | None = None,
    ) -> list[TaskEntity]:
        """Make sure every recurring template of the user has instances up to the horizon.

        Idempotent: a second call with no template edits in between creates
        nothing. Raises LockTimeout when another generation for the same user
        holds the lock for too long.
        """
        horizon = self._horizon_days if horizon_days is None else horizon_days
        zone = self._zone(user_id)
        today = local_today(zone, now)
        return self._lock.with_user_lock(
            user_id,
            lambda: self._materializer.materialize(user_id, horizon, today, zone),
        )

    def apply_status_change(
        self,
        task_id: int,
        new_status: TaskStatus | str,
        actor_user_id: int,
        now: datetime | None = None,
    ) -> StatusChangeResult:
        """The only sanctioned way to change a task's status.

        The status write commits first. Parent/subtask propagation and
        next-instance generation follow as best-effort side effects whose
        failures come back as warnings rather than exceptions.
        """
        now = now or utcnow()
        try:
            target = TaskStatus(new_status)
        except ValueError:
            raise InvalidStatusChange(f"Unknown status {new_status!r}") from None

        task = self._require(task_id)
        _check_transition(task, target)
        if task.status == target:
            return StatusChangeResult(task=task)

        updated = self._repo.update_task(
            task_id,
            {
                "status": target.value,
                "completed_at": now if target == TaskStatus.DONE else None,
            },
        )
        logger.info("Task %s moved %s -> %s by user %s", task_id, task.status, target, actor_user_id)

        if TaskStatus.DONE not in (task.status, target):
            return StatusChangeResult(task=updated)

        changes, warnings, next_task = self._cascade.run(updated, task.status, now, self._zone(actor_user_id))
        return StatusChangeResult(
            task=updated,
            cascaded_changes=changes,
            warnings=warnings,
            next_task=next_task,
        )

    def toggle_completion(
        self,
        task_id: int,
        actor_user_id: int,
        now: datetime | None = None,
    ) -> StatusChangeResult:
        task = self._require(task_id)
        if task.is_done:
            target = TaskStatus.IN_PROGRESS if task.note else TaskStatus.NOT_STARTED
        else:
            target = TaskStatus.DONE
        return self.apply_status_change(task_id, target, actor_user_id, now)

    def create_task(self, data: dict) -> TaskEntity:
        values = dict(data)
        if "completed_at" in values:
            raise InvalidStatusChange("completed_at is managed by status changes")
        _validate_recurrence(values, values)
        status = TaskStatus(values.get("status", TaskStatus.NOT_STARTED))
        values["status"] = status.value
        if status == TaskStatus.DONE:
            values["completed_at"] = utcnow()
        return self._repo.create_task(values)

    def update_task(self, task_id: int, data: dict, now: datetime | None = None) -> TaskEntity:
        """Edit task fields other than status.

        Changing a template's rule or the fields its instances inherit drops
        the still-future instances and resets the watermark, so the next
        generation run recreates them under the new settings.
        """
        blocked = [name for name in STATUS_FIELDS if name in data]
        if blocked:
            raise InvalidStatusChange(f"{', '.join(blocked)} can only change through apply_status_change")

        task = self._require(task_id)
        values = dict(data)
        merged = {name: getattr(task, name) for name in (*RULE_FIELDS, "due_date", "parent_task_id", "recurring_parent_id")}
        merged.update(values)
        _validate_recurrence(merged, values)

        if not task.is_template or not self._regenerates(task, values):
            return self._repo.update_task(task_id, values)

        today = local_today(self._zone(task.user_id), now)
        with self._repo.transaction() as repo:
            if merged.get("recurrence_type") != RecurrenceType.NONE.value:
                removed = repo.delete_future_instances(task_id, today)
                values["last_generated_date"] = None
                logger.info("Template %s changed, dropped %d future instance(s)", task_id, removed)
            return repo.update_task(task_id, values)

    def update_template_from_instance(
        self,
        instance_id: int,
        rule_fields: dict,
        now: datetime | None = None,
    ) -> TaskEntity:
        instance = self._require(instance_id)
        if not instance.is_instance:
            raise InvalidRecurrenceRule(f"Task {instance_id} is not a recurring instance")
        unknown = set(rule_fields) - set(RULE_FIELDS)
        if unknown:
            raise InvalidRecurrenceRule(f"Not recurrence fields: {', '.join(sorted(unknown))}")
        return self.update_task(instance.recurring_parent_id, rule_fields, now)

    def delete_task(self, task_id: int, actor_user_id: int | None = None, now: datetime | None = None) -> None:
        """Delete a task; a template takes its future instances along and detaches the past ones."""
        task = self._require(task_id)
        zone = self._zone(actor_user_id if actor_user_id is not None else task.user_id)
        today = local_today(zone, now)
        with self._repo.transaction() as repo:
            removed = repo.delete_future_instances(task_id, today)
            detached = repo.detach_instances(task_id)
            repo.delete_task(task_id)
        if removed or detached:
            logger.info(
                "Deleted template %s: removed %d future instance(s), detached %d past instance(s)",
                task_id,
                removed,
                detached,
            )

    def upcoming_occurrences(self, task_id: int, count: int = 5, start: date | None = None) -> list[date]:
        task = self._require(task_id)
        template = task
        if task.is_instance:
            template = self._require(task.recurring_parent_id)
        rule = recurrence.rule_from_task(template)
        if rule is None:
            return []
        if start is None:
            start = local_today(self._zone(template.user_id))
        return recurrence.upcoming_occurrences(rule, start, count)

    def _require(self, task_id: int) -> TaskEntity:
        task = self._repo.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _zone(self, user_id: int) -> ZoneInfo:
        return resolve_zone(self._timezone_resolver(user_id))

    @staticmethod
    def _regenerates(task: TaskEntity, values: dict) -> bool:
        for name in (*RULE_FIELDS, *INHERITED_FIELDS):
            if name in values and values[name] != getattr(task, name):
                return True
        return False


def _check_transition(task: TaskEntity, target: TaskStatus) -> None:
    if task.status == target:
        return
    if task.is_template and target == TaskStatus.DONE:
        raise InvalidStatusChange(f"Task {task.id} is a recurring template; complete its instances instead")
    if task.status == TaskStatus.ARCHIVED:
        raise InvalidStatusChange(f"Task {task.id} is archived")
    if task.status == TaskStatus.DONE and target == TaskStatus.ARCHIVED:
        raise InvalidStatusChange(f"Task {task.id} is done; reopen it before archiving")
    if task.status == TaskStatus.DONE and target not in REOPEN_STATUSES:
        raise InvalidStatusChange(f"Task {task.id} is done; it can only reopen to {', '.join(REOPEN_STATUSES)}")


def _validate_recurrence(fields: dict, values: dict) -> None:
    raw_type = fields.get("recurrence_type") or RecurrenceType.NONE.value
    if isinstance(raw_type, RecurrenceType):
        raw_type = raw_type.value
    if raw_type != RecurrenceType.NONE.value:
        if fields.get("recurring_parent_id") is not None:
            raise InvalidRecurrenceRule("A recurring instance cannot carry its own recurrence rule")
        if fields.get("parent_task_id") is not None:
            raise InvalidRecurrenceRule("Subtasks cannot recur")
    if any(name in values for name in RULE_FIELDS) or "due_date" in values:
        recurrence.validate_rule_fields(fields, fields.get("due_date"))
