from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError

from taskcore.domain import recurrence
from taskcore.domain.clock import local_date
from taskcore.domain.entities import TaskEntity
from taskcore.domain.enums import RecurrenceType, TaskStatus
from taskcore.domain.errors import InvalidRecurrenceRule
from taskcore.domain.recurrence import RecurrenceRule
from taskcore.infra.repository import TaskRepository

logger = logging.getLogger(__name__)

# safety cap on candidates walked per template in one run
MAX_INSTANCES_PER_RUN = 366


class RecurrenceMaterializer:
    """Creates dated instances for recurring templates.

    Callers are expected to hold the user's generation lock; the existence
    check per due date keeps repeated runs idempotent either way.
    """

    def __init__(self, repo: TaskRepository) -> None:
        self._repo = repo

    def materialize(self, user_id: int, horizon_days: int, today: date, zone: ZoneInfo) -> list[TaskEntity]:
        horizon_end = today + timedelta(days=max(horizon_days, 0))
        created: list[TaskEntity] = []
        for template in self._repo.list_templates(user_id, today):
            try:
                rule = recurrence.rule_from_task(template)
            except InvalidRecurrenceRule as exc:
                logger.warning("Skipping template %s with invalid recurrence rule: %s", template.id, exc)
                continue
            if rule is None:
                continue
            try:
                if rule.completion_based:
                    instance = self.materialize_completion_based(template, rule, today, zone)
                    if instance:
                        created.append(instance)
                else:
                    created.extend(self.materialize_schedule(template, rule, today, horizon_end))
            except IntegrityError:
                # a writer outside the generation lock inserted the same due date;
                # this template's batch was rolled back and the next run picks it up
                logger.warning("Duplicate instance for template %s, batch rolled back", template.id)

        if created:
            logger.info("Generated %d recurring instance(s) for user %s", len(created), user_id)
        return created

    def materialize_schedule(
        self,
        template: TaskEntity,
        rule: RecurrenceRule,
        today: date,
        horizon_end: date,
    ) -> list[TaskEntity]:
        created: list[TaskEntity] = []
        watermark = template.last_generated_date
        with self._repo.transaction() as repo:
            for due in self._scheduled_dates(template, rule, today, horizon_end):
                instance = self._create_instance(repo, template, due)
                if instance:
                    created.append(instance)
                watermark = due
            if watermark != template.last_generated_date:
                repo.update_task(template.id, {"last_generated_date": watermark})
        return created

    def materialize_completion_based(
        self,
        template: TaskEntity,
        rule: RecurrenceRule,
        today: date,
        zone: ZoneInfo,
    ) -> TaskEntity | None:
        """Keep exactly one open instance; the next one is dated from the last completion."""
        with self._repo.transaction() as repo:
            if repo.has_open_instance(template.id):
                return None
            last_done = repo.latest_completed_instance(template.id)
            if last_done is None:
                due = recurrence.first_occurrence(rule, max(template.due_date or today, today))
            else:
                anchor = local_date(last_done.completed_at, zone)
                # finished early: count from the due date it was finished for
                if last_done.due_date is not None and last_done.due_date > anchor:
                    anchor = last_done.due_date
                due = recurrence.next_due_date(rule, anchor)
            while due is not None and repo.find_instance(template.id, due):
                due = recurrence.next_due_date(rule, due)
            if due is None:
                return None
            instance = self._create_instance(repo, template, due)
            repo.update_task(template.id, {"last_generated_date": due})
            return instance

    def _scheduled_dates(
        self,
        template: TaskEntity,
        rule: RecurrenceRule,
        today: date,
        horizon_end: date,
    ) -> Iterator[date]:
        if template.last_generated_date is not None:
            candidate = recurrence.next_due_date(rule, template.last_generated_date)
        else:
            candidate = recurrence.first_occurrence(rule, template.due_date or today)
        # catch up past occurrences without breaking the cadence
        while candidate is not None and candidate < today:
            candidate = recurrence.next_due_date(rule, candidate)

        produced = 0
        while candidate is not None and candidate <= horizon_end:
            if produced >= MAX_INSTANCES_PER_RUN:
                logger.warning("Template %s hit the per-run instance cap at %s", template.id, candidate)
                return
            yield candidate
            produced += 1
            candidate = recurrence.next_due_date(rule, candidate)

    def _create_instance(self, repo: TaskRepository, template: TaskEntity, due: date) -> TaskEntity | None:
        if repo.find_instance(template.id, due):
            return None
        return repo.create_task(_instance_data(template, due))


def _instance_data(template: TaskEntity, due: date) -> dict:
    return {
        "user_id": template.user_id,
        "name": template.name,
        "note": template.note,
        "priority": template.priority,
        "due_date": due,
        "status": TaskStatus.NOT_STARTED.value,
        "recurring_parent_id": template.id,
        "recurrence_type": RecurrenceType.NONE.value,
        "completion_based": False,
    }
