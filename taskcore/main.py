from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime

import click

from taskcore.domain.entities import TaskEntity
from taskcore.domain.enums import TaskStatus
from taskcore.domain.errors import TaskCoreError
from taskcore.infra.db import init_db
from taskcore.infra.logging import setup_logging
from taskcore.infra.repository import TaskRepository
from taskcore.services.task_service import TaskService


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _emit(payload: dict) -> None:
    click.echo(json.dumps(payload, default=_json_default, sort_keys=True))


def _task_summary(task: TaskEntity) -> dict:
    return {
        "id": task.id,
        "uid": task.uid,
        "name": task.name,
        "status": task.status.value,
        "due_date": task.due_date,
        "recurring_parent_id": task.recurring_parent_id,
    }


def _service() -> TaskService:
    return TaskService(TaskRepository())


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
@click.option("--no-log-file", is_flag=True, help="Log to the console only.")
def main(log_level: str | None, no_log_file: bool) -> None:
    """Recurring task generation and status changes."""
    setup_logging(level=log_level, log_to_file=not no_log_file)


@main.command("init-db")
def init_db_command() -> None:
    """Check the database connection and create missing tables."""
    try:
        init_db(create_tables=True)
    except Exception as exc:  # noqa: BLE001
        raise click.ClickException(f"Database error: {exc}") from exc
    _emit({"ok": True})


@main.command()
@click.option("--user-id", type=int, required=True)
@click.option("--horizon", type=click.IntRange(min=0), default=None, help="Days ahead to generate.")
def generate(user_id: int, horizon: int | None) -> None:
    """Generate missing recurring instances for one user."""
    try:
        created = _service().ensure_recurring_tasks(user_id, horizon_days=horizon)
    except TaskCoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit({"ok": True, "created": [_task_summary(task) for task in created]})


@main.command()
@click.argument("task_id", type=int)
@click.option("--count", type=click.IntRange(min=1), default=5, show_default=True)
def preview(task_id: int, count: int) -> None:
    """Show the next occurrence dates of a recurring task."""
    try:
        dates = _service().upcoming_occurrences(task_id, count=count)
    except TaskCoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit({"ok": True, "task_id": task_id, "occurrences": dates})


@main.command("set-status")
@click.argument("task_id", type=int)
@click.argument("status", type=click.Choice([status.value for status in TaskStatus]))
@click.option("--actor", "actor_user_id", type=int, required=True)
def set_status(task_id: int, status: str, actor_user_id: int) -> None:
    """Change a task's status and run the completion cascade."""
    try:
        result = _service().apply_status_change(task_id, status, actor_user_id)
    except TaskCoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(
        {
            "ok": True,
            "task": _task_summary(result.task),
            "cascaded_changes": [asdict(change) for change in result.cascaded_changes],
            "warnings": result.warnings,
            "next_task": _task_summary(result.next_task) if result.next_task else None,
        }
    )


if __name__ == "__main__":
    main()
