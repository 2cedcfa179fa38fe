from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from taskcore import main as cli


@pytest.fixture
def runner(service, monkeypatch) -> CliRunner:
    monkeypatch.setattr(cli, "_service", lambda: service)
    return CliRunner()


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(cli.main, ["--no-log-file", *args])


def test_generate_reports_created_instances(runner, make_task) -> None:
    template = make_task(recurrence_type="daily")

    result = _invoke(runner, "generate", "--user-id", "1", "--horizon", "3")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert len(payload["created"]) == 4
    assert {task["recurring_parent_id"] for task in payload["created"]} == {template.id}


def test_set_status_returns_cascade(runner, make_task) -> None:
    parent = make_task()
    sub = make_task(parent_task_id=parent.id)

    result = _invoke(runner, "set-status", str(sub.id), "done", "--actor", "1")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["task"]["status"] == "done"
    assert payload["cascaded_changes"] == [
        {"task_id": parent.id, "edge": "parent", "old_status": "not_started", "new_status": "done"}
    ]
    assert payload["warnings"] == []


def test_set_status_on_template_fails(runner, make_task) -> None:
    template = make_task(recurrence_type="daily")

    result = _invoke(runner, "set-status", str(template.id), "done", "--actor", "1")

    assert result.exit_code == 1
    assert "recurring template" in result.output


def test_set_status_rejects_unknown_status(runner, make_task) -> None:
    task = make_task()

    result = _invoke(runner, "set-status", str(task.id), "finished", "--actor", "1")

    assert result.exit_code == 2


def test_preview_lists_dates(runner, make_task) -> None:
    template = make_task(recurrence_type="weekly", recurrence_weekday=1)

    result = _invoke(runner, "preview", str(template.id), "--count", "2")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["task_id"] == template.id
    assert len(payload["occurrences"]) == 2


def test_preview_missing_task(runner) -> None:
    result = _invoke(runner, "preview", "404")

    assert result.exit_code == 1
    assert "Task 404 not found" in result.output
