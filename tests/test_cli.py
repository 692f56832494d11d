from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import allure
import pytest
from click.testing import CliRunner

from coursegen.main import coursegen

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _fast_cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COURSEGEN_SCHEDULER_BATCH_PAUSE_SECONDS", "0")
    monkeypatch.setenv("COURSEGEN_SCHEDULER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("COURSEGEN_CONTENT_GENERATOR", "echo")


def _write_outline(tmp_path: Path, outline: Any) -> Path:
    path = tmp_path / "outline.json"
    path.write_text(json.dumps(outline), "utf-8")
    return path


def _job_id(output: str) -> str:
    match = re.search(r"job_id=(\w+)", output)
    assert match is not None, output
    return match.group(1)


def test_submit_run_and_inspect_flow(tmp_path: Path, outline: dict[str, Any]) -> None:
    runner = CliRunner()
    db_path = tmp_path / "coursegen.db"
    outline_path = _write_outline(tmp_path, outline)

    submit = runner.invoke(
        coursegen,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--outline",
            str(outline_path),
            "--user-id",
            "u1",
            "--role",
            "teacher",
            "--run",
        ],
    )
    assert submit.exit_code == 0, submit.output
    assert "title=Python Basics status=queued tasks=16" in submit.output
    job_id = _job_id(submit.output)
    assert f"Job {job_id}: status=completed progress=100% completed=16/16 failed=0" in (
        submit.output
    )

    listed = runner.invoke(coursegen, ["jobs", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert f"{job_id} status=completed" in listed.output

    tasks = runner.invoke(
        coursegen,
        ["jobs", "tasks", "--db-path", str(db_path), "--job-id", job_id, "--status", "completed"],
    )
    assert tasks.exit_code == 0, tasks.output
    assert "Tasks: 16" in tasks.output
    assert "exam-py101-0 type=exam status=completed" in tasks.output

    inspect = runner.invoke(
        coursegen,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id],
    )
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "section: completed=4" in inspect.output

    health = runner.invoke(
        coursegen,
        ["jobs", "health", "--db-path", str(db_path), "--job-id", job_id],
    )
    assert health.exit_code == 0, health.output
    assert "Health: healthy" in health.output
    assert "Completed: yes" in health.output


def test_cancel_and_pause_commands(tmp_path: Path, outline: dict[str, Any]) -> None:
    runner = CliRunner()
    db_path = tmp_path / "coursegen.db"
    outline_path = _write_outline(tmp_path, outline)
    submit = runner.invoke(
        coursegen,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--outline",
            str(outline_path),
            "--user-id",
            "u1",
        ],
    )
    job_id = _job_id(submit.output)
    ref = ["--db-path", str(db_path), "--job-id", job_id]

    paused = runner.invoke(coursegen, ["jobs", "pause", *ref])
    cancelled = runner.invoke(coursegen, ["jobs", "cancel", *ref])
    cancelled_again = runner.invoke(coursegen, ["jobs", "cancel", *ref])
    run = runner.invoke(coursegen, ["jobs", "run", *ref])

    assert f"Job paused: {job_id}" in paused.output
    assert f"Job cancelled: {job_id}" in cancelled.output
    assert "Job not cancelled" in cancelled_again.output
    assert run.exit_code == 0, run.output
    assert "stop=already_terminal" in run.output


def test_usage_reports_limits(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        coursegen,
        ["jobs", "usage", "--db-path", str(tmp_path / "c.db"), "--user-id", "u1"],
    )

    assert result.exit_code == 0, result.output
    assert "Usage: user=u1 role=student" in result.output
    assert "concurrent: 0/1 (0%)" in result.output


def test_errors_surface_as_click_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "coursegen.db"
    not_an_object = _write_outline(tmp_path, ["not", "an", "object"])

    bad_outline = runner.invoke(
        coursegen,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--outline",
            str(not_an_object),
            "--user-id",
            "u1",
        ],
    )
    missing = runner.invoke(
        coursegen,
        ["jobs", "run", "--db-path", str(db_path), "--job-id", "nope"],
    )

    assert bad_outline.exit_code == 1
    assert "must contain a JSON object" in bad_outline.output
    assert missing.exit_code == 1
    assert "nope" in missing.output
