"""CLI entrypoint for coursegen."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from coursegen import __version__
from coursegen.engine.controllers import (
    JobListCommand,
    JobRefCommand,
    JobRegenerateCommand,
    JobRunCommand,
    JobsCliController,
    JobSubmitCommand,
    JobTasksCommand,
    UsageCommand,
)
from coursegen.engine.models import JobStatus, TaskStatus
from coursegen.engine.rate_limiter import DEFAULT_ROLE, ROLE_LIMITS
from coursegen.engine.store import JobNotFoundError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

ROLE_CHOICE = click.Choice(sorted(ROLE_LIMITS))
DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
JOB_ID_OPTION = click.option("--job-id", required=True, help="Generation job id.")


@click.group()
@click.version_option(version=__version__, prog_name="coursegen")
def coursegen() -> None:
    """Course generation engine CLI."""

    logging.basicConfig(
        level=os.getenv("COURSEGEN_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@coursegen.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("submit")
@DB_PATH_OPTION
@click.option(
    "--outline",
    "outline_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON course outline file.",
)
@click.option("--user-id", required=True, help="Submitting user id.")
@click.option("--role", type=ROLE_CHOICE, default=DEFAULT_ROLE, show_default=True)
@click.option("--run/--no-run", default=False, show_default=True, help="Run the job right away.")
def jobs_submit(
    db_path: Path | None,
    outline_path: Path,
    user_id: str,
    role: str,
    run: bool,
) -> None:
    """Create a job and its task graph from a course outline."""

    _emit(
        lambda: JOBS_CONTROLLER.submit(
            JobSubmitCommand(
                db_path=db_path,
                outline_path=outline_path,
                user_id=user_id,
                role=role,
                run=run,
            ),
        ),
    )


@jobs.command("run")
@DB_PATH_OPTION
@JOB_ID_OPTION
@click.option(
    "--role",
    type=ROLE_CHOICE,
    default=None,
    help="Admission role; defaults to the role the job was submitted with.",
)
def jobs_run(db_path: Path | None, job_id: str, role: str | None) -> None:
    """Run a job until its tasks are finished or it is paused/cancelled."""

    _emit(lambda: JOBS_CONTROLLER.run(JobRunCommand(db_path=db_path, job_id=job_id, role=role)))


@jobs.command("health")
@DB_PATH_OPTION
@JOB_ID_OPTION
def jobs_health(db_path: Path | None, job_id: str) -> None:
    """Classify job health and show the recommended action."""

    _emit(lambda: JOBS_CONTROLLER.health(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("recover")
@DB_PATH_OPTION
@JOB_ID_OPTION
def jobs_recover(db_path: Path | None, job_id: str) -> None:
    """Apply the recommended recovery action once."""

    _emit(lambda: JOBS_CONTROLLER.recover(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("regenerate")
@DB_PATH_OPTION
@JOB_ID_OPTION
@click.option("--task-id", required=True, help="Failed task to regenerate.")
def jobs_regenerate(db_path: Path | None, job_id: str, task_id: str) -> None:
    """Reset a failed task to pending; re-opens a completed job."""

    _emit(
        lambda: JOBS_CONTROLLER.regenerate(
            JobRegenerateCommand(db_path=db_path, job_id=job_id, task_id=task_id),
        ),
    )


@jobs.command("cancel")
@DB_PATH_OPTION
@JOB_ID_OPTION
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job and its unfinished tasks."""

    _emit(lambda: JOBS_CONTROLLER.cancel(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("pause")
@DB_PATH_OPTION
@JOB_ID_OPTION
def jobs_pause(db_path: Path | None, job_id: str) -> None:
    """Pause a job after its current batch."""

    _emit(lambda: JOBS_CONTROLLER.pause(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only list jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List most recent jobs."""

    _emit(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("tasks")
@DB_PATH_OPTION
@JOB_ID_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only list tasks in this status.",
)
def jobs_tasks(db_path: Path | None, job_id: str, status: str | None) -> None:
    """List the tasks of a job in priority order."""

    _emit(
        lambda: JOBS_CONTROLLER.list_tasks(
            JobTasksCommand(db_path=db_path, job_id=job_id, status=status),
        ),
    )


@jobs.command("inspect")
@DB_PATH_OPTION
@JOB_ID_OPTION
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job details, failed tasks, actions and recent task events."""

    _emit(lambda: JOBS_CONTROLLER.inspect(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("usage")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="User id.")
@click.option("--role", type=ROLE_CHOICE, default=DEFAULT_ROLE, show_default=True)
def jobs_usage(db_path: Path | None, user_id: str, role: str) -> None:
    """Show rate-limit usage for a user in this process and breaker states."""

    _emit(
        lambda: JOBS_CONTROLLER.usage(UsageCommand(db_path=db_path, user_id=user_id, role=role)),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (ValueError, TypeError, RuntimeError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coursegen()
