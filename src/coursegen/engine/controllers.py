"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from coursegen.config import Settings
from coursegen.engine.models import JobStatus, TaskStatus
from coursegen.engine.repository import JobRepository
from coursegen.engine.services import GenerationService, build_generation_service


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    outline_path: Path
    user_id: str
    role: str
    run: bool = False


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for running one job to a stop."""

    db_path: Path | None
    job_id: str
    role: str | None = None


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands that act on one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobRegenerateCommand:
    """CLI input for task regeneration."""

    db_path: Path | None
    job_id: str
    task_id: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    job_id: str
    status: str | None


@dataclass(slots=True)
class UsageCommand:
    """CLI input for rate-limit usage report."""

    db_path: Path | None
    user_id: str
    role: str


class JobsCliController:
    """Coordinates submission, execution, recovery and inspection CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        outline = json.loads(command.outline_path.read_text("utf-8"))
        if not isinstance(outline, dict):
            raise ValueError(f"Outline file must contain a JSON object: {command.outline_path}")
        settings = _settings(command.db_path)
        with _service(settings) as service:
            job = service.submit_job(outline, user_id=command.user_id, role=command.role)
            tasks = service.store.get_tasks(job.job_id)
            lines = [
                f"Job submitted: job_id={job.job_id} title={job.title} "
                f"status={job.status.value} tasks={len(tasks)}",
            ]
            if command.run:
                service.run_job(job.job_id)
                lines.extend(_summary_lines(service, job.job_id))
        return lines

    def run(self, command: JobRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            summary = service.run_job(command.job_id, role=command.role)
            lines = [
                "Scheduler summary: "
                f"batches={summary.batches} dispatched={summary.dispatched} "
                f"completed={summary.completed} failed={summary.failed} "
                f"retried={summary.retried} deferred={summary.deferred} "
                f"timed_out={summary.timed_out} recoveries={summary.recoveries} "
                f"stop={summary.stop_reason}",
            ]
            lines.extend(_summary_lines(service, command.job_id))
        return lines

    def health(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            health = service.get_job_health(command.job_id)
        last_activity = health.last_activity.isoformat() if health.last_activity else "-"
        return [
            f"Job: {health.job_id}",
            f"Health: {health.status.value}",
            f"Recommended action: {health.recommended_action.value}",
            f"Message: {health.user_message}",
            f"Progress: {health.progress_percentage}% "
            f"({health.completed_tasks}/{health.total_tasks} completed, "
            f"{health.failed_tasks} failed, {health.running_tasks} running, "
            f"{health.pending_tasks} pending)",
            f"Completed: {'yes' if health.completed else 'no'}",
            f"Last activity: {last_activity} ({int(health.time_since_activity_seconds)}s ago)",
            f"Recovery attempts: {health.recovery_attempts}/{health.max_recovery_attempts} "
            f"auto_recover={'yes' if health.can_auto_recover else 'no'}",
            f"Details: {health.error_details or '-'}",
        ]

    def recover(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            result = service.attempt_recovery(command.job_id)
        lines = [
            f"Recovery: job_id={result.job_id} action={result.action.value} "
            f"success={'yes' if result.success else 'no'}",
            f"Message: {result.message}",
        ]
        for key, value in sorted(result.details.items()):
            lines.append(f"  {key}={value}")
        return lines

    def regenerate(self, command: JobRegenerateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            changed = service.regenerate_task(command.job_id, command.task_id)
        if not changed:
            return [
                f"Task not regenerated: {command.job_id}/{command.task_id} "
                "(task must be failed and the job not failed or cancelled)",
            ]
        return [f"Task reset to pending: {command.job_id}/{command.task_id}"]

    def cancel(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            changed = service.cancel_job(command.job_id)
        if not changed:
            return [f"Job not cancelled (missing or already finished): {command.job_id}"]
        return [f"Job cancelled: {command.job_id}"]

    def pause(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            changed = service.pause_job(command.job_id)
        if not changed:
            return [f"Job not paused (not queued or processing): {command.job_id}"]
        return [f"Job paused: {command.job_id}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        statuses = [JobStatus(command.status.strip().lower())] if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(statuses=statuses, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} progress={job.progress_percent}% "
                f"user={job.user_id} role={job.user_role} "
                f"created_at={job.created_at.isoformat()} title={job.title}",
            )
        return lines

    def list_tasks(self, command: JobTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        statuses = [TaskStatus(command.status.strip().lower())] if command.status else None
        with _repository(settings) as repository:
            tasks = repository.get_tasks(command.job_id, statuses)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            run_after = task.run_after.isoformat() if task.run_after else "-"
            lines.append(
                f"  {task.task_id} type={task.task_type.value} status={task.status.value} "
                f"priority={task.execution_priority} "
                f"retry={task.current_retry_count}/{task.max_retry_count} "
                f"run_after={run_after} deps={','.join(task.dependencies) or '-'}",
            )
        return lines

    def inspect(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            job = service.store.get_job(command.job_id)
            if job is None:
                return [f"Job not found: {command.job_id}"]
            summary = service.job_summary(command.job_id)
            events = service.store.list_task_events(command.job_id, limit=20)
            failed = service.store.get_tasks(command.job_id, [TaskStatus.FAILED])

        lines = [
            f"Job: {job.job_id}",
            f"Title: {job.title}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress_percent}%",
            f"User: {job.user_id} ({job.user_role})",
            f"Recovery attempts: {job.recovery_attempts}",
            f"Error: {job.error_message or '-'}",
            f"Tasks: total={summary.counts.total} pending={summary.counts.pending} "
            f"running={summary.counts.running} completed={summary.counts.completed} "
            f"failed={summary.counts.failed} cancelled={summary.counts.cancelled}",
        ]
        for task_type, counts in sorted(summary.counts_by_type.items()):
            rendered = " ".join(f"{status}={count}" for status, count in sorted(counts.items()))
            lines.append(f"  {task_type}: {rendered}")
        for task in failed:
            category = task.error_category.value if task.error_category else "-"
            lines.append(
                f"  failed {task.task_id} category={category} "
                f"recoverable={'yes' if task.is_recoverable else 'no'} "
                f"message={task.error_message or '-'}",
            )
        lines.append(f"Actions: {len(summary.recent_actions)}")
        for action in summary.recent_actions:
            lines.append(f"  {action.created_at.isoformat()} {action.action_type}")
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.task_id} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def usage(self, command: UsageCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            report = service.usage(command.user_id, command.role)
            breakers = service.breaker_snapshots()

        lines = [f"Usage: user={report['user_id']} role={report['role']}"]
        for window, limit in report["limits"].items():
            lines.append(
                f"  {window}: {report['current'][window]}/{limit} "
                f"({report['percentages'][window]}%)",
            )
        for snapshot in breakers:
            lines.append(
                f"Breaker {snapshot.name}: state={snapshot.state.value} "
                f"failures={snapshot.failure_count}",
            )
        return lines


def _summary_lines(service: GenerationService, job_id: str) -> list[str]:
    summary = service.job_summary(job_id)
    return [
        f"Job {job_id}: status={summary.job.status.value} "
        f"progress={summary.job.progress_percent}% "
        f"completed={summary.counts.completed}/{summary.counts.total} "
        f"failed={summary.counts.failed}",
    ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _service(settings: Settings) -> Iterator[GenerationService]:
    with _repository(settings) as repository:
        service = build_generation_service(settings, repository)
        try:
            yield service
        finally:
            service.close()
