"""Narrow Job Store interface consumed by the scheduler, monitor and services."""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

from coursegen.engine.models import (
    JobActionView,
    JobCreate,
    JobStatus,
    JobView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskView,
)

# Columns a status write may touch besides ``status`` itself.
MUTABLE_TASK_FIELDS = frozenset(
    {
        "output_data",
        "error_message",
        "error_details",
        "error_severity",
        "error_category",
        "is_recoverable",
        "current_retry_count",
        "run_after",
        "claim_token",
        "started_at",
        "finished_at",
    },
)


class StoreUnavailableError(RuntimeError):
    """The backing database could not serve the request."""


class JobNotFoundError(LookupError):
    """No job with the requested id exists."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobStore(Protocol):
    """Persistence operations the engine needs; safe to call from many threads."""

    def create_job(self, payload: JobCreate) -> JobView: ...

    def get_job(self, job_id: str) -> JobView | None: ...

    def list_jobs(
        self,
        *,
        statuses: Collection[JobStatus] | None = None,
        limit: int = 50,
    ) -> list[JobView]: ...

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Collection[JobStatus] | None = None,
        error_message: str | None = None,
    ) -> bool: ...

    def update_job_progress(self, job_id: str, percent: int) -> None: ...

    def increment_recovery_attempts(self, job_id: str) -> int: ...

    def record_job_action(
        self,
        job_id: str,
        action_type: str,
        details: Mapping[str, Any] | None = None,
    ) -> None: ...

    def list_job_actions(
        self,
        job_id: str,
        *,
        action_type: str | None = None,
    ) -> list[JobActionView]: ...

    def create_tasks(self, job_id: str, tasks: Sequence[TaskCreate]) -> int: ...

    def get_task(self, job_id: str, task_id: str) -> TaskView | None: ...

    def get_tasks(
        self,
        job_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[TaskView]: ...

    def claim_tasks(
        self,
        job_id: str,
        task_ids: Sequence[str],
        *,
        expected: Collection[TaskStatus],
    ) -> list[TaskView]: ...

    def compare_and_set_task_status(
        self,
        job_id: str,
        task_id: str,
        expected: TaskStatus | Collection[TaskStatus],
        new_status: TaskStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> bool: ...

    def update_task_fields(
        self,
        job_id: str,
        task_id: str,
        status: TaskStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> bool: ...

    def set_task_status(self, job_id: str, task_id: str, status: TaskStatus) -> bool: ...

    def promote_due_retries(self, job_id: str, *, now: datetime | None = None) -> int: ...

    def reset_stale_running_tasks(
        self,
        job_id: str,
        *,
        started_before: datetime,
        reason: str,
    ) -> list[str]: ...

    def cancel_open_tasks(self, job_id: str) -> int: ...

    def fail_open_tasks(self, job_id: str, *, reason: str) -> int: ...

    def delete_tasks(self, job_id: str) -> int: ...

    def list_task_events(self, job_id: str, *, limit: int = 100) -> list[TaskEventView]: ...

    def get_cached_content(self, cache_key: str) -> dict[str, Any] | None: ...

    def put_cached_content(
        self,
        cache_key: str,
        *,
        task_type: str,
        content: Mapping[str, Any],
        ttl_seconds: float,
    ) -> None: ...
