"""SQLite job store for generation jobs and tasks."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from coursegen.engine.models import (
    OPEN_TASK_STATUSES,
    TERMINAL_JOB_STATUSES,
    TERMINAL_TASK_STATUSES,
    ErrorCategory,
    ErrorSeverity,
    JobActionView,
    JobCreate,
    JobStatus,
    JobView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskType,
    TaskView,
)
from coursegen.engine.store import MUTABLE_TASK_FIELDS, JobNotFoundError, StoreUnavailableError
from coursegen.storage.alembic_runner import upgrade_head
from coursegen.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import (
    ContentCacheEntry,
    GenerationJob,
    GenerationJobAction,
    GenerationTask,
    GenerationTaskEvent,
)

logger = logging.getLogger(__name__)


class JobRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every method opens its own short session, so one instance is shared by the
    scheduler thread pool. Status changes are conditional single-statement
    updates; ``rowcount`` tells whether the caller won.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(f"Job store unavailable: {error.orig}") from error

    # Jobs

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        now = utc_now()
        job_id = payload.job_id or uuid4().hex
        with self._session() as session:
            row = GenerationJob(
                job_id=job_id,
                user_id=payload.user_id,
                user_role=payload.user_role,
                title=payload.title,
                status=JobStatus.QUEUED.value,
                progress_percent=0,
                recovery_attempts=0,
                request_json=json.dumps(payload.request_data, ensure_ascii=False, sort_keys=True),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_action(
                session=session,
                job_id=job_id,
                action_type="created",
                details={"user_id": payload.user_id, "title": payload.title},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.get(GenerationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        statuses: Collection[JobStatus] | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """Most recently created jobs first."""

        with self._session() as session:
            statement = select(GenerationJob)
            if statuses:
                statement = statement.where(
                    col(GenerationJob.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(
                statement.order_by(col(GenerationJob.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Collection[JobStatus] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a job to ``status``, optionally only from one of ``expected``."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == JobStatus.PROCESSING:
            values["started_at"] = func.coalesce(col(GenerationJob.started_at), now)
            values["finished_at"] = None
            values["error_message"] = None
        if status in TERMINAL_JOB_STATUSES:
            values["finished_at"] = now
        if status == JobStatus.COMPLETED:
            values["progress_percent"] = 100
        if status == JobStatus.QUEUED:
            values["finished_at"] = None
        if error_message is not None:
            values["error_message"] = error_message

        with self._session() as session:
            statement = sa_update(GenerationJob).where(col(GenerationJob.job_id) == job_id)
            if expected is not None:
                statement = statement.where(
                    col(GenerationJob.status).in_([item.value for item in expected]),
                )
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_action(
                session=session,
                job_id=job_id,
                action_type=f"status_{status.value}",
                details={"error_message": error_message} if error_message else {},
            )
            session.commit()
            return True

    def update_job_progress(self, job_id: str, percent: int) -> None:
        clamped = max(0, min(100, int(percent)))
        with self._session() as session:
            session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == job_id)
                .values(progress_percent=clamped, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def increment_recovery_attempts(self, job_id: str) -> int:
        """Atomically bump the recovery counter and return the new value."""

        with self._session() as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == job_id)
                .values(
                    recovery_attempts=col(GenerationJob.recovery_attempts) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(job_id)
            session.commit()
            row = session.get(GenerationJob, job_id)
            assert row is not None
            session.refresh(row)
            return row.recovery_attempts

    def record_job_action(
        self,
        job_id: str,
        action_type: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        with self._session() as session:
            self._add_action(
                session=session,
                job_id=job_id,
                action_type=action_type,
                details=dict(details or {}),
            )
            session.commit()

    def list_job_actions(
        self,
        job_id: str,
        *,
        action_type: str | None = None,
    ) -> list[JobActionView]:
        with self._session() as session:
            statement = select(GenerationJobAction).where(GenerationJobAction.job_id == job_id)
            if action_type is not None:
                statement = statement.where(GenerationJobAction.action_type == action_type)
            rows = session.exec(
                statement.order_by(
                    col(GenerationJobAction.created_at).asc(),
                    col(GenerationJobAction.id).asc(),
                ),
            ).all()
            return [
                JobActionView(
                    action_type=row.action_type,
                    details=json.loads(row.details_json) if row.details_json else {},
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    # Tasks

    def create_tasks(self, job_id: str, tasks: Sequence[TaskCreate]) -> int:
        """Insert tasks not yet present for the job; returns the number inserted."""

        now = utc_now()
        with self._session() as session:
            existing = set(
                session.exec(
                    select(GenerationTask.task_id).where(GenerationTask.job_id == job_id),
                ).all(),
            )
            inserted = 0
            for task in tasks:
                if task.task_id in existing:
                    continue
                existing.add(task.task_id)
                session.add(
                    GenerationTask(
                        job_id=job_id,
                        task_id=task.task_id,
                        task_type=task.task_type.value,
                        status=TaskStatus.PENDING.value,
                        execution_priority=task.execution_priority,
                        dependencies_json=json.dumps(list(task.dependencies)),
                        current_retry_count=0,
                        max_retry_count=task.max_retry_count,
                        input_json=json.dumps(task.input_data, ensure_ascii=False, sort_keys=True),
                        is_recoverable=True,
                        created_at=now,
                        updated_at=now,
                    ),
                )
                inserted += 1
            if inserted:
                self._touch_job(session, job_id)
            session.commit()
            return inserted

    def get_task(self, job_id: str, task_id: str) -> TaskView | None:
        with self._session() as session:
            row = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.task_id == task_id,
                ),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def get_tasks(
        self,
        job_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[TaskView]:
        """Tasks of a job in priority order, optionally filtered by status."""

        with self._session() as session:
            statement = select(GenerationTask).where(GenerationTask.job_id == job_id)
            if statuses:
                statement = statement.where(
                    col(GenerationTask.status).in_([status.value for status in statuses]),
                )
            statement = statement.order_by(
                col(GenerationTask.execution_priority).asc(),
                col(GenerationTask.created_at).asc(),
                col(GenerationTask.task_id).asc(),
            )
            return [_to_task_view(row) for row in session.exec(statement).all()]

    def claim_tasks(
        self,
        job_id: str,
        task_ids: Sequence[str],
        *,
        expected: Collection[TaskStatus],
    ) -> list[TaskView]:
        """Move a batch to ``running`` in one conditional update.

        Only rows still in one of ``expected`` are taken; each claim is stamped
        with a fresh token and the winners are read back by that token.
        """

        if not task_ids:
            return []
        now = utc_now()
        claim_token = uuid4().hex
        with self._session() as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id).in_(list(task_ids)),
                    col(GenerationTask.status).in_([status.value for status in expected]),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    claim_token=claim_token,
                    started_at=to_db_datetime(now),
                    finished_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount == 0:
                session.rollback()
                return []
            claimed = session.exec(
                select(GenerationTask)
                .where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.claim_token == claim_token,
                )
                .order_by(
                    col(GenerationTask.execution_priority).asc(),
                    col(GenerationTask.task_id).asc(),
                ),
            ).all()
            for row in claimed:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    task_id=row.task_id,
                    event_type="claimed",
                    status_from=None,
                    status_to=TaskStatus.RUNNING,
                    details={"claim_token": claim_token, "retry_count": row.current_retry_count},
                )
            self._touch_job(session, job_id)
            session.commit()
            return [_to_task_view(row) for row in claimed]

    def compare_and_set_task_status(
        self,
        job_id: str,
        task_id: str,
        expected: TaskStatus | Collection[TaskStatus],
        new_status: TaskStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """Atomic status transition; False when the task is not in ``expected``."""

        expected_statuses = [expected] if isinstance(expected, TaskStatus) else list(expected)
        values = _task_values(new_status, fields)
        with self._session() as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status).in_([status.value for status in expected_statuses]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                task_id=task_id,
                event_type=new_status.value,
                status_from=expected_statuses[0] if len(expected_statuses) == 1 else None,
                status_to=new_status,
                details=_event_details(fields),
            )
            self._touch_job(session, job_id)
            session.commit()
            return True

    def update_task_fields(
        self,
        job_id: str,
        task_id: str,
        status: TaskStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """Field update that skips the expected-status check, for when the CAS path failed.

        Terminal rows are never rewritten; ``False`` means the task already settled.
        """

        values = _task_values(status, fields)
        with self._session() as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id) == task_id,
                    _not_terminal(),
                )
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def set_task_status(self, job_id: str, task_id: str, status: TaskStatus) -> bool:
        """Status-only write; the last line of the fallback chain."""

        with self._session() as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id) == task_id,
                    _not_terminal(),
                )
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def promote_due_retries(self, job_id: str, *, now: datetime | None = None) -> int:
        """Move ``retrying`` tasks whose backoff elapsed to ``queued``."""

        current = to_db_datetime(now or utc_now())
        with self._session() as session:
            due = session.exec(
                select(GenerationTask.task_id).where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.status == TaskStatus.RETRYING.value,
                    or_(
                        col(GenerationTask.run_after).is_(None),
                        col(GenerationTask.run_after) <= current,
                    ),
                ),
            ).all()
            if not due:
                return 0
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id).in_(list(due)),
                    col(GenerationTask.status) == TaskStatus.RETRYING.value,
                )
                .values(status=TaskStatus.QUEUED.value, updated_at=current),
            )
            for task_id in due:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    task_id=task_id,
                    event_type="requeued",
                    status_from=TaskStatus.RETRYING,
                    status_to=TaskStatus.QUEUED,
                    details={},
                )
            session.commit()
            return int(result.rowcount)

    def reset_stale_running_tasks(
        self,
        job_id: str,
        *,
        started_before: datetime,
        reason: str,
    ) -> list[str]:
        """Return ``running`` tasks started before the cutoff to ``pending``."""

        cutoff = to_db_datetime(started_before)
        with self._session() as session:
            stale = session.exec(
                select(GenerationTask.task_id).where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.status == TaskStatus.RUNNING.value,
                    or_(
                        col(GenerationTask.started_at).is_(None),
                        col(GenerationTask.started_at) < cutoff,
                    ),
                ),
            ).all()
            reset: list[str] = []
            for task_id in stale:
                result = session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.job_id) == job_id,
                        col(GenerationTask.task_id) == task_id,
                        col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        started_at=None,
                        claim_token=None,
                        error_message=reason,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    continue
                reset.append(task_id)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    task_id=task_id,
                    event_type="reset",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.PENDING,
                    details={"reason": reason},
                )
            session.commit()
            return reset

    def cancel_open_tasks(self, job_id: str) -> int:
        """Cancel every non-terminal task.

        Running tasks are cancelled too; their late results then lose the
        ``running -> X`` compare-and-set and are dropped.
        """

        return self._close_open_tasks(
            job_id,
            from_statuses=OPEN_TASK_STATUSES | {TaskStatus.RUNNING},
            new_status=TaskStatus.CANCELLED,
            error_message=None,
        )

    def fail_open_tasks(self, job_id: str, *, reason: str) -> int:
        """Fail every non-terminal task, including ones still marked running."""

        return self._close_open_tasks(
            job_id,
            from_statuses=OPEN_TASK_STATUSES | {TaskStatus.RUNNING},
            new_status=TaskStatus.FAILED,
            error_message=reason,
        )

    def delete_tasks(self, job_id: str) -> int:
        with self._session() as session:
            result = session.exec(
                sa_delete(GenerationTask).where(
                    col(GenerationTask.job_id) == job_id,
                ),
            )
            self._touch_job(session, job_id)
            session.commit()
            return int(result.rowcount)

    def list_task_events(self, job_id: str, *, limit: int = 100) -> list[TaskEventView]:
        """Most recent task events of a job, oldest first."""

        with self._session() as session:
            rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.job_id == job_id)
                .order_by(
                    col(GenerationTaskEvent.created_at).desc(),
                    col(GenerationTaskEvent.id).desc(),
                )
                .limit(limit),
            ).all()
            return [
                TaskEventView(
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    details=json.loads(row.details_json) if row.details_json else {},
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in reversed(rows)
            ]

    # Content cache

    def get_cached_content(self, cache_key: str) -> dict[str, Any] | None:
        """Unexpired cached content for ``cache_key``; counts the hit."""

        now = utc_now()
        with self._session() as session:
            row = session.get(ContentCacheEntry, cache_key)
            if row is None or to_utc_aware_datetime(row.expires_at) <= now:
                return None
            row.hit_count += 1
            row.last_hit_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            return json.loads(row.content_json)

    def put_cached_content(
        self,
        cache_key: str,
        *,
        task_type: str,
        content: Mapping[str, Any],
        ttl_seconds: float,
    ) -> None:
        now = utc_now()
        expires_at = to_db_datetime(now + timedelta(seconds=ttl_seconds))
        content_json = json.dumps(dict(content), ensure_ascii=False, sort_keys=True)
        with self._session() as session:
            row = session.get(ContentCacheEntry, cache_key)
            if row is None:
                row = ContentCacheEntry(
                    cache_key=cache_key,
                    task_type=task_type,
                    content_json=content_json,
                    hit_count=0,
                    expires_at=expires_at,
                    created_at=to_db_datetime(now),
                )
            else:
                row.content_json = content_json
                row.expires_at = expires_at
            session.add(row)
            session.commit()

    def _close_open_tasks(
        self,
        job_id: str,
        *,
        from_statuses: Collection[TaskStatus],
        new_status: TaskStatus,
        error_message: str | None,
    ) -> int:
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": new_status.value,
            "claim_token": None,
            "finished_at": now,
            "updated_at": now,
        }
        if error_message is not None:
            values["error_message"] = error_message
            values["is_recoverable"] = True
        with self._session() as session:
            rows = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    col(GenerationTask.status).in_([status.value for status in from_statuses]),
                ),
            ).all()
            previous = {row.task_id: TaskStatus(row.status) for row in rows}
            if not previous:
                return 0
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.job_id) == job_id,
                    col(GenerationTask.task_id).in_(list(previous)),
                    col(GenerationTask.status).in_([status.value for status in from_statuses]),
                )
                .values(**values),
            )
            for task_id, status_from in previous.items():
                self._add_event(
                    session=session,
                    job_id=job_id,
                    task_id=task_id,
                    event_type=new_status.value,
                    status_from=status_from,
                    status_to=new_status,
                    details={"reason": error_message} if error_message else {},
                )
            self._touch_job(session, job_id)
            session.commit()
            return int(result.rowcount)

    def _touch_job(self, session: Session, job_id: str) -> None:
        session.exec(
            sa_update(GenerationJob)
            .where(col(GenerationJob.job_id) == job_id)
            .values(updated_at=to_db_datetime(utc_now())),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                job_id=job_id,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=utc_now(),
            ),
        )

    def _add_action(
        self,
        *,
        session: Session,
        job_id: str,
        action_type: str,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationJobAction(
                job_id=job_id,
                action_type=action_type,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _not_terminal() -> Any:
    return col(GenerationTask.status).notin_([status.value for status in TERMINAL_TASK_STATUSES])


def _task_values(status: TaskStatus, fields: Mapping[str, Any] | None) -> dict[str, Any]:
    values: dict[str, Any] = {"status": status.value, "updated_at": to_db_datetime(utc_now())}
    for key, value in (fields or {}).items():
        if key not in MUTABLE_TASK_FIELDS:
            raise ValueError(f"Task field is not writable: {key}")
        if key == "output_data":
            values["output_json"] = (
                json.dumps(value, ensure_ascii=False, sort_keys=True) if value is not None else None
            )
        elif isinstance(value, datetime):
            values[key] = to_db_datetime(value)
        elif isinstance(value, Enum):
            values[key] = value.value
        else:
            values[key] = value
    return values


def _event_details(fields: Mapping[str, Any] | None) -> dict[str, object]:
    details: dict[str, object] = {}
    for key in ("error_category", "error_severity", "current_retry_count", "run_after"):
        value = (fields or {}).get(key)
        if value is None:
            continue
        details[key] = value.value if isinstance(value, Enum) else value
    return details


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        user_role=row.user_role,
        title=row.title,
        status=JobStatus(row.status),
        progress_percent=row.progress_percent,
        recovery_attempts=row.recovery_attempts,
        error_message=row.error_message,
        request_data=json.loads(row.request_json) if row.request_json else {},
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    return TaskView(
        job_id=row.job_id,
        task_id=row.task_id,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        execution_priority=row.execution_priority,
        dependencies=tuple(json.loads(row.dependencies_json or "[]")),
        current_retry_count=row.current_retry_count,
        max_retry_count=row.max_retry_count,
        input_data=json.loads(row.input_json) if row.input_json else {},
        output_data=json.loads(row.output_json) if row.output_json else None,
        error_message=row.error_message,
        error_details=row.error_details,
        error_severity=ErrorSeverity(row.error_severity) if row.error_severity else None,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        is_recoverable=row.is_recoverable,
        claim_token=row.claim_token,
        run_after=_optional_aware(row.run_after),
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
