"""Dependency-aware batch scheduler for one generation job."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from coursegen.config import SchedulerSettings
from coursegen.engine.alerts import AlertKind, log_alert
from coursegen.engine.circuit_breaker import (
    CONTENT_SERVICE,
    JOB_STORE,
    CircuitBreakerRegistry,
    CircuitOpenError,
)
from coursegen.engine.content import ContentPipeline
from coursegen.engine.failure_classifier import classify_failure, sanitize_error_details
from coursegen.engine.graph import blocked_by, ready_tasks
from coursegen.engine.guaranteed_write import (
    GuaranteedWriteError,
    WriteStrategy,
    guaranteed_write,
)
from coursegen.engine.models import (
    SELECTABLE_TASK_STATUSES,
    ErrorCategory,
    HealthStatus,
    JobStatus,
    RecoveryAction,
    TaskStatus,
    TaskStatusCounts,
    TaskView,
)
from coursegen.engine.monitor import ResilienceMonitor
from coursegen.engine.retry import CIRCUIT_OPEN_REASON, RetryPolicy
from coursegen.engine.store import JobNotFoundError, JobStore, StoreUnavailableError
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)

_RECOVERABLE_HEALTH = frozenset({HealthStatus.STALLED, HealthStatus.STUCK, HealthStatus.ABANDONED})


class JobExecutionError(RuntimeError):
    """Job-level failure; the job has been marked failed."""

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} failed: {reason}")


@dataclass(slots=True)
class SchedulerRunSummary:
    """Counters for one ``run_job`` call."""

    job_id: str
    batches: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    timed_out: int = 0
    superseded: int = 0
    recoveries: int = 0
    final_status: JobStatus | None = None
    stop_reason: str = ""


@dataclass(slots=True)
class TaskExecution:
    """Outcome of one dispatched task before it is persisted."""

    task: TaskView
    output: dict[str, Any] | None = None
    error: BaseException | None = None
    timed_out: bool = False
    duration_seconds: float = 0.0


class _Step(str, Enum):
    DISPATCHED = "dispatched"
    IDLE = "idle"
    STOP = "stop"


class JobScheduler:
    """Runs a job's task graph to completion.

    Each iteration re-reads the job (pause/cancel are cooperative), promotes
    retries whose backoff elapsed, claims a batch of ready tasks with one
    conditional update and dispatches it to a fresh thread pool under a hard
    deadline. Results go through ``guaranteed_write``; a task is never left
    ``running`` because a write failed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        pipeline: ContentPipeline,
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        monitor: ResilienceMonitor | None = None,
        settings: SchedulerSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.monitor = monitor
        self.settings = settings or SchedulerSettings()
        self._sleep = sleep
        self._clock = clock

    def run_job(self, job_id: str) -> SchedulerRunSummary:
        """Drive ``job_id`` until every task is terminal or the job stops."""

        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        summary = SchedulerRunSummary(job_id=job_id)
        if job.is_terminal:
            summary.final_status = job.status
            summary.stop_reason = "already_terminal"
            return summary
        if not self.store.update_job_status(
            job_id,
            JobStatus.PROCESSING,
            expected={JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED},
        ):
            current = self.store.get_job(job_id)
            summary.final_status = current.status if current is not None else None
            summary.stop_reason = "not_startable"
            return summary
        logger.info("Starting job %s (%s)", job_id, job.title)
        self._reset_stale_tasks(job_id, self._clock(), reason="Reset at scheduler start")

        consecutive_errors = 0
        idle_polls = 0
        try:
            while True:
                try:
                    step, blocked = self._iterate(job_id, summary)
                except (StoreUnavailableError, CircuitOpenError) as error:
                    consecutive_errors += 1
                    logger.warning(
                        "Scheduler poll for job %s failed (%d/%d): %s",
                        job_id,
                        consecutive_errors,
                        self.settings.max_consecutive_errors,
                        error,
                    )
                    if consecutive_errors >= self.settings.max_consecutive_errors:
                        reason = f"Job store unavailable after {consecutive_errors} attempts"
                        self._fail_job(job_id, reason)
                        raise JobExecutionError(job_id, reason) from error
                    self._sleep(self.settings.poll_interval_seconds)
                    continue
                consecutive_errors = 0

                if step == _Step.STOP:
                    break
                if step == _Step.DISPATCHED:
                    idle_polls = 0
                    self._sleep(self.settings.batch_pause_seconds)
                    continue

                idle_polls = idle_polls + 1 if blocked else 0
                if idle_polls >= self.settings.max_idle_polls:
                    reason = (
                        f"No runnable tasks: {len(blocked)} task(s) blocked by dependencies "
                        f"that cannot complete ({', '.join(blocked[:5])})"
                    )
                    self._fail_job(job_id, reason)
                    raise JobExecutionError(job_id, reason)
                self._sleep(self.settings.poll_interval_seconds)
        except GuaranteedWriteError as error:
            reason = f"Task status could not be persisted: {error}"
            self._fail_job(job_id, reason)
            raise JobExecutionError(job_id, reason) from error

        logger.info(
            "Job %s stopped (%s): completed=%d failed=%d retried=%d deferred=%d",
            job_id,
            summary.stop_reason,
            summary.completed,
            summary.failed,
            summary.retried,
            summary.deferred,
        )
        return summary

    def _iterate(self, job_id: str, summary: SchedulerRunSummary) -> tuple[_Step, list[str]]:
        job = self.store.get_job(job_id)
        if job is None:
            summary.stop_reason = "job_deleted"
            return _Step.STOP, []
        if job.status != JobStatus.PROCESSING:
            summary.final_status = job.status
            summary.stop_reason = job.status.value
            return _Step.STOP, []

        now = self._clock()
        self.store.promote_due_retries(job_id, now=now)
        store_breaker = self.breakers.get(JOB_STORE)
        tasks = store_breaker.call(
            lambda: self.store.get_tasks(job_id),
            is_dependency_failure=lambda error: isinstance(error, StoreUnavailableError),
        )
        statuses = {task.task_id: task.status for task in tasks}
        candidates = [task for task in tasks if _is_due(task, now)]
        batch_limit = min(self.settings.batch_size, self.settings.max_concurrency)
        batch = ready_tasks(candidates, statuses)[:batch_limit]

        if not batch:
            return self._handle_idle(job_id, tasks, summary, now=now)

        claimed = self.store.claim_tasks(
            job_id,
            [task.task_id for task in batch],
            expected=SELECTABLE_TASK_STATUSES,
        )
        if not claimed:
            return _Step.IDLE, []

        summary.batches += 1
        summary.dispatched += len(claimed)
        dependency_outputs = {
            task.task_id: task.output_data for task in tasks if task.output_data is not None
        }
        logger.info(
            "Job %s batch %d: dispatching %s",
            job_id,
            summary.batches,
            ", ".join(task.task_id for task in claimed),
        )
        for execution in self._dispatch(claimed, dependency_outputs):
            self._record(job_id, execution, summary)

        self._update_progress(job_id)
        return _Step.DISPATCHED, []

    def _handle_idle(
        self,
        job_id: str,
        tasks: Sequence[TaskView],
        summary: SchedulerRunSummary,
        *,
        now: datetime,
    ) -> tuple[_Step, list[str]]:
        counts = TaskStatusCounts.from_tasks(tasks)
        if counts.total == 0 or counts.all_terminal:
            self._finalize(job_id, counts, summary)
            return _Step.STOP, []

        if self.monitor is not None:
            health = self.monitor.check_job_health(job_id)
            if health.status in _RECOVERABLE_HEALTH and health.can_auto_recover:
                result = self.monitor.attempt_recovery(job_id)
                summary.recoveries += 1
                if result.action == RecoveryAction.MARKED_FOR_RESTART:
                    summary.final_status = JobStatus.FAILED
                    summary.stop_reason = "restarted_by_recovery"
                    return _Step.STOP, []
                return _Step.IDLE, []

        # Own tasks are never running between batches; one past the deadline is orphaned.
        if self._reset_stale_tasks(job_id, now, reason="Reset after exceeding the task deadline"):
            return _Step.IDLE, []

        waiting = any(
            task.status in {TaskStatus.RUNNING, TaskStatus.RETRYING}
            or (task.status == TaskStatus.QUEUED and not _is_due(task, now))
            for task in tasks
        )
        if waiting:
            return _Step.IDLE, []
        statuses = {task.task_id: task.status for task in tasks}
        blocked = [
            task.task_id
            for task in tasks
            if task.status in SELECTABLE_TASK_STATUSES and blocked_by(task, statuses)
        ]
        return _Step.IDLE, blocked

    def _reset_stale_tasks(self, job_id: str, now: datetime, *, reason: str) -> list[str]:
        cutoff = now - timedelta(seconds=self.settings.task_deadline_seconds)
        reset = self.store.reset_stale_running_tasks(job_id, started_before=cutoff, reason=reason)
        if reset:
            logger.warning(
                "Job %s: returned %d stale running task(s) to pending: %s",
                job_id,
                len(reset),
                ", ".join(reset),
            )
        return reset

    def _dispatch(
        self,
        claimed: Sequence[TaskView],
        dependency_outputs: Mapping[str, dict[str, Any]],
    ) -> list[TaskExecution]:
        deadline = self.settings.task_deadline_seconds
        # A fresh pool per batch: a hung call keeps its thread, not the next batch's slot.
        pool = ThreadPoolExecutor(
            max_workers=max(1, len(claimed)),
            thread_name_prefix="coursegen-task",
        )
        futures: dict[Future[TaskExecution], TaskView] = {}
        try:
            for task in claimed:
                futures[pool.submit(self._execute, task, dependency_outputs, deadline)] = task
            done, _ = wait(futures, timeout=deadline)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        executions: list[TaskExecution] = []
        content_breaker = self.breakers.get(CONTENT_SERVICE)
        for future, task in futures.items():
            if future in done:
                executions.append(future.result())
                continue
            content_breaker.record_failure()
            executions.append(
                TaskExecution(
                    task=task,
                    error=TimeoutError(f"Task execution timeout after {deadline:g} seconds"),
                    timed_out=True,
                    duration_seconds=deadline,
                ),
            )
        return executions

    def _execute(
        self,
        task: TaskView,
        dependency_outputs: Mapping[str, dict[str, Any]],
        deadline: float,
    ) -> TaskExecution:
        started = time.monotonic()
        breaker = self.breakers.get(CONTENT_SERVICE)
        try:
            output = breaker.call(
                lambda: self.pipeline.generate(
                    task,
                    dependency_outputs=dependency_outputs,
                    deadline_seconds=deadline,
                ),
                is_dependency_failure=lambda error: classify_failure(error).counts_toward_breaker,
            )
        except Exception as error:  # noqa: BLE001
            return TaskExecution(
                task=task,
                error=error,
                duration_seconds=time.monotonic() - started,
            )
        return TaskExecution(
            task=task,
            output=output,
            duration_seconds=time.monotonic() - started,
        )

    def _record(self, job_id: str, execution: TaskExecution, summary: SchedulerRunSummary) -> None:
        task = execution.task
        status, fields, counter = self._resolve_outcome(job_id, execution)
        store_breaker = self.breakers.get(JOB_STORE)
        outcome = guaranteed_write(
            f"{job_id}/{task.task_id} -> {status.value}",
            [
                WriteStrategy(
                    "compare_and_set",
                    lambda: self.store.compare_and_set_task_status(
                        job_id,
                        task.task_id,
                        TaskStatus.RUNNING,
                        status,
                        fields,
                    ),
                ),
                WriteStrategy(
                    "field_update",
                    lambda: self.store.update_task_fields(job_id, task.task_id, status, fields),
                ),
                WriteStrategy(
                    "status_only",
                    lambda: self.store.set_task_status(job_id, task.task_id, status),
                ),
            ],
            rounds=self.settings.write_attempts,
            backoff_seconds=self.settings.write_backoff_seconds,
            sleep=self._sleep,
            on_failure=lambda _: store_breaker.record_failure(),
        )
        if not outcome.applied:
            summary.superseded += 1
            logger.info(
                "Dropped %s result for %s/%s: task was changed by another actor",
                status.value,
                job_id,
                task.task_id,
            )
            return
        store_breaker.record_success()
        setattr(summary, counter, getattr(summary, counter) + 1)
        if execution.timed_out:
            summary.timed_out += 1

    def _resolve_outcome(
        self,
        job_id: str,
        execution: TaskExecution,
    ) -> tuple[TaskStatus, dict[str, Any], str]:
        task = execution.task
        now = self._clock()
        if execution.error is None:
            return (
                TaskStatus.COMPLETED,
                {
                    "output_data": execution.output,
                    "finished_at": now,
                    "claim_token": None,
                    "error_message": None,
                    "error_details": None,
                    "error_severity": None,
                    "error_category": None,
                    "is_recoverable": True,
                },
                "completed",
            )

        classification = classify_failure(execution.error)
        error_fields: dict[str, Any] = {
            "error_message": classification.user_message,
            "error_details": sanitize_error_details(execution.error),
            "error_severity": classification.severity,
            "error_category": classification.category,
            "claim_token": None,
        }

        if classification.category == ErrorCategory.CIRCUIT_OPEN:
            return self._defer(job_id, task, error_fields, now)

        if execution.timed_out:
            deadline = self.settings.task_deadline_seconds
            log_alert(
                self.store,
                AlertKind.TIMEOUT,
                job_id,
                f"Task {task.task_id} exceeded its {deadline:g}s deadline",
                task_id=task.task_id,
            )

        breaker_state = self.breakers.get(CONTENT_SERVICE).state
        decision = self.retry_policy.decide(task, classification, breaker_state)
        if decision.reason == CIRCUIT_OPEN_REASON:
            # Retryable with budget left; the breaker tripped while this batch ran.
            return self._defer(job_id, task, error_fields, now)
        if decision.should_retry:
            logger.warning(
                "Task %s/%s failed (%s); retry %d/%d in %.1fs",
                job_id,
                task.task_id,
                classification.category.value,
                task.current_retry_count + 1,
                task.max_retry_count,
                decision.delay_seconds,
            )
            return (
                TaskStatus.RETRYING,
                {
                    **error_fields,
                    "current_retry_count": task.current_retry_count + 1,
                    "run_after": self.retry_policy.next_run_after(now, task.current_retry_count),
                    "started_at": None,
                    "is_recoverable": True,
                },
                "retried",
            )

        logger.warning(
            "Task %s/%s failed permanently (%s, %s): %s",
            job_id,
            task.task_id,
            classification.category.value,
            decision.reason,
            error_fields["error_details"],
        )
        return (
            TaskStatus.FAILED,
            {
                **error_fields,
                "finished_at": now,
                "is_recoverable": classification.retryable,
            },
            "failed",
        )

    def _defer(
        self,
        job_id: str,
        task: TaskView,
        error_fields: dict[str, Any],
        now: datetime,
    ) -> tuple[TaskStatus, dict[str, Any], str]:
        wait_seconds = self.breakers.get(CONTENT_SERVICE).seconds_until_retry()
        logger.warning(
            "Deferring %s/%s for %.1fs: content service circuit is open",
            job_id,
            task.task_id,
            wait_seconds,
        )
        return (
            TaskStatus.QUEUED,
            {
                **error_fields,
                "run_after": now + timedelta(seconds=wait_seconds),
                "started_at": None,
            },
            "deferred",
        )

    def _update_progress(self, job_id: str) -> None:
        counts = TaskStatusCounts.from_tasks(self.store.get_tasks(job_id))
        if counts.total:
            self.store.update_job_progress(job_id, round(counts.completed / counts.total * 100))

    def _finalize(
        self,
        job_id: str,
        counts: TaskStatusCounts,
        summary: SchedulerRunSummary,
    ) -> None:
        self.store.update_job_status(job_id, JobStatus.COMPLETED, expected={JobStatus.PROCESSING})
        summary.final_status = JobStatus.COMPLETED
        summary.stop_reason = "completed"
        logger.info(
            "Job %s completed: %d/%d tasks succeeded, %d failed",
            job_id,
            counts.completed,
            counts.total,
            counts.failed,
        )
        if counts.failed:
            log_alert(
                self.store,
                AlertKind.FAILURE,
                job_id,
                f"Job completed with {counts.failed} failed task(s)",
                failed_tasks=counts.failed,
            )

    def _fail_job(self, job_id: str, reason: str) -> None:
        logger.error("Failing job %s: %s", job_id, reason)
        try:
            self.store.update_job_status(job_id, JobStatus.FAILED, error_message=reason)
            failed = self.store.fail_open_tasks(job_id, reason=reason)
        except StoreUnavailableError as error:
            logger.critical(
                "CRITICAL: could not mark job %s failed (%s); left for the resilience monitor",
                job_id,
                error,
            )
            return
        log_alert(
            self.store,
            AlertKind.CRITICAL_ERROR,
            job_id,
            reason,
            failed_open_tasks=failed,
        )


def _is_due(task: TaskView, now: datetime) -> bool:
    if task.status == TaskStatus.PENDING:
        return True
    if task.status == TaskStatus.QUEUED:
        return task.run_after is None or task.run_after <= now
    return False
