"""Use-case services for generation jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from coursegen.config import Settings
from coursegen.engine.circuit_breaker import (
    JOB_STORE,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerSnapshot,
)
from coursegen.engine.content import (
    CachingContentPipeline,
    ContentGenerator,
    ContentPipeline,
    EchoContentGenerator,
    GeneratorContentPipeline,
    HttpContentGenerator,
)
from coursegen.engine.graph import build_tasks, parse_outline
from coursegen.engine.models import (
    JobActionView,
    JobCreate,
    JobHealthStatus,
    JobStatus,
    JobView,
    RecoveryAction,
    RecoveryResult,
    TaskStatus,
    TaskStatusCounts,
)
from coursegen.engine.monitor import ResilienceMonitor
from coursegen.engine.rate_limiter import (
    DEFAULT_ROLE,
    GlobalLimits,
    RateLimiter,
    RateLimitExceededError,
)
from coursegen.engine.retry import RetryPolicy
from coursegen.engine.scheduler import JobScheduler, SchedulerRunSummary
from coursegen.engine.store import JobNotFoundError, JobStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 3600

_REGENERATE_FIELDS: dict[str, Any] = {
    "current_retry_count": 0,
    "output_data": None,
    "error_message": None,
    "error_details": None,
    "error_severity": None,
    "error_category": None,
    "is_recoverable": True,
    "claim_token": None,
    "run_after": None,
    "started_at": None,
    "finished_at": None,
}


@dataclass(slots=True)
class JobSummary:
    """Operator view of one job: status, per-status counts and recent actions."""

    job: JobView
    counts: TaskStatusCounts
    counts_by_type: dict[str, dict[str, int]] = field(default_factory=dict)
    recent_actions: list[JobActionView] = field(default_factory=list)


class GenerationService:
    """Coordinates submission, execution and operator control of jobs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        scheduler: JobScheduler,
        monitor: ResilienceMonitor,
        rate_limiter: RateLimiter,
        breakers: CircuitBreakerRegistry,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.monitor = monitor
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self._on_close = on_close

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()

    def submit_job(
        self,
        outline: Mapping[str, Any],
        *,
        user_id: str,
        role: str = DEFAULT_ROLE,
    ) -> JobView:
        """Validate the outline, then create the job and its full task graph."""

        course = parse_outline(outline)
        tasks = build_tasks(course)
        job = self.store.create_job(
            JobCreate(
                user_id=user_id,
                user_role=role,
                title=course.title,
                request_data=course.to_payload(),
            ),
        )
        created = self.store.create_tasks(job.job_id, tasks)
        logger.info(
            "Submitted job %s for user %s: %d task(s) for course %s",
            job.job_id,
            user_id,
            created,
            course.course_id,
        )
        return job

    def run_job(self, job_id: str, *, role: str | None = None) -> SchedulerRunSummary:
        """Admit the job through the rate limiter and run it to a stop.

        Raises ``RateLimitExceededError`` without touching the job when
        admission is denied. The admission slot is released however the
        run ends.
        """

        job = self._require_job(job_id)
        with self.rate_limiter.admitted(job.user_id, role or job.user_role):
            return self.scheduler.run_job(job_id)

    def get_job_health(self, job_id: str) -> JobHealthStatus:
        return self.monitor.check_job_health(job_id)

    def attempt_recovery(self, job_id: str) -> RecoveryResult:
        """Recover once; a resumed job is driven again by the scheduler."""

        result = self.monitor.attempt_recovery(job_id)
        if result.action != RecoveryAction.RESUMED:
            return result
        try:
            summary = self.run_job(job_id)
        except RateLimitExceededError as error:
            logger.warning("Resumed job %s not restarted: %s", job_id, error)
            result.details["rerun"] = f"deferred: {error.decision.reason}"
            return result
        result.details["rerun"] = summary.stop_reason
        return result

    def regenerate_task(self, job_id: str, task_id: str) -> bool:
        """Move a failed task back to ``pending`` with a clean slate.

        A completed job is re-opened to ``queued``; failed and cancelled jobs
        are left alone and the call returns False.
        """

        job = self.store.get_job(job_id)
        if job is None or job.status in {JobStatus.FAILED, JobStatus.CANCELLED}:
            return False
        if not self.store.compare_and_set_task_status(
            job_id,
            task_id,
            TaskStatus.FAILED,
            TaskStatus.PENDING,
            _REGENERATE_FIELDS,
        ):
            return False

        self.store.record_job_action(job_id, "regenerate_task", {"task_id": task_id})
        if job.status == JobStatus.COMPLETED:
            self.store.update_job_status(
                job_id,
                JobStatus.QUEUED,
                expected={JobStatus.COMPLETED},
            )
        counts = TaskStatusCounts.from_tasks(self.store.get_tasks(job_id))
        if counts.total:
            self.store.update_job_progress(job_id, round(counts.completed / counts.total * 100))
        logger.info("Task %s/%s reset for regeneration", job_id, task_id)
        return True

    def cancel_job(self, job_id: str) -> bool:
        """Cancel the job and every task that has not finished."""

        if not self.store.update_job_status(
            job_id,
            JobStatus.CANCELLED,
            expected={JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED},
        ):
            return False
        cancelled = self.store.cancel_open_tasks(job_id)
        logger.info("Cancelled job %s (%d task(s))", job_id, cancelled)
        return True

    def pause_job(self, job_id: str) -> bool:
        """Ask the scheduler to stop after the current batch."""

        paused = self.store.update_job_status(
            job_id,
            JobStatus.PAUSED,
            expected={JobStatus.QUEUED, JobStatus.PROCESSING},
        )
        if paused:
            logger.info("Paused job %s", job_id)
        return paused

    def job_summary(self, job_id: str, *, action_limit: int = 10) -> JobSummary:
        job = self._require_job(job_id)
        tasks = self.store.get_tasks(job_id)
        by_type: dict[str, dict[str, int]] = {}
        for task in tasks:
            bucket = by_type.setdefault(task.task_type.value, {})
            bucket[task.status.value] = bucket.get(task.status.value, 0) + 1
        actions = self.store.list_job_actions(job_id)
        return JobSummary(
            job=job,
            counts=TaskStatusCounts.from_tasks(tasks),
            counts_by_type=by_type,
            recent_actions=actions[-action_limit:],
        )

    def breaker_snapshots(self) -> list[CircuitBreakerSnapshot]:
        return self.breakers.snapshots()

    def usage(self, user_id: str, role: str = DEFAULT_ROLE) -> dict[str, Any]:
        return self.rate_limiter.usage(user_id, role)

    def _require_job(self, job_id: str) -> JobView:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


def build_generation_service(
    settings: Settings,
    store: JobStore,
    *,
    generator: ContentGenerator | None = None,
) -> GenerationService:
    """Wire the engine from settings; ``generator`` overrides the configured one."""

    owned_generator: HttpContentGenerator | None = None
    if generator is None:
        if settings.content.generator == "http":
            owned_generator = HttpContentGenerator(
                settings.content.base_url,
                api_key=settings.content.api_key,
                timeout_seconds=settings.content.request_timeout_seconds,
                max_retries=settings.content.max_transport_retries,
            )
            generator = owned_generator
        else:
            generator = EchoContentGenerator()

    pipeline: ContentPipeline = GeneratorContentPipeline(generator)
    if settings.content.cache_enabled:
        pipeline = CachingContentPipeline(
            pipeline,
            store,
            ttl_seconds=settings.content.cache_ttl_days * SECONDS_PER_DAY,
        )

    breaker_settings = settings.breaker
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(
            failure_threshold=breaker_settings.failure_threshold,
            reset_timeout_seconds=breaker_settings.reset_timeout_seconds,
            half_open_max_calls=breaker_settings.half_open_max_calls,
        ),
        overrides={
            JOB_STORE: CircuitBreakerConfig(
                failure_threshold=breaker_settings.store_failure_threshold,
                reset_timeout_seconds=breaker_settings.reset_timeout_seconds,
                half_open_max_calls=breaker_settings.store_half_open_max_calls,
            ),
        },
    )
    monitor = ResilienceMonitor(store, settings.monitor)
    scheduler = JobScheduler(
        store=store,
        pipeline=pipeline,
        breakers=breakers,
        retry_policy=RetryPolicy(
            base_delay_seconds=settings.retry.base_delay_seconds,
            multiplier=settings.retry.multiplier,
            max_delay_seconds=settings.retry.max_delay_seconds,
        ),
        monitor=monitor,
        settings=settings.scheduler,
    )
    return GenerationService(
        store=store,
        scheduler=scheduler,
        monitor=monitor,
        rate_limiter=RateLimiter(
            GlobalLimits(
                max_concurrent_jobs=settings.rate_limit.max_concurrent_jobs,
                max_jobs_per_minute=settings.rate_limit.max_jobs_per_minute,
            ),
        ),
        breakers=breakers,
        on_close=owned_generator.close if owned_generator is not None else None,
    )
