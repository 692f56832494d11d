"""Job health classification and recovery."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Sequence
from datetime import datetime, timedelta

from coursegen.config import MonitorSettings
from coursegen.engine.alerts import AlertKind, log_alert
from coursegen.engine.models import (
    HealthStatus,
    JobHealthStatus,
    JobStatus,
    JobView,
    RecommendedAction,
    RecoveryAction,
    RecoveryResult,
    TaskStatus,
    TaskStatusCounts,
    TaskView,
)
from coursegen.engine.store import JobStore, StoreUnavailableError
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)

RESET_REASON = "Reset by recovery system"
RESTART_REASON = "Restarted by recovery system"

ACTION_MESSAGES: dict[RecommendedAction, str] = {
    RecommendedAction.WAIT: "Generation is progressing normally. Please wait.",
    RecommendedAction.RESUME: (
        "Generation appears to have paused. It can be resumed from where it stopped."
    ),
    RecommendedAction.RESTART: (
        "Generation ran into problems. Restarting it is recommended."
    ),
    RecommendedAction.MANUAL_INTERVENTION: (
        "Generation needs attention from support; automatic recovery was not successful."
    ),
    RecommendedAction.DELETE_AND_RETRY: (
        "This generation was abandoned. Please delete it and start a new one."
    ),
}
COMPLETED_MESSAGE = "Generation completed successfully!"
CANCELLED_MESSAGE = "Generation was cancelled."
PAUSED_MESSAGE = "Generation is paused."
MISSING_MESSAGE = "Generation job not found. Please start a new one."


class ResilienceMonitor:
    """Classifies job health from task state and activity timestamps.

    ``clock`` returns tz-aware UTC; every threshold compares against it, so
    tests can move time forward without touching stored rows.
    """

    def __init__(
        self,
        store: JobStore,
        settings: MonitorSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or MonitorSettings()
        self._clock = clock

    def check_job_health(self, job_id: str) -> JobHealthStatus:
        job = self.store.get_job(job_id)
        now = self._clock()
        if job is None:
            return JobHealthStatus(
                job_id=job_id,
                status=HealthStatus.FAILED,
                last_activity=None,
                time_since_activity_seconds=0.0,
                total_tasks=0,
                completed_tasks=0,
                failed_tasks=0,
                running_tasks=0,
                pending_tasks=0,
                progress_percentage=0,
                completed=False,
                recommended_action=RecommendedAction.DELETE_AND_RETRY,
                user_message=MISSING_MESSAGE,
                can_auto_recover=False,
                recovery_attempts=0,
                max_recovery_attempts=self.settings.max_recovery_attempts,
                error_details="Job not found",
            )
        tasks = self.store.get_tasks(job_id)
        return self.classify(job, tasks, now=now)

    def check_active_jobs(
        self,
        statuses: Collection[JobStatus] = (JobStatus.QUEUED, JobStatus.PROCESSING),
        *,
        limit: int = 100,
    ) -> list[JobHealthStatus]:
        """Sweep non-terminal jobs and alert on the unhealthy ones."""

        reports: list[JobHealthStatus] = []
        for job in self.store.list_jobs(statuses=statuses, limit=limit):
            report = self.classify(job, self.store.get_tasks(job.job_id), now=self._clock())
            if report.status in {HealthStatus.STALLED, HealthStatus.STUCK, HealthStatus.ABANDONED}:
                log_alert(
                    self.store,
                    AlertKind.STALL,
                    job.job_id,
                    f"Job is {report.status.value} after "
                    f"{int(report.time_since_activity_seconds)}s without activity",
                    recommended_action=report.recommended_action.value,
                )
            reports.append(report)
        return reports

    def classify(  # noqa: PLR0911
        self,
        job: JobView,
        tasks: Sequence[TaskView],
        *,
        now: datetime,
    ) -> JobHealthStatus:
        counts = TaskStatusCounts.from_tasks(tasks)
        last_activity = max([job.updated_at, *(task.updated_at for task in tasks)])
        idle_seconds = max(0.0, (now - last_activity).total_seconds())
        attempts_left = job.recovery_attempts < self.settings.max_recovery_attempts
        progress = (
            round((counts.completed + counts.skipped) / counts.total * 100) if counts.total else 0
        )

        def report(
            status: HealthStatus,
            action: RecommendedAction,
            *,
            can_auto_recover: bool,
            message: str | None = None,
            error_details: str | None = None,
        ) -> JobHealthStatus:
            return JobHealthStatus(
                job_id=job.job_id,
                status=status,
                last_activity=last_activity,
                time_since_activity_seconds=idle_seconds,
                total_tasks=counts.total,
                completed_tasks=counts.completed,
                failed_tasks=counts.failed,
                running_tasks=counts.running,
                pending_tasks=counts.pending,
                progress_percentage=100 if job.status == JobStatus.COMPLETED else progress,
                completed=job.status == JobStatus.COMPLETED or counts.all_terminal,
                recommended_action=action,
                user_message=message or ACTION_MESSAGES[action],
                can_auto_recover=can_auto_recover,
                recovery_attempts=job.recovery_attempts,
                max_recovery_attempts=self.settings.max_recovery_attempts,
                error_details=error_details,
            )

        if job.status == JobStatus.COMPLETED:
            return report(
                HealthStatus.HEALTHY,
                RecommendedAction.WAIT,
                can_auto_recover=False,
                message=COMPLETED_MESSAGE,
            )
        if job.status == JobStatus.FAILED:
            return report(
                HealthStatus.FAILED,
                RecommendedAction.RESTART,
                can_auto_recover=attempts_left,
                error_details=job.error_message,
            )
        if job.status == JobStatus.CANCELLED:
            return report(
                HealthStatus.HEALTHY,
                RecommendedAction.WAIT,
                can_auto_recover=False,
                message=CANCELLED_MESSAGE,
            )
        if job.status == JobStatus.PAUSED:
            return report(
                HealthStatus.HEALTHY,
                RecommendedAction.WAIT,
                can_auto_recover=False,
                message=PAUSED_MESSAGE,
            )

        if idle_seconds > self.settings.abandon_after_seconds:
            return report(
                HealthStatus.ABANDONED,
                RecommendedAction.RESTART if attempts_left else RecommendedAction.DELETE_AND_RETRY,
                can_auto_recover=attempts_left,
                error_details=f"No activity for {int(idle_seconds // 60)} minutes",
            )

        stale = self._stale_running_tasks(tasks, now=now)
        if idle_seconds > self.settings.stuck_after_seconds or stale:
            details = (
                f"{len(stale)} task(s) running longer than "
                f"{self.settings.task_timeout_seconds}s: {', '.join(task.task_id for task in stale)}"
                if stale
                else f"No activity for {int(idle_seconds // 60)} minutes"
            )
            return report(
                HealthStatus.STUCK,
                RecommendedAction.RESUME
                if attempts_left
                else RecommendedAction.MANUAL_INTERVENTION,
                can_auto_recover=attempts_left,
                error_details=details,
            )

        if idle_seconds > self.settings.stall_after_seconds:
            return report(
                HealthStatus.STALLED,
                RecommendedAction.RESUME,
                can_auto_recover=attempts_left,
                error_details=f"No activity for {int(idle_seconds // 60)} minutes",
            )

        return report(HealthStatus.HEALTHY, RecommendedAction.WAIT, can_auto_recover=False)

    def attempt_recovery(self, job_id: str) -> RecoveryResult:
        """Apply the recommended recovery action once.

        Healthy jobs are left alone and do not consume an attempt. Otherwise
        the attempt counter is bumped before anything else happens, so a
        crash halfway through still counts against the ceiling.
        """

        health = self.check_job_health(job_id)
        job = self.store.get_job(job_id)
        if job is None:
            return RecoveryResult(
                job_id=job_id,
                success=False,
                action=RecoveryAction.JOB_NOT_FOUND,
                message=MISSING_MESSAGE,
            )
        if health.recommended_action == RecommendedAction.WAIT:
            return RecoveryResult(
                job_id=job_id,
                success=True,
                action=RecoveryAction.NONE,
                message="Job is healthy; no recovery needed.",
                details={"health_status": health.status.value},
            )
        if job.recovery_attempts >= self.settings.max_recovery_attempts:
            log_alert(
                self.store,
                AlertKind.RECOVERY_FAILED,
                job_id,
                "Maximum recovery attempts reached",
                recovery_attempts=job.recovery_attempts,
            )
            return RecoveryResult(
                job_id=job_id,
                success=False,
                action=RecoveryAction.MAX_ATTEMPTS_REACHED,
                message=(
                    f"Maximum recovery attempts ({self.settings.max_recovery_attempts}) "
                    "reached. Manual intervention required."
                ),
                details={"recovery_attempts": job.recovery_attempts},
            )

        attempt = self.store.increment_recovery_attempts(job_id)
        self.store.record_job_action(
            job_id,
            "recovery_attempt",
            {
                "attempt": attempt,
                "health_status": health.status.value,
                "recommended_action": health.recommended_action.value,
            },
        )
        logger.info(
            "Recovery attempt %d for job %s: %s -> %s",
            attempt,
            job_id,
            health.status.value,
            health.recommended_action.value,
        )

        try:
            result = self._dispatch(job_id, health)
        except StoreUnavailableError as error:
            log_alert(
                self.store,
                AlertKind.RECOVERY_FAILED,
                job_id,
                f"Recovery failed: {error}",
                attempt=attempt,
            )
            raise
        result.details.setdefault("attempt", attempt)
        return result

    def _dispatch(self, job_id: str, health: JobHealthStatus) -> RecoveryResult:
        action = health.recommended_action
        if action == RecommendedAction.RESUME:
            return self._resume(job_id)
        if action == RecommendedAction.RESTART:
            return self._restart(job_id)
        if action == RecommendedAction.MANUAL_INTERVENTION:
            log_alert(
                self.store,
                AlertKind.RECOVERY_FAILED,
                job_id,
                "Job requires manual intervention",
                health_status=health.status.value,
            )
            return RecoveryResult(
                job_id=job_id,
                success=False,
                action=RecoveryAction.MANUAL_INTERVENTION_REQUIRED,
                message=ACTION_MESSAGES[action],
            )
        return RecoveryResult(
            job_id=job_id,
            success=False,
            action=RecoveryAction.DELETE_AND_RETRY,
            message=ACTION_MESSAGES[RecommendedAction.DELETE_AND_RETRY],
        )

    def _resume(self, job_id: str) -> RecoveryResult:
        cutoff = self._clock() - timedelta(seconds=self.settings.task_timeout_seconds)
        reset = self.store.reset_stale_running_tasks(
            job_id,
            started_before=cutoff,
            reason=RESET_REASON,
        )
        promoted = self.store.promote_due_retries(job_id)
        self.store.update_job_status(
            job_id,
            JobStatus.PROCESSING,
            expected={JobStatus.QUEUED, JobStatus.PROCESSING},
        )
        logger.info(
            "Resumed job %s: reset %d stale task(s), requeued %d retry(ies)",
            job_id,
            len(reset),
            promoted,
        )
        return RecoveryResult(
            job_id=job_id,
            success=True,
            action=RecoveryAction.RESUMED,
            message=f"Resumed generation; {len(reset)} stuck task(s) were reset.",
            details={"reset_task_ids": reset, "requeued_retries": promoted},
        )

    def _restart(self, job_id: str) -> RecoveryResult:
        self.store.update_job_status(job_id, JobStatus.FAILED, error_message=RESTART_REASON)
        deleted = self.store.delete_tasks(job_id)
        logger.info("Marked job %s for restart; deleted %d task(s)", job_id, deleted)
        return RecoveryResult(
            job_id=job_id,
            success=True,
            action=RecoveryAction.MARKED_FOR_RESTART,
            message="Job marked for restart. Please submit it again.",
            details={"deleted_tasks": deleted},
        )

    def _stale_running_tasks(self, tasks: Sequence[TaskView], *, now: datetime) -> list[TaskView]:
        timeout = timedelta(seconds=self.settings.task_timeout_seconds)
        return [
            task
            for task in tasks
            if task.status == TaskStatus.RUNNING
            and (task.started_at is None or now - task.started_at > timeout)
        ]
