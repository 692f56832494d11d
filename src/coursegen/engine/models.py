"""Domain models for generation jobs, tasks and health reporting."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED},
)
# A failed dependency does not block its dependents: one broken lesson must not stall the course.
DEPENDENCY_SATISFIED_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED},
)
SELECTABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED})
OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.RETRYING})


class TaskType(str, Enum):
    """Closed set of generation task kinds; each has a registered handler."""

    SECTION = "section"
    ASSESSMENT = "assessment"
    QUIZ = "quiz"
    EXAM = "exam"
    MIND_MAP = "mind_map"
    BRAINBYTES = "brainbytes"


class ErrorSeverity(str, Enum):
    """Severity buckets driving breaker accounting and user messaging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Normalized failure categories used by retry policy."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TEMPORARY = "temporary"
    VALIDATION = "validation"
    AUTH = "auth"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    """Job health classes reported by the resilience monitor."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    STUCK = "stuck"
    ABANDONED = "abandoned"
    FAILED = "failed"


class RecommendedAction(str, Enum):
    """Next step suggested for a job in a given health class."""

    WAIT = "wait"
    RESUME = "resume"
    RESTART = "restart"
    MANUAL_INTERVENTION = "manual_intervention"
    DELETE_AND_RETRY = "delete_and_retry"


class RecoveryAction(str, Enum):
    """Outcome tag of one recovery attempt."""

    NONE = "none"
    RESUMED = "resumed"
    MARKED_FOR_RESTART = "marked_for_restart"
    MANUAL_INTERVENTION_REQUIRED = "manual_intervention_required"
    DELETE_AND_RETRY = "delete_and_retry"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    JOB_NOT_FOUND = "job_not_found"


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a generation job."""

    user_id: str
    user_role: str
    title: str
    request_data: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services and CLI."""

    job_id: str
    user_id: str
    user_role: str
    title: str
    status: JobStatus
    progress_percent: int
    recovery_attempts: int
    error_message: str | None
    request_data: dict[str, Any]
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class TaskCreate:
    """One task produced by graph construction."""

    task_id: str
    task_type: TaskType
    execution_priority: int
    dependencies: tuple[str, ...] = ()
    max_retry_count: int = 3
    input_data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, monitor and CLI."""

    job_id: str
    task_id: str
    task_type: TaskType
    status: TaskStatus
    execution_priority: int
    dependencies: tuple[str, ...]
    current_retry_count: int
    max_retry_count: int
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None
    error_message: str | None
    error_details: str | None
    error_severity: ErrorSeverity | None
    error_category: ErrorCategory | None
    is_recoverable: bool
    claim_token: str | None
    run_after: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass(slots=True)
class TaskEventView:
    """Task audit event."""

    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class JobActionView:
    """Job action log entry (recovery attempts, alerts, cancellations)."""

    action_type: str
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class TaskStatusCounts:
    """Per-status task counts of one job."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0

    @classmethod
    def from_tasks(cls, tasks: Iterable[TaskView]) -> TaskStatusCounts:
        counts = cls()
        for task in tasks:
            counts.total += 1
            if task.status in OPEN_TASK_STATUSES:
                counts.pending += 1
            elif task.status == TaskStatus.RUNNING:
                counts.running += 1
            elif task.status == TaskStatus.COMPLETED:
                counts.completed += 1
            elif task.status == TaskStatus.FAILED:
                counts.failed += 1
            elif task.status == TaskStatus.SKIPPED:
                counts.skipped += 1
            elif task.status == TaskStatus.CANCELLED:
                counts.cancelled += 1
        return counts

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.skipped + self.cancelled

    @property
    def all_terminal(self) -> bool:
        return self.total > 0 and self.finished == self.total


@dataclass(slots=True)
class JobHealthStatus:
    """Health classification of one job with an actionable next step."""

    job_id: str
    status: HealthStatus
    last_activity: datetime | None
    time_since_activity_seconds: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    running_tasks: int
    pending_tasks: int
    progress_percentage: int
    completed: bool
    recommended_action: RecommendedAction
    user_message: str
    can_auto_recover: bool
    recovery_attempts: int
    max_recovery_attempts: int
    error_details: str | None = None


@dataclass(slots=True)
class RecoveryResult:
    """Outcome of one recovery attempt."""

    job_id: str
    success: bool
    action: RecoveryAction
    message: str
    details: dict[str, Any] = field(default_factory=dict)
