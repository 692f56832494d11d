"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from coursegen.config import SchedulerSettings
from coursegen.engine.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from coursegen.engine.content import (
    EchoContentGenerator,
    GenerationRequest,
    GeneratorContentPipeline,
)
from coursegen.engine.models import JobCreate, JobView, TaskCreate, TaskType
from coursegen.engine.monitor import ResilienceMonitor
from coursegen.engine.repository import JobRepository
from coursegen.engine.retry import RetryPolicy
from coursegen.engine.scheduler import JobScheduler
from coursegen.storage.common import utc_now


class FakeClock:
    """Drives wall-clock (tz-aware UTC) and monotonic time together."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utc_now()
        self._monotonic = 1_000.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._monotonic += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)


@dataclass
class ScriptedGenerator:
    """Content generator with a per-task queue of outcomes.

    An exception outcome is raised, a callable is called with the request, a
    mapping is returned as-is; once a queue runs dry the echo generator answers.
    """

    script: dict[str, list[object]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    requests: dict[str, GenerationRequest] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def generate(self, request: GenerationRequest) -> Any:
        with self._lock:
            self.calls.append(request.task_id)
            self.requests[request.task_id] = request
            queue = self.script.get(request.task_id)
            outcome = queue.pop(0) if queue else None
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        if outcome is not None:
            return outcome
        return EchoContentGenerator().generate(request)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "coursegen.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture()
def outline() -> dict[str, Any]:
    return {
        "course_id": "py101",
        "title": "Python Basics",
        "audience": "beginners",
        "modules": [
            {
                "module_id": "m1",
                "title": "Getting Started",
                "lessons": [
                    {"lesson_id": "l1", "title": "Variables", "sections": ["Names", "Types"]},
                    {"lesson_id": "l2", "title": "Control Flow", "sections": ["If"]},
                ],
            },
            {
                "module_id": "m2",
                "title": "Functions",
                "lessons": [
                    {"lesson_id": "l3", "title": "Defining Functions", "sections": ["def"]},
                ],
            },
        ],
    }


def fast_scheduler_settings(**overrides: Any) -> SchedulerSettings:
    values: dict[str, Any] = {
        "batch_size": 15,
        "max_concurrency": 5,
        "poll_interval_seconds": 0.0,
        "batch_pause_seconds": 0.0,
        "task_deadline_seconds": 5.0,
        "max_consecutive_errors": 3,
        "max_idle_polls": 3,
        "write_attempts": 2,
        "write_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return SchedulerSettings(**values)


@pytest.fixture()
def make_scheduler(
    generator: ScriptedGenerator,
) -> Callable[..., JobScheduler]:
    def _make(
        store: Any,
        *,
        settings: SchedulerSettings | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        monitor: ResilienceMonitor | None = None,
        clock: FakeClock | None = None,
    ) -> JobScheduler:
        return JobScheduler(
            store=store,
            pipeline=GeneratorContentPipeline(generator),
            breakers=breakers or CircuitBreakerRegistry(CircuitBreakerConfig()),
            retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
            monitor=monitor,
            settings=settings or fast_scheduler_settings(),
            sleep=clock.sleep if clock is not None else (lambda _: None),
            clock=clock.now if clock is not None else utc_now,
        )

    return _make


def create_job_with_tasks(
    repository: JobRepository,
    tasks: list[TaskCreate],
    *,
    user_id: str = "user-1",
    role: str = "teacher",
) -> JobView:
    job = repository.create_job(
        JobCreate(user_id=user_id, user_role=role, title="Test course", request_data={}),
    )
    repository.create_tasks(job.job_id, tasks)
    return job


def section(task_id: str, *, priority: int = 0, max_retries: int = 3) -> TaskCreate:
    return TaskCreate(
        task_id=task_id,
        task_type=TaskType.SECTION,
        execution_priority=priority,
        max_retry_count=max_retries,
        input_data={"lesson_title": "Lesson", "section_title": task_id},
    )


def assessment(task_id: str, dependencies: tuple[str, ...], *, priority: int = 100) -> TaskCreate:
    return TaskCreate(
        task_id=task_id,
        task_type=TaskType.ASSESSMENT,
        execution_priority=priority,
        dependencies=dependencies,
        input_data={"lesson_title": "Lesson"},
    )
