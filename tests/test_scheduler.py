from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import allure
import httpx
import pytest
from conftest import (
    FakeClock,
    ScriptedGenerator,
    assessment,
    create_job_with_tasks,
    fast_scheduler_settings,
    section,
)

from coursegen.engine.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from coursegen.engine.content import ContentValidationError, GenerationRequest
from coursegen.engine.models import ErrorCategory, JobStatus, TaskEventView, TaskStatus
from coursegen.engine.monitor import ResilienceMonitor
from coursegen.engine.repository import JobRepository
from coursegen.engine.scheduler import JobExecutionError, JobScheduler
from coursegen.engine.store import JobNotFoundError, StoreUnavailableError
from coursegen.storage.common import utc_now

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Job Scheduler"),
]

MakeScheduler = Callable[..., JobScheduler]


class _FlakyStore:
    """Delegates to a real repository except for the named methods, which raise."""

    def __init__(self, inner: JobRepository, *, failing: set[str]) -> None:
        self._inner = inner
        self._failing = frozenset(failing)

    def __getattr__(self, name: str) -> Any:
        if name in self._failing:

            def _unavailable(*_: Any, **__: Any) -> Any:
                raise StoreUnavailableError(f"{name}: database is locked")

            return _unavailable
        return getattr(self._inner, name)


def _statuses(repository: JobRepository, job_id: str) -> dict[str, TaskStatus]:
    return {task.task_id: task.status for task in repository.get_tasks(job_id)}


def _service_unavailable() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://content.example.com/generate")
    response = httpx.Response(503, request=request)
    return httpx.HTTPStatusError("HTTP 503", request=request, response=response)


def _reset_events(repository: JobRepository, job_id: str) -> list[TaskEventView]:
    return [event for event in repository.list_task_events(job_id) if event.event_type == "reset"]


def test_dependents_wait_for_terminal_dependencies_and_see_only_successful_outputs(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(
        repository,
        [section("a"), section("b"), section("c"), assessment("d", ("a", "b", "c"))],
    )
    seen_by_d: dict[str, TaskStatus] = {}

    def check_leaves(_: GenerationRequest) -> dict[str, Any]:
        seen_by_d.update(_statuses(repository, job.job_id))
        return {"questions": [{"prompt": "Recap"}]}

    generator.script = {
        "a": [ContentValidationError("section text is empty")],
        "b": [ContentValidationError("section text is empty")],
        "d": [check_leaves],
    }

    summary = make_scheduler(repository).run_job(job.job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert summary.stop_reason == "completed"
    assert summary.batches == 2
    assert (summary.completed, summary.failed, summary.retried) == (2, 2, 0)
    assert seen_by_d["a"] == TaskStatus.FAILED
    assert seen_by_d["b"] == TaskStatus.FAILED
    assert seen_by_d["c"] == TaskStatus.COMPLETED
    assert list(generator.requests["d"].payload["dependency_outputs"]) == ["c"]

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress_percent == 100
    failed = repository.get_task(job.job_id, "a")
    assert failed is not None
    assert failed.error_category == ErrorCategory.VALIDATION
    assert not failed.is_recoverable
    alerts = repository.list_job_actions(job.job_id, action_type="alert_failure")
    assert alerts[0].details["failed_tasks"] == 2


def test_transient_failures_are_retried_then_succeed(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    generator.script = {"a": [TimeoutError("upstream timed out"), TimeoutError("again")]}

    summary = make_scheduler(repository).run_job(job.job_id)

    task = repository.get_task(job.job_id, "a")
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.current_retry_count == 2
    assert task.error_message is None
    assert summary.retried == 2
    assert summary.completed == 1
    assert generator.calls == ["a", "a", "a"]


def test_retries_stop_at_the_task_ceiling(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a", max_retries=2)])
    generator.script = {"a": [ConnectionError("connection reset")] * 3}

    summary = make_scheduler(repository).run_job(job.job_id)

    task = repository.get_task(job.job_id, "a")
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.current_retry_count == 2
    assert task.error_category == ErrorCategory.NETWORK
    assert task.is_recoverable
    assert (summary.retried, summary.failed) == (2, 1)
    assert summary.final_status == JobStatus.COMPLETED


def test_task_deadline_fails_hung_calls(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a", max_retries=0)])
    release = threading.Event()

    def hang(_: GenerationRequest) -> dict[str, Any]:
        release.wait(10)
        return {"content": "too late"}

    generator.script = {"a": [hang]}
    scheduler = make_scheduler(
        repository,
        settings=fast_scheduler_settings(task_deadline_seconds=0.2),
    )

    try:
        summary = scheduler.run_job(job.job_id)
    finally:
        release.set()

    task = repository.get_task(job.job_id, "a")
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_category == ErrorCategory.TIMEOUT
    assert task.error_details is not None
    assert "Task execution timeout after 0.2 seconds" in task.error_details
    assert summary.timed_out == 1
    assert repository.list_job_actions(job.job_id, action_type="alert_timeout")


def test_open_content_breaker_defers_tasks_without_spending_retries(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
    clock: FakeClock,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), section("b", priority=1)])
    generator.script = {"a": [_service_unavailable()]}
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=30.0),
        clock=clock.monotonic,
    )
    scheduler = make_scheduler(
        repository,
        settings=fast_scheduler_settings(max_concurrency=1, poll_interval_seconds=1.0),
        breakers=breakers,
        clock=clock,
    )

    summary = scheduler.run_job(job.job_id)

    for task_id in ("a", "b"):
        task = repository.get_task(job.job_id, task_id)
        assert task is not None
        assert task.status == TaskStatus.COMPLETED
        assert task.current_retry_count == 0
    # b never reached the generator while the breaker was open.
    assert generator.calls == ["a", "a", "b"]
    assert (summary.deferred, summary.retried, summary.failed) == (2, 0, 0)
    assert summary.final_status == JobStatus.COMPLETED
    deferrals = [
        event
        for event in repository.list_task_events(job.job_id)
        if event.task_id == "a" and event.status_to == TaskStatus.QUEUED
    ]
    assert deferrals[0].details["error_category"] == "temporary"


def test_breaker_tripping_mid_batch_defers_the_whole_batch(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
    clock: FakeClock,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), section("b"), section("c")])
    generator.script = {task_id: [_service_unavailable()] for task_id in ("a", "b", "c")}
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=3, reset_timeout_seconds=30.0),
        clock=clock.monotonic,
    )
    scheduler = make_scheduler(
        repository,
        settings=fast_scheduler_settings(poll_interval_seconds=1.0),
        breakers=breakers,
        clock=clock,
    )

    summary = scheduler.run_job(job.job_id)

    stored = {task.task_id: task for task in repository.get_tasks(job.job_id)}
    assert {task_id: task.status for task_id, task in stored.items()} == {
        "a": TaskStatus.COMPLETED,
        "b": TaskStatus.COMPLETED,
        "c": TaskStatus.COMPLETED,
    }
    assert all(task.current_retry_count == 0 for task in stored.values())
    assert (summary.deferred, summary.retried, summary.failed) == (3, 0, 0)
    assert sorted(generator.calls) == ["a", "a", "b", "b", "c", "c"]


def test_store_outage_fails_the_job_after_consecutive_errors(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    store = _FlakyStore(repository, failing={"get_tasks"})

    with pytest.raises(JobExecutionError, match="Job store unavailable after 3 attempts"):
        make_scheduler(store).run_job(job.job_id)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "Job store unavailable after 3 attempts"
    assert _statuses(repository, job.job_id) == {"a": TaskStatus.FAILED}
    assert repository.list_job_actions(job.job_id, action_type="alert_critical_error")


def test_unpersistable_results_fail_the_job_instead_of_leaving_tasks_running(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    store = _FlakyStore(
        repository,
        failing={"compare_and_set_task_status", "update_task_fields", "set_task_status"},
    )

    with pytest.raises(JobExecutionError, match="Task status could not be persisted"):
        make_scheduler(store).run_job(job.job_id)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert _statuses(repository, job.job_id) == {"a": TaskStatus.FAILED}


def test_cancel_during_execution_drops_the_late_result(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), section("b", priority=1)])

    def cancel_job(_: GenerationRequest) -> dict[str, Any]:
        repository.update_job_status(job.job_id, JobStatus.CANCELLED)
        repository.cancel_open_tasks(job.job_id)
        return {"content": "finished after cancel"}

    generator.script = {"a": [cancel_job]}
    scheduler = make_scheduler(repository, settings=fast_scheduler_settings(max_concurrency=1))

    summary = scheduler.run_job(job.job_id)

    assert summary.superseded == 1
    assert summary.completed == 0
    assert summary.stop_reason == "cancelled"
    assert summary.final_status == JobStatus.CANCELLED
    assert generator.calls == ["a"]
    task = repository.get_task(job.job_id, "a")
    assert task is not None
    assert task.status == TaskStatus.CANCELLED
    assert task.output_data is None


def test_pause_stops_between_batches_and_rerun_resumes(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), section("b", priority=1)])

    def pause_job(request: GenerationRequest) -> dict[str, Any]:
        repository.update_job_status(job.job_id, JobStatus.PAUSED)
        return {"content": f"Content for {request.task_id}"}

    generator.script = {"a": [pause_job]}
    scheduler = make_scheduler(repository, settings=fast_scheduler_settings(max_concurrency=1))

    paused = scheduler.run_job(job.job_id)
    assert paused.stop_reason == "paused"
    assert _statuses(repository, job.job_id) == {
        "a": TaskStatus.COMPLETED,
        "b": TaskStatus.PENDING,
    }

    resumed = scheduler.run_job(job.job_id)
    assert resumed.stop_reason == "completed"
    assert resumed.dispatched == 1
    assert _statuses(repository, job.job_id) == {
        "a": TaskStatus.COMPLETED,
        "b": TaskStatus.COMPLETED,
    }


def test_tasks_blocked_forever_fail_the_job(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("x"), assessment("d", ("x",))])
    repository.set_task_status(job.job_id, "x", TaskStatus.CANCELLED)

    with pytest.raises(JobExecutionError, match=r"No runnable tasks: 1 task\(s\) blocked"):
        make_scheduler(repository).run_job(job.job_id)

    assert _statuses(repository, job.job_id) == {
        "x": TaskStatus.CANCELLED,
        "d": TaskStatus.FAILED,
    }


def test_stuck_running_task_is_recovered_in_loop(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), assessment("q", ("a",))])
    repository.claim_tasks(job.job_id, ["a"], expected={TaskStatus.PENDING})
    later = utc_now() + timedelta(minutes=12)
    monitor = ResilienceMonitor(repository, clock=lambda: later)

    summary = make_scheduler(repository, monitor=monitor).run_job(job.job_id)

    assert summary.recoveries == 1
    assert summary.final_status == JobStatus.COMPLETED
    assert generator.calls == ["a", "q"]
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.recovery_attempts == 1


def test_terminal_and_missing_jobs(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    repository.update_job_status(job.job_id, JobStatus.CANCELLED)
    scheduler = make_scheduler(repository)

    summary = scheduler.run_job(job.job_id)

    assert summary.stop_reason == "already_terminal"
    assert summary.dispatched == 0
    with pytest.raises(JobNotFoundError):
        scheduler.run_job("missing")


def test_job_without_tasks_completes_immediately(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [])

    summary = make_scheduler(repository).run_job(job.job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert summary.batches == 0


def test_leftover_running_task_is_reset_at_start(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    repository.claim_tasks(job.job_id, ["a"], expected={TaskStatus.PENDING})
    clock = FakeClock(utc_now() + timedelta(minutes=10))

    summary = make_scheduler(repository, clock=clock).run_job(job.job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert generator.calls == ["a"]
    resets = _reset_events(repository, job.job_id)
    assert [event.details["reason"] for event in resets] == ["Reset at scheduler start"]


def test_task_orphaned_by_another_run_is_reset_after_the_deadline(
    repository: JobRepository,
    generator: ScriptedGenerator,
    make_scheduler: MakeScheduler,
    clock: FakeClock,
) -> None:
    job = create_job_with_tasks(repository, [section("a"), section("b", priority=1)])

    def claim_b_elsewhere(request: GenerationRequest) -> dict[str, Any]:
        repository.claim_tasks(job.job_id, ["b"], expected={TaskStatus.PENDING})
        return {"content": f"Content for {request.task_id}"}

    generator.script = {"a": [claim_b_elsewhere]}
    scheduler = make_scheduler(
        repository,
        settings=fast_scheduler_settings(max_concurrency=1, poll_interval_seconds=1.0),
        clock=clock,
    )

    summary = scheduler.run_job(job.job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert generator.calls == ["a", "b"]
    assert _statuses(repository, job.job_id) == {
        "a": TaskStatus.COMPLETED,
        "b": TaskStatus.COMPLETED,
    }
    resets = _reset_events(repository, job.job_id)
    assert [(event.task_id, event.details["reason"]) for event in resets] == [
        ("b", "Reset after exceeding the task deadline"),
    ]


class _CancelDuringWriteStore:
    """Cancels the job from inside the conditional write, then fails that write."""

    def __init__(self, inner: JobRepository, job_id: str) -> None:
        self._inner = inner
        self._job_id = job_id

    def compare_and_set_task_status(self, *_: Any, **__: Any) -> bool:
        self._inner.update_job_status(self._job_id, JobStatus.CANCELLED)
        self._inner.cancel_open_tasks(self._job_id)
        raise StoreUnavailableError("compare_and_set_task_status: database is locked")

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


def test_fallback_write_does_not_revive_a_cancelled_task(
    repository: JobRepository,
    make_scheduler: MakeScheduler,
) -> None:
    job = create_job_with_tasks(repository, [section("a")])
    store = _CancelDuringWriteStore(repository, job.job_id)

    summary = make_scheduler(store).run_job(job.job_id)

    assert summary.superseded == 1
    assert summary.completed == 0
    assert summary.final_status == JobStatus.CANCELLED
    task = repository.get_task(job.job_id, "a")
    assert task is not None
    assert task.status == TaskStatus.CANCELLED
    assert task.output_data is None
