from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import allure
import httpx
import pytest

from coursegen.engine.content import (
    CachingContentPipeline,
    ContentValidationError,
    EchoContentGenerator,
    GenerationRequest,
    GeneratorContentPipeline,
    HttpContentGenerator,
    cache_key_for,
)
from coursegen.engine.models import TaskStatus, TaskType, TaskView
from coursegen.engine.repository import JobRepository

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Content Pipeline"),
]

_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)


def _task(
    task_type: TaskType,
    *,
    task_id: str = "t1",
    input_data: dict[str, Any] | None = None,
    dependencies: tuple[str, ...] = (),
) -> TaskView:
    return TaskView(
        job_id="job-1",
        task_id=task_id,
        task_type=task_type,
        status=TaskStatus.RUNNING,
        execution_priority=0,
        dependencies=dependencies,
        current_retry_count=0,
        max_retry_count=3,
        input_data=input_data or {},
        output_data=None,
        error_message=None,
        error_details=None,
        error_severity=None,
        error_category=None,
        is_recoverable=True,
        claim_token="token",
        run_after=None,
        started_at=_NOW,
        finished_at=None,
        created_at=_NOW,
        updated_at=_NOW,
    )


class _FixedGenerator:
    def __init__(self, output: object) -> None:
        self.output = output
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> Any:
        self.requests.append(request)
        return self.output


class _BrokenCache:
    def get_cached_content(self, cache_key: str) -> dict[str, Any] | None:
        raise RuntimeError("cache offline")

    def put_cached_content(self, cache_key: str, **_: Any) -> None:
        raise RuntimeError("cache offline")


def test_every_task_type_has_a_handler() -> None:
    pipeline = GeneratorContentPipeline(EchoContentGenerator())

    for task_type in TaskType:
        output = pipeline.generate(
            _task(task_type, input_data={"lesson_title": "Loops"}),
            dependency_outputs={},
            deadline_seconds=30.0,
        )
        assert output["title"] == "Loops"


def test_missing_handler_is_rejected_at_construction() -> None:
    with pytest.raises(ValueError, match="No content handler registered"):
        GeneratorContentPipeline(EchoContentGenerator(), handlers={})


def test_assessment_receives_only_its_dependency_outputs() -> None:
    generator = _FixedGenerator({"questions": [{"prompt": "?"}]})
    pipeline = GeneratorContentPipeline(generator)

    pipeline.generate(
        _task(TaskType.ASSESSMENT, input_data={"lesson_title": "Loops"}, dependencies=("s1",)),
        dependency_outputs={"s1": {"content": "for"}, "s9": {"content": "other"}},
        deadline_seconds=12.0,
    )

    request = generator.requests[0]
    assert request.payload == {
        "task_type": "assessment",
        "lesson_title": "Loops",
        "dependency_outputs": {"s1": {"content": "for"}},
    }
    assert request.deadline_seconds == 12.0


def test_section_payload_has_no_dependency_outputs() -> None:
    generator = _FixedGenerator({"content": "text"})

    GeneratorContentPipeline(generator).generate(
        _task(TaskType.SECTION, dependencies=("x",)),
        dependency_outputs={"x": {"content": "ignored"}},
        deadline_seconds=1.0,
    )

    assert "dependency_outputs" not in generator.requests[0].payload


@pytest.mark.parametrize(
    ("task_type", "output"),
    [
        (TaskType.SECTION, {"content": "   "}),
        (TaskType.QUIZ, {"questions": []}),
        (TaskType.MIND_MAP, {"nodes": "root"}),
        (TaskType.BRAINBYTES, {}),
    ],
)
def test_invalid_outputs_are_validation_errors(task_type: TaskType, output: dict[str, Any]) -> None:
    pipeline = GeneratorContentPipeline(_FixedGenerator(output))

    with pytest.raises(ContentValidationError):
        pipeline.generate(_task(task_type), dependency_outputs={}, deadline_seconds=1.0)


def test_non_mapping_output_is_a_validation_error() -> None:
    pipeline = GeneratorContentPipeline(_FixedGenerator(["not", "an", "object"]))

    with pytest.raises(ContentValidationError, match="expected object"):
        pipeline.generate(_task(TaskType.SECTION), dependency_outputs={}, deadline_seconds=1.0)


def test_cache_key_uses_slugged_titles() -> None:
    task = _task(
        TaskType.SECTION,
        input_data={"lesson_title": "Control Flow!", "section_title": "If / Else"},
    )

    assert cache_key_for(task) == "section:control-flow:if-else"


def test_caching_pipeline_serves_repeat_sections_from_cache(repository: JobRepository) -> None:
    generator = _FixedGenerator({"content": "fresh"})
    pipeline = CachingContentPipeline(GeneratorContentPipeline(generator), repository)
    task = _task(TaskType.SECTION, input_data={"lesson_title": "Loops", "section_title": "for"})

    first = pipeline.generate(task, dependency_outputs={}, deadline_seconds=1.0)
    second = pipeline.generate(task, dependency_outputs={}, deadline_seconds=1.0)

    assert first == {"content": "fresh"}
    assert second == {"content": "fresh", "cached": True}
    assert len(generator.requests) == 1


def test_caching_pipeline_skips_non_cacheable_types(repository: JobRepository) -> None:
    generator = _FixedGenerator({"questions": [{"prompt": "?"}]})
    pipeline = CachingContentPipeline(GeneratorContentPipeline(generator), repository)
    task = _task(TaskType.QUIZ, input_data={"lesson_title": "Loops"})

    pipeline.generate(task, dependency_outputs={}, deadline_seconds=1.0)
    pipeline.generate(task, dependency_outputs={}, deadline_seconds=1.0)

    assert len(generator.requests) == 2


def test_cache_failures_never_fail_the_task() -> None:
    generator = _FixedGenerator({"content": "fresh"})
    pipeline = CachingContentPipeline(GeneratorContentPipeline(generator), _BrokenCache())

    output = pipeline.generate(_task(TaskType.SECTION), dependency_outputs={}, deadline_seconds=1.0)

    assert output == {"content": "fresh"}


def _request() -> GenerationRequest:
    return GenerationRequest(
        job_id="job-1",
        task_id="section-l1-0",
        task_type=TaskType.SECTION,
        payload={"section_title": "Names"},
        deadline_seconds=30.0,
    )


def test_http_generator_posts_request_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"output": {"content": "Hello"}})

    with HttpContentGenerator(
        "https://content.example.com/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    ) as generator:
        output = generator.generate(_request())

    assert output == {"content": "Hello"}
    assert str(seen[0].url) == "https://content.example.com/generate"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert json.loads(seen[0].content) == {
        "job_id": "job-1",
        "task_id": "section-l1-0",
        "task_type": "section",
        "payload": {"section_title": "Names"},
    }


def test_http_generator_accepts_bare_object_body() -> None:
    transport = httpx.MockTransport(lambda _: httpx.Response(200, json={"content": "Bare"}))

    with HttpContentGenerator("https://content.example.com", transport=transport) as generator:
        assert generator.generate(_request()) == {"content": "Bare"}


def test_http_generator_raises_status_errors() -> None:
    transport = httpx.MockTransport(lambda _: httpx.Response(503, text="busy"))

    with HttpContentGenerator("https://content.example.com", transport=transport) as generator:
        with pytest.raises(httpx.HTTPStatusError) as excinfo:
            generator.generate(_request())

    assert excinfo.value.response.status_code == 503


@pytest.mark.parametrize("body", ["not json", "[1, 2]", '{"output": "text"}'])
def test_http_generator_rejects_malformed_bodies(body: str) -> None:
    transport = httpx.MockTransport(lambda _: httpx.Response(200, text=body))

    with HttpContentGenerator("https://content.example.com", transport=transport) as generator:
        with pytest.raises(ContentValidationError):
            generator.generate(_request())
