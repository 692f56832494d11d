"""Content generation seam: generator clients, per-type handlers and caching."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from coursegen.engine.models import ErrorCategory, TaskType, TaskView

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 7 * 24 * 3600.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
CACHEABLE_TASK_TYPES = frozenset({TaskType.SECTION})


class ContentGenerationError(RuntimeError):
    """Generator failure carrying its own retry category."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class ContentValidationError(ContentGenerationError):
    """Generated output does not match the shape its task type requires."""

    category = ErrorCategory.VALIDATION


class InsufficientSourceError(ContentGenerationError):
    """Not enough source material to generate the requested content."""

    category = ErrorCategory.INSUFFICIENT_RESOURCES


@dataclass(slots=True)
class GenerationRequest:
    """One call into the content generator."""

    job_id: str
    task_id: str
    task_type: TaskType
    payload: dict[str, Any]
    deadline_seconds: float


class ContentGenerator(Protocol):
    """Protocol implemented by content generator clients."""

    def generate(self, request: GenerationRequest) -> Mapping[str, Any]:
        """Produce structured content for one task or raise."""


class ContentPipeline(Protocol):
    """What the scheduler calls to turn a claimed task into stored output."""

    def generate(
        self,
        task: TaskView,
        *,
        dependency_outputs: Mapping[str, Mapping[str, Any]],
        deadline_seconds: float,
    ) -> dict[str, Any]:
        """Build the request, call the generator and validate the output."""


@dataclass(slots=True)
class TaskHandler:
    """Request building and output validation for one task type."""

    required_key: str
    expects_list: bool
    passes_dependency_outputs: bool = False

    def build_payload(
        self,
        task: TaskView,
        dependency_outputs: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"task_type": task.task_type.value, **task.input_data}
        if self.passes_dependency_outputs:
            payload["dependency_outputs"] = {
                task_id: dict(output)
                for task_id, output in dependency_outputs.items()
                if task_id in task.dependencies
            }
        return payload

    def validate_output(self, task: TaskView, output: Mapping[str, Any]) -> dict[str, Any]:
        value = output.get(self.required_key)
        if self.expects_list:
            if not isinstance(value, list) or not value:
                raise ContentValidationError(
                    f"{task.task_type.value} output requires a non-empty '{self.required_key}' list",
                )
        elif not isinstance(value, str) or not value.strip():
            raise ContentValidationError(
                f"{task.task_type.value} output requires non-empty '{self.required_key}' text",
            )
        return dict(output)


DEFAULT_HANDLERS: dict[TaskType, TaskHandler] = {
    TaskType.SECTION: TaskHandler(required_key="content", expects_list=False),
    TaskType.ASSESSMENT: TaskHandler(
        required_key="questions",
        expects_list=True,
        passes_dependency_outputs=True,
    ),
    TaskType.QUIZ: TaskHandler(
        required_key="questions",
        expects_list=True,
        passes_dependency_outputs=True,
    ),
    TaskType.EXAM: TaskHandler(
        required_key="questions",
        expects_list=True,
        passes_dependency_outputs=True,
    ),
    TaskType.MIND_MAP: TaskHandler(required_key="nodes", expects_list=True),
    TaskType.BRAINBYTES: TaskHandler(required_key="items", expects_list=True),
}


class GeneratorContentPipeline:
    """Dispatches each task type to its registered handler around one generator."""

    def __init__(
        self,
        generator: ContentGenerator,
        *,
        handlers: Mapping[TaskType, TaskHandler] | None = None,
    ) -> None:
        registry = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        missing = sorted(task_type.value for task_type in TaskType if task_type not in registry)
        if missing:
            raise ValueError(f"No content handler registered for task types: {', '.join(missing)}")
        self._generator = generator
        self._handlers = registry

    def generate(
        self,
        task: TaskView,
        *,
        dependency_outputs: Mapping[str, Mapping[str, Any]],
        deadline_seconds: float,
    ) -> dict[str, Any]:
        handler = self._handlers[task.task_type]
        request = GenerationRequest(
            job_id=task.job_id,
            task_id=task.task_id,
            task_type=task.task_type,
            payload=handler.build_payload(task, dependency_outputs),
            deadline_seconds=deadline_seconds,
        )
        output = self._generator.generate(request)
        if not isinstance(output, Mapping):
            raise ContentValidationError(
                f"Generator returned {type(output).__name__} for {task.task_id}, expected object",
            )
        return handler.validate_output(task, output)


class ContentCache(Protocol):
    """Storage used by ``CachingContentPipeline``."""

    def get_cached_content(self, cache_key: str) -> dict[str, Any] | None: ...

    def put_cached_content(
        self,
        cache_key: str,
        *,
        task_type: str,
        content: Mapping[str, Any],
        ttl_seconds: float,
    ) -> None: ...


class CachingContentPipeline:
    """Decorator that serves repeated section requests from the content cache.

    Cache failures are logged and the call falls through to the wrapped
    pipeline: a broken cache must never fail a task.
    """

    def __init__(
        self,
        inner: ContentPipeline,
        cache: ContentCache,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        cacheable_types: frozenset[TaskType] = CACHEABLE_TASK_TYPES,
    ) -> None:
        self._inner = inner
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._cacheable_types = cacheable_types

    def generate(
        self,
        task: TaskView,
        *,
        dependency_outputs: Mapping[str, Mapping[str, Any]],
        deadline_seconds: float,
    ) -> dict[str, Any]:
        if task.task_type not in self._cacheable_types:
            return self._inner.generate(
                task,
                dependency_outputs=dependency_outputs,
                deadline_seconds=deadline_seconds,
            )

        key = cache_key_for(task)
        try:
            cached = self._cache.get_cached_content(key)
        except Exception as error:  # noqa: BLE001
            logger.warning("Content cache read failed for %s: %s", key, error)
            cached = None
        if cached is not None:
            logger.debug("Content cache hit for %s (%s)", task.task_id, key)
            return {**cached, "cached": True}

        output = self._inner.generate(
            task,
            dependency_outputs=dependency_outputs,
            deadline_seconds=deadline_seconds,
        )
        try:
            self._cache.put_cached_content(
                key,
                task_type=task.task_type.value,
                content=output,
                ttl_seconds=self._ttl_seconds,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Content cache write failed for %s: %s", key, error)
        return output


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def cache_key_for(task: TaskView) -> str:
    """``{type}:{title}:{subtitle}`` with slugged title parts."""

    title = str(task.input_data.get("lesson_title") or task.input_data.get("course_title") or "")
    subtitle = str(task.input_data.get("section_title") or "")
    return f"{task.task_type.value}:{slugify(title)}:{slugify(subtitle)}"


@dataclass(slots=True)
class EchoContentGenerator:
    """Deterministic offline generator for smoke runs and local development."""

    calls: list[str] = field(default_factory=list)

    def generate(self, request: GenerationRequest) -> dict[str, Any]:
        self.calls.append(request.task_id)
        payload = request.payload
        title = str(
            payload.get("section_title")
            or payload.get("lesson_title")
            or payload.get("module_title")
            or payload.get("course_title")
            or request.task_id,
        )
        if request.task_type == TaskType.SECTION:
            return {"title": title, "content": f"Echo content for {title}."}
        if request.task_type in {TaskType.ASSESSMENT, TaskType.QUIZ, TaskType.EXAM}:
            sources = sorted(payload.get("dependency_outputs", {}))
            return {
                "title": title,
                "questions": [
                    {"prompt": f"Question about {source}", "answer": "echo"}
                    for source in sources or [title]
                ],
            }
        if request.task_type == TaskType.MIND_MAP:
            return {"title": title, "nodes": [{"id": "root", "label": title}]}
        return {"title": title, "items": [{"text": f"Byte about {title}"}]}


class HttpContentGenerator:
    """JSON-over-HTTP content service client."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_retries: int = 1,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def generate(self, request: GenerationRequest) -> dict[str, Any]:
        timeout = max(1.0, min(self._timeout_seconds, request.deadline_seconds))
        try:
            response = self._client.post(
                "/generate",
                json={
                    "job_id": request.job_id,
                    "task_id": request.task_id,
                    "task_type": request.task_type.value,
                    "payload": request.payload,
                },
                timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("Timeout generating %s after %.0fs", request.task_id, timeout)
            raise
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Content service returned HTTP %s for %s",
                exc.response.status_code,
                request.task_id,
            )
            raise

        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise ContentValidationError(
                f"Content service returned invalid JSON for {request.task_id}",
            ) from exc
        if not isinstance(body, dict):
            raise ContentValidationError(
                f"Content service returned {type(body).__name__} for {request.task_id}",
            )
        output = body.get("output", body)
        if not isinstance(output, dict):
            raise ContentValidationError(
                f"Content service output for {request.task_id} is not an object",
            )
        return output

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpContentGenerator:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
