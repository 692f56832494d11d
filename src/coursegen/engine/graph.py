"""Course outline parsing and task dependency graph construction."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from coursegen.engine.models import (
    DEPENDENCY_SATISFIED_STATUSES,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)

SECTION_PRIORITY_BASE = 0
ASSESSMENT_PRIORITY = 100
QUIZ_PRIORITY = 200
EXAM_PRIORITY = 300
MEDIA_PRIORITY = 400

CONTENT_MAX_RETRIES = 3
MEDIA_MAX_RETRIES = 2

_MAX_SECTIONS_PER_LESSON = ASSESSMENT_PRIORITY - SECTION_PRIORITY_BASE


@dataclass(slots=True)
class LessonOutline:
    """One lesson and the titles of its sections."""

    lesson_id: str
    title: str
    sections: tuple[str, ...] = ()
    description: str = ""


@dataclass(slots=True)
class ModuleOutline:
    """One module (learning path) grouping lessons."""

    module_id: str
    title: str
    lessons: tuple[LessonOutline, ...] = ()


@dataclass(slots=True)
class CourseOutline:
    """Full course outline submitted by a caller."""

    course_id: str
    title: str
    modules: tuple[ModuleOutline, ...] = ()
    audience: str = ""
    include_quizzes: bool = True
    include_final_exam: bool = True
    include_media: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def task_id_for(task_type: TaskType, scope_id: str, index: int = 0) -> str:
    """Deterministic, human-readable task id."""

    return f"{task_type.value}-{scope_id}-{index}"


def parse_outline(raw: Mapping[str, Any]) -> CourseOutline:
    """Validate a decoded JSON outline and build typed outline objects."""

    if not isinstance(raw, Mapping):
        raise TypeError("outline must be an object")
    course_id = _required_id(raw, "course_id", where="outline")
    title = str(raw.get("title") or course_id)
    raw_modules = raw.get("modules", [])
    if not isinstance(raw_modules, list):
        raise TypeError("outline.modules must be an array")

    module_ids: set[str] = set()
    lesson_ids: set[str] = set()
    modules: list[ModuleOutline] = []
    for module_index, raw_module in enumerate(raw_modules):
        where = f"outline.modules[{module_index}]"
        if not isinstance(raw_module, Mapping):
            raise TypeError(f"{where} must be an object")
        module_id = _required_id(raw_module, "module_id", where=where)
        _remember_unique(module_ids, module_id, where=where)
        raw_lessons = raw_module.get("lessons", [])
        if not isinstance(raw_lessons, list):
            raise TypeError(f"{where}.lessons must be an array")
        lessons: list[LessonOutline] = []
        for lesson_index, raw_lesson in enumerate(raw_lessons):
            lesson_where = f"{where}.lessons[{lesson_index}]"
            if not isinstance(raw_lesson, Mapping):
                raise TypeError(f"{lesson_where} must be an object")
            lesson_id = _required_id(raw_lesson, "lesson_id", where=lesson_where)
            _remember_unique(lesson_ids, lesson_id, where=lesson_where)
            sections = raw_lesson.get("sections", [])
            if not isinstance(sections, list) or not all(isinstance(s, str) for s in sections):
                raise TypeError(f"{lesson_where}.sections must be an array of strings")
            if len(sections) > _MAX_SECTIONS_PER_LESSON:
                raise ValueError(
                    f"{lesson_where}.sections supports at most {_MAX_SECTIONS_PER_LESSON} items",
                )
            lessons.append(
                LessonOutline(
                    lesson_id=lesson_id,
                    title=str(raw_lesson.get("title") or lesson_id),
                    sections=tuple(sections),
                    description=str(raw_lesson.get("description") or ""),
                ),
            )
        modules.append(
            ModuleOutline(
                module_id=module_id,
                title=str(raw_module.get("title") or module_id),
                lessons=tuple(lessons),
            ),
        )

    known = {
        "course_id",
        "title",
        "modules",
        "audience",
        "include_quizzes",
        "include_final_exam",
        "include_media",
    }
    return CourseOutline(
        course_id=course_id,
        title=title,
        modules=tuple(modules),
        audience=str(raw.get("audience") or ""),
        include_quizzes=_flag(raw, "include_quizzes"),
        include_final_exam=_flag(raw, "include_final_exam"),
        include_media=_flag(raw, "include_media"),
        extra={key: value for key, value in raw.items() if key not in known},
    )


def build_tasks(outline: CourseOutline) -> list[TaskCreate]:
    """Expand an outline into the job's task DAG.

    Pure and deterministic: the same outline always yields the same ids, so a
    partially applied job initialization can be re-run safely.
    """

    tasks: list[TaskCreate] = []
    all_assessments: list[str] = []
    media: list[TaskCreate] = []

    for module in outline.modules:
        module_assessments: list[str] = []
        for lesson in module.lessons:
            lesson_context = {
                "course_id": outline.course_id,
                "course_title": outline.title,
                "audience": outline.audience,
                "module_id": module.module_id,
                "module_title": module.title,
                "lesson_id": lesson.lesson_id,
                "lesson_title": lesson.title,
            }
            section_ids: list[str] = []
            for index, section_title in enumerate(lesson.sections):
                section_id = task_id_for(TaskType.SECTION, lesson.lesson_id, index)
                section_ids.append(section_id)
                tasks.append(
                    TaskCreate(
                        task_id=section_id,
                        task_type=TaskType.SECTION,
                        execution_priority=SECTION_PRIORITY_BASE + index,
                        max_retry_count=CONTENT_MAX_RETRIES,
                        input_data={
                            **lesson_context,
                            "section_index": index,
                            "section_title": section_title,
                        },
                    ),
                )

            if section_ids:
                assessment_id = task_id_for(TaskType.ASSESSMENT, lesson.lesson_id)
                module_assessments.append(assessment_id)
                tasks.append(
                    TaskCreate(
                        task_id=assessment_id,
                        task_type=TaskType.ASSESSMENT,
                        execution_priority=ASSESSMENT_PRIORITY,
                        dependencies=tuple(section_ids),
                        max_retry_count=CONTENT_MAX_RETRIES,
                        input_data={**lesson_context, "section_task_ids": section_ids},
                    ),
                )

            if outline.include_media:
                for media_type in (TaskType.MIND_MAP, TaskType.BRAINBYTES):
                    media.append(
                        TaskCreate(
                            task_id=task_id_for(media_type, lesson.lesson_id),
                            task_type=media_type,
                            execution_priority=MEDIA_PRIORITY,
                            max_retry_count=MEDIA_MAX_RETRIES,
                            input_data=dict(lesson_context),
                        ),
                    )

        all_assessments.extend(module_assessments)
        if outline.include_quizzes and module_assessments:
            tasks.append(
                TaskCreate(
                    task_id=task_id_for(TaskType.QUIZ, module.module_id),
                    task_type=TaskType.QUIZ,
                    execution_priority=QUIZ_PRIORITY,
                    dependencies=tuple(module_assessments),
                    max_retry_count=CONTENT_MAX_RETRIES,
                    input_data={
                        "course_id": outline.course_id,
                        "course_title": outline.title,
                        "module_id": module.module_id,
                        "module_title": module.title,
                        "lesson_ids": [lesson.lesson_id for lesson in module.lessons],
                    },
                ),
            )

    if outline.include_final_exam and all_assessments:
        tasks.append(
            TaskCreate(
                task_id=task_id_for(TaskType.EXAM, outline.course_id),
                task_type=TaskType.EXAM,
                execution_priority=EXAM_PRIORITY,
                dependencies=tuple(all_assessments),
                max_retry_count=CONTENT_MAX_RETRIES,
                input_data={
                    "course_id": outline.course_id,
                    "course_title": outline.title,
                    "module_ids": [module.module_id for module in outline.modules],
                },
            ),
        )

    tasks.extend(media)
    validate_graph(tasks)
    return tasks


def validate_graph(tasks: Sequence[TaskCreate]) -> None:
    """Reject duplicate ids, unknown dependencies and cycles."""

    by_id: dict[str, TaskCreate] = {}
    for task in tasks:
        if task.task_id in by_id:
            raise ValueError(f"Duplicate task id: {task.task_id}")
        by_id[task.task_id] = task

    for task in tasks:
        for dependency in task.dependencies:
            if dependency not in by_id:
                raise ValueError(f"Task {task.task_id} depends on unknown task {dependency}")
            if dependency == task.task_id:
                raise ValueError(f"Task {task.task_id} depends on itself")

    # Kahn's algorithm; anything left over sits on a cycle.
    indegree = {task_id: len(task.dependencies) for task_id, task in by_id.items()}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in by_id}
    for task in tasks:
        for dependency in task.dependencies:
            dependents[dependency].append(task.task_id)
    frontier = [task_id for task_id, degree in indegree.items() if degree == 0]
    visited = 0
    while frontier:
        current = frontier.pop()
        visited += 1
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                frontier.append(child)
    if visited != len(by_id):
        cyclic = sorted(task_id for task_id, degree in indegree.items() if degree > 0)
        raise ValueError(f"Dependency cycle detected among tasks: {', '.join(cyclic)}")


def is_dependency_satisfied(status: TaskStatus | None) -> bool:
    """Whether a dependency in ``status`` lets its dependents run."""

    return status in DEPENDENCY_SATISFIED_STATUSES


def is_ready(task: TaskView, statuses_by_id: Mapping[str, TaskStatus]) -> bool:
    """A task is ready when every dependency reached a non-blocking terminal state."""

    return all(
        is_dependency_satisfied(statuses_by_id.get(dependency))
        for dependency in task.dependencies
    )


def ready_tasks(
    candidates: Iterable[TaskView],
    statuses_by_id: Mapping[str, TaskStatus],
) -> list[TaskView]:
    """Filter candidates down to ready tasks, keeping their order."""

    return [task for task in candidates if is_ready(task, statuses_by_id)]


def blocked_by(task: TaskView, statuses_by_id: Mapping[str, TaskStatus]) -> list[str]:
    """Dependencies still blocking ``task``."""

    return [
        dependency
        for dependency in task.dependencies
        if not is_dependency_satisfied(statuses_by_id.get(dependency))
    ]


def _required_id(raw: Mapping[str, Any], key: str, *, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where}.{key} must be a non-empty string")
    return value.strip()


def _remember_unique(seen: set[str], value: str, *, where: str) -> None:
    if value in seen:
        raise ValueError(f"{where}: duplicate id {value!r}")
    seen.add(value)


def _flag(raw: Mapping[str, Any], key: str) -> bool:
    value = raw.get(key, True)
    if not isinstance(value, bool):
        raise TypeError(f"outline.{key} must be a boolean")
    return value
