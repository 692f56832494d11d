from pathlib import Path

import allure
from sqlalchemy import inspect

from coursegen.engine.repository import JobRepository
from coursegen.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = JobRepository(db_path)
    repository.init_schema()

    assert current_revision(db_path) == "20261019_0002"
    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "generation_jobs",
        "generation_tasks",
        "generation_task_events",
        "generation_job_actions",
        "content_cache",
    } <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.list_jobs() == []
    repository.close()
