"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from coursegen.storage.common import build_sqlite_engine

# Shipped inside the package so an installed wheel can migrate its own database.
MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def _config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    command.upgrade(_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database; None before the first upgrade."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
