"""SQLModel ORM tables for generation jobs and tasks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_user_status", "user_id", "status"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    user_role: str
    title: str
    status: str = Field(index=True)
    progress_percent: int = Field(default=0)
    recovery_attempts: int = Field(default=0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("job_id", "task_id", name="pk_generation_tasks"),
        Index("idx_generation_tasks_ready", "job_id", "status", "execution_priority"),
        Index("idx_generation_tasks_claim", "job_id", "claim_token"),
    )

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str = Field(sa_column=Column(Text, nullable=False))
    task_type: str = Field(index=True)
    status: str
    execution_priority: int = Field(default=0)
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    current_retry_count: int = Field(default=0)
    max_retry_count: int = Field(default=3)
    input_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_details: str | None = Field(default=None, sa_column=Column(Text))
    error_severity: str | None = None
    error_category: str | None = None
    is_recoverable: bool = Field(default=True)
    claim_token: str | None = None
    run_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_task_events_job_time", "job_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJobAction(SQLModel, table=True):
    __tablename__ = "generation_job_actions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_job_actions_job_type", "job_id", "action_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    action_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContentCacheEntry(SQLModel, table=True):
    __tablename__ = "content_cache"  # type: ignore[bad-override]

    cache_key: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    content_json: str = Field(sa_column=Column(Text, nullable=False))
    hit_count: int = Field(default=0)
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_hit_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
