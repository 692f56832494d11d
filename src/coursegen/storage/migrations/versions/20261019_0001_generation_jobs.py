"""Create generation job, task, event and action tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_role", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("recovery_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index(
        "idx_generation_jobs_user_status",
        "generation_jobs",
        ["user_id", "status"],
    )

    op.create_table(
        "generation_tasks",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.Text(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("execution_priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("dependencies_json", sa.Text(), nullable=False),
        sa.Column("current_retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retry_count", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("error_severity", sa.String(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("is_recoverable", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id", "task_id", name="pk_generation_tasks"),
    )
    op.create_index("ix_generation_tasks_task_type", "generation_tasks", ["task_type"])
    op.create_index(
        "idx_generation_tasks_ready",
        "generation_tasks",
        ["job_id", "status", "execution_priority"],
    )
    op.create_index("idx_generation_tasks_claim", "generation_tasks", ["job_id", "claim_token"])

    op.create_table(
        "generation_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_task_events_job_id", "generation_task_events", ["job_id"])
    op.create_index("ix_generation_task_events_task_id", "generation_task_events", ["task_id"])
    op.create_index(
        "ix_generation_task_events_event_type",
        "generation_task_events",
        ["event_type"],
    )
    op.create_index(
        "idx_generation_task_events_job_time",
        "generation_task_events",
        ["job_id", "created_at"],
    )

    op.create_table(
        "generation_job_actions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_job_actions_job_id", "generation_job_actions", ["job_id"])
    op.create_index(
        "idx_generation_job_actions_job_type",
        "generation_job_actions",
        ["job_id", "action_type"],
    )


def downgrade() -> None:
    op.drop_table("generation_job_actions")
    op.drop_table("generation_task_events")
    op.drop_table("generation_tasks")
    op.drop_table("generation_jobs")
