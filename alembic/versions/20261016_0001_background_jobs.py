"""Create background job and job event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "background_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("api_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("prompt_text", sa.Text(), server_default="", nullable=False),
        sa.Column("response_text", sa.Text(), server_default="", nullable=False),
        sa.Column("tokens_sent", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tokens_received", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("chars_received", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("max_output_tokens", sa.Integer(), nullable=True),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("cleared", sa.Boolean(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_background_jobs_session_id", "background_jobs", ["session_id"])
    op.create_index("ix_background_jobs_task_type", "background_jobs", ["task_type"])
    op.create_index("ix_background_jobs_status", "background_jobs", ["status"])
    op.create_index("ix_background_jobs_failure_class", "background_jobs", ["failure_class"])
    op.create_index(
        "idx_background_jobs_startable",
        "background_jobs",
        ["status", "created_at"],
    )
    op.create_index(
        "idx_background_jobs_session",
        "background_jobs",
        ["session_id", "created_at"],
    )

    op.create_table(
        "background_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["background_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_background_job_events_job_id", "background_job_events", ["job_id"])
    op.create_index(
        "idx_background_job_events_job_time",
        "background_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_background_job_events_job_time", table_name="background_job_events")
    op.drop_index("ix_background_job_events_job_id", table_name="background_job_events")
    op.drop_table("background_job_events")
    op.drop_index("idx_background_jobs_session", table_name="background_jobs")
    op.drop_index("idx_background_jobs_startable", table_name="background_jobs")
    op.drop_index("ix_background_jobs_failure_class", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status", table_name="background_jobs")
    op.drop_index("ix_background_jobs_task_type", table_name="background_jobs")
    op.drop_index("ix_background_jobs_session_id", table_name="background_jobs")
    op.drop_table("background_jobs")
