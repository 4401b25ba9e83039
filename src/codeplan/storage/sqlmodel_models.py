"""SQLModel ORM tables for background job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_background_jobs_startable", "status", "created_at"),
        Index("idx_background_jobs_session", "session_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    task_type: str = Field(index=True)
    api_type: str
    status: str = Field(index=True)
    prompt_text: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    response_text: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    tokens_sent: int = Field(default=0)
    tokens_received: int = Field(default=0)
    chars_received: int = Field(default=0)
    model_used: str | None = None
    max_output_tokens: int | None = None
    status_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    cleared: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_update: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BackgroundJobEvent(SQLModel, table=True):
    __tablename__ = "background_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_background_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("background_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
