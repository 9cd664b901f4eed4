"""SQLModel ORM tables for the job store and the document store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "run_at", "created_at"),
        Index("idx_jobs_lease", "status", "lease_until"),
        Index(
            "uq_jobs_active_dedupe_key",
            "repository_id",
            "dedupe_key",
            unique=True,
            sqlite_where=text(
                "dedupe_key IS NOT NULL AND status IN "
                "('pending', 'claimed', 'cloning', 'analyzing', 'gathering', 'running')",
            ),
        ),
    )

    job_id: str = Field(primary_key=True)
    repository_id: str = Field(index=True)
    source: str
    branch: str = Field(default="main")
    profile: str | None = None
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    locked_by: str | None = Field(default=None, index=True)
    lease_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    dedupe_key: str | None = None
    progress_message: str | None = None
    current_step: int | None = None
    total_steps: int | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    cancel_requested: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    docs_count: int | None = None
    run_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Document(SQLModel, table=True):
    __tablename__ = "documents"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("repository_id", "source_key", name="uq_documents_repository_source_key"),
        Index("idx_documents_job", "job_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(ForeignKey("jobs.job_id"), nullable=False),
    )
    repository_id: str = Field(index=True)
    source_key: str
    slug: str
    title: str
    kind: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    chapter_index: int = Field(default=0)
    run_id: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
