"""SQLModel ORM tables for the build/task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

# BIGINT on PostgreSQL, INTEGER (rowid alias) on SQLite.
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class Build(SQLModel, table=True):
    __tablename__ = "builds"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job", "build_number", name="uq_builds_job_build_number"),
        Index("idx_builds_status_created", "status", "created_at"),
    )

    id: int | None = Field(default=None, sa_column=Column(_ID_TYPE, primary_key=True))
    job: str
    build_number: int
    branch: str
    repo_url: str = Field(sa_column=Column(Text, nullable=False))
    commit_sha: str
    status: str = Field(default="PROCESSING")
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "type", "status", "run_after", "created_at"),
        Index("idx_tasks_build", "build_id", "created_at"),
    )

    id: int | None = Field(default=None, sa_column=Column(_ID_TYPE, primary_key=True))
    build_id: int = Field(
        sa_column=Column(
            _ID_TYPE,
            ForeignKey("builds.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    type: str = Field(index=True)
    status: str = Field(default="PENDING", index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, sa_column=Column(_ID_TYPE, primary_key=True))
    task_id: int = Field(
        sa_column=Column(
            _ID_TYPE,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
