"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Work(SQLModel, table=True):
    __tablename__ = "works"  # type: ignore[bad-override]

    work_id: str = Field(primary_key=True)
    name: str
    branch: str = Field(index=True)
    root_bead_id: str | None = None
    workspace_path: str | None = None
    status: str = Field(index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    restart_count: int = Field(default=0)
    task_counter: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class WorkTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("work_id", "position", name="uq_tasks_work_position"),
        Index("idx_tasks_work_status", "work_id", "status"),
    )

    task_id: str = Field(primary_key=True)
    work_id: str = Field(
        sa_column=Column(
            ForeignKey("works.work_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    score_total: int = Field(default=0)
    token_total: int = Field(default=0)
    over_budget: bool = Field(default=False)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskBead(SQLModel, table=True):
    __tablename__ = "task_beads"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    bead_id: str = Field(primary_key=True, index=True)
    position: int
    status: str = Field(index=True)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


class ComplexityEstimate(SQLModel, table=True):
    __tablename__ = "complexity_cache"  # type: ignore[bad-override]

    bead_id: str = Field(primary_key=True)
    description_hash: str = Field(index=True)
    score: int
    tokens: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkEvent(SQLModel, table=True):
    __tablename__ = "work_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_events_work_time", "work_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    work_id: str = Field(
        sa_column=Column(
            ForeignKey("works.work_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduledTask(SQLModel, table=True):
    __tablename__ = "scheduled_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_scheduled_tasks_due", "status", "scheduled_at"),
        Index(
            "uq_scheduled_tasks_work_key",
            "work_id",
            "idempotency_key",
            unique=True,
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: str = Field(primary_key=True)
    work_id: str = Field(
        sa_column=Column(
            ForeignKey("works.work_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=5)
    idempotency_key: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    executed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessRecord(SQLModel, table=True):
    __tablename__ = "processes"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_processes_orchestrator_work",
            "work_id",
            unique=True,
            sqlite_where=text("process_type = 'orchestrator'"),
        ),
    )

    process_id: str = Field(primary_key=True)
    process_type: str = Field(index=True)
    work_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("works.work_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    pid: int
    hostname: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    heartbeat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
