"""Add control plane scheduled task queue and process heartbeat tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260305_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_tasks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("work_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["work_id"], ["works.work_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduled_tasks_work_id", "scheduled_tasks", ["work_id"], unique=False)
    op.create_index(
        "ix_scheduled_tasks_task_type",
        "scheduled_tasks",
        ["task_type"],
        unique=False,
    )
    op.create_index("ix_scheduled_tasks_status", "scheduled_tasks", ["status"], unique=False)
    op.create_index(
        "idx_scheduled_tasks_due",
        "scheduled_tasks",
        ["status", "scheduled_at"],
        unique=False,
    )
    op.create_index(
        "uq_scheduled_tasks_work_key",
        "scheduled_tasks",
        ["work_id", "idempotency_key"],
        unique=True,
        sqlite_where=sa.text("idempotency_key IS NOT NULL"),
    )

    op.create_table(
        "processes",
        sa.Column("process_id", sa.String(), nullable=False),
        sa.Column("process_type", sa.String(), nullable=False),
        sa.Column("work_id", sa.String(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=False),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["work_id"], ["works.work_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("process_id"),
    )
    op.create_index("ix_processes_process_type", "processes", ["process_type"], unique=False)
    op.create_index("ix_processes_work_id", "processes", ["work_id"], unique=False)
    op.create_index(
        "uq_processes_orchestrator_work",
        "processes",
        ["work_id"],
        unique=True,
        sqlite_where=sa.text("process_type = 'orchestrator'"),
    )


def downgrade() -> None:
    op.drop_table("processes")
    op.drop_table("scheduled_tasks")
