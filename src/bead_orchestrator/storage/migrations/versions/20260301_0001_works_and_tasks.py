"""Create works, tasks, bead membership, estimation cache and audit tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "works",
        sa.Column("work_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("root_bead_id", sa.String(), nullable=True),
        sa.Column("workspace_path", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("restart_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("task_counter", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("work_id"),
    )
    op.create_index("ix_works_branch", "works", ["branch"], unique=False)
    op.create_index("ix_works_status", "works", ["status"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("work_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("score_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("token_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("over_budget", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["work_id"], ["works.work_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("work_id", "position", name="uq_tasks_work_position"),
    )
    op.create_index("ix_tasks_work_id", "tasks", ["work_id"], unique=False)
    op.create_index("ix_tasks_task_type", "tasks", ["task_type"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("idx_tasks_work_status", "tasks", ["work_id", "status"], unique=False)

    op.create_table(
        "task_beads",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("bead_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "bead_id"),
    )
    op.create_index("ix_task_beads_bead_id", "task_beads", ["bead_id"], unique=False)
    op.create_index("ix_task_beads_status", "task_beads", ["status"], unique=False)

    op.create_table(
        "task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_task_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["depends_on_task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "depends_on_task_id"),
    )

    op.create_table(
        "complexity_cache",
        sa.Column("bead_id", sa.String(), nullable=False),
        sa.Column("description_hash", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("bead_id"),
    )
    op.create_index(
        "ix_complexity_cache_description_hash",
        "complexity_cache",
        ["description_hash"],
        unique=False,
    )

    op.create_table(
        "work_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("work_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["work_id"], ["works.work_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_events_work_id", "work_events", ["work_id"], unique=False)
    op.create_index("ix_work_events_task_id", "work_events", ["task_id"], unique=False)
    op.create_index("ix_work_events_event_type", "work_events", ["event_type"], unique=False)
    op.create_index(
        "idx_work_events_work_time",
        "work_events",
        ["work_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("work_events")
    op.drop_table("complexity_cache")
    op.drop_table("task_dependencies")
    op.drop_table("task_beads")
    op.drop_table("tasks")
    op.drop_table("works")
