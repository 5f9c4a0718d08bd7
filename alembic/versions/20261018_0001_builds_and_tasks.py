"""Create builds and tasks queue tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

_ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "builds",
        sa.Column("id", _ID_TYPE, nullable=False),
        sa.Column("job", sa.String(length=255), nullable=False),
        sa.Column("build_number", sa.Integer(), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=False),
        sa.Column("repo_url", sa.Text(), nullable=False),
        sa.Column("commit_sha", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), server_default="PROCESSING", nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job", "build_number", name="uq_builds_job_build_number"),
    )
    op.create_index(
        "idx_builds_status_created",
        "builds",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "tasks",
        sa.Column("id", _ID_TYPE, nullable=False),
        sa.Column("build_id", _ID_TYPE, nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="PENDING", nullable=False),
        sa.Column("attempt", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="3", nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "attempt >= 0 AND attempt <= max_attempts",
            name="ck_tasks_attempt_bounds",
        ),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tasks_type"), "tasks", ["type"], unique=False)
    op.create_index(op.f("ix_tasks_status"), "tasks", ["status"], unique=False)
    op.create_index(
        "idx_tasks_queue",
        "tasks",
        ["type", "status", "run_after", "created_at"],
        unique=False,
    )
    op.create_index("idx_tasks_build", "tasks", ["build_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_tasks_build", table_name="tasks")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_index(op.f("ix_tasks_status"), table_name="tasks")
    op.drop_index(op.f("ix_tasks_type"), table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("idx_builds_status_created", table_name="builds")
    op.drop_table("builds")
