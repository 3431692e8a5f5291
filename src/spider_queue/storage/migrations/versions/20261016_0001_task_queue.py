"""Create task history, task log and job queue tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "spider_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_spider_tasks_status", "spider_tasks", ["status"], unique=False)
    op.create_index("ix_spider_tasks_started_at", "spider_tasks", ["started_at"], unique=False)

    op.create_table(
        "spider_task_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("level", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), server_default="", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["spider_tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_spider_task_logs_task_time",
        "spider_task_logs",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_spider_task_logs_created_at",
        "spider_task_logs",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "spider_queue_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("task_id", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["spider_tasks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_spider_queue_items_status",
        "spider_queue_items",
        ["status"],
        unique=False,
    )
    op.execute(
        sa.text(
            """
            CREATE INDEX IF NOT EXISTS idx_spider_queue_items_priority
            ON spider_queue_items (priority DESC, created_at ASC)
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_spider_queue_items_single_running
            ON spider_queue_items (status)
            WHERE status = 'running'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_spider_queue_items_single_running"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_spider_queue_items_priority"))
    op.drop_index("ix_spider_queue_items_status", table_name="spider_queue_items")
    op.drop_table("spider_queue_items")
    op.drop_index("ix_spider_task_logs_created_at", table_name="spider_task_logs")
    op.drop_index("idx_spider_task_logs_task_time", table_name="spider_task_logs")
    op.drop_table("spider_task_logs")
    op.drop_index("ix_spider_tasks_started_at", table_name="spider_tasks")
    op.drop_index("ix_spider_tasks_status", table_name="spider_tasks")
    op.drop_table("spider_tasks")
