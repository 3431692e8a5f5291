"""SQLModel ORM tables for task history and the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, text
from sqlmodel import Field, SQLModel


class SpiderTask(SQLModel, table=True):
    __tablename__ = "spider_tasks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_type: str
    params_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    result_count: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    config_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class SpiderTaskLog(SQLModel, table=True):
    __tablename__ = "spider_task_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_spider_task_logs_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("spider_tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    level: str | None = None
    message: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class SpiderQueueItem(SQLModel, table=True):
    __tablename__ = "spider_queue_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_spider_queue_items_priority", text("priority DESC"), "created_at"),
        Index(
            "uq_spider_queue_items_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    task_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("spider_tasks.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
