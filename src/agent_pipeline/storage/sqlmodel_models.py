"""SQLModel ORM tables for task state storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class PipelineTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_created", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    project: str = Field(index=True)
    project_path: str = ""
    status: str = Field(index=True)
    branch_name: str
    cost_usd: float = 0.0
    publication_url: str | None = None
    publication_id: str | None = None
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineTaskStep(SQLModel, table=True):
    __tablename__ = "task_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "step_index", name="uq_task_steps_task_index"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_index: int
    role: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    outcome: str
    attempt: int = 1
    output: str = Field(default="", sa_column=Column(Text, nullable=False))
    directive_json: str | None = Field(default=None, sa_column=Column(Text))
    cost_usd: float = 0.0
    failure_class: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))


class PipelineTaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
