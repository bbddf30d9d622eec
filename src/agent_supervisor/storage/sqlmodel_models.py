"""SQLModel ORM tables for the attempt ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskAttempt(SQLModel, table=True):
    __tablename__ = "task_attempts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_attempts_task_time", "task_id", "started_at"),)

    attempt_id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    task_id: str = Field(index=True)
    attempt_no: int
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    failure_class: str | None = Field(default=None, index=True)
    reason_code: str | None = None
    issue_count: int = Field(default=0)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    task_id: str = Field(index=True)
    event_type: str = Field(index=True)
    phase_from: str | None = None
    phase_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
