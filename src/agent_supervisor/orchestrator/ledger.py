"""SQLite audit trail of task attempts and phase transitions."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlmodel import Session, col, select

from agent_supervisor.storage.alembic_runner import upgrade_head
from agent_supervisor.storage.common import build_sqlite_engine, ensure_utc, utc_now
from agent_supervisor.storage.sqlmodel_models import TaskAttempt, TaskEvent

_ERROR_SUMMARY_MAX_CHARS = 2000


@dataclass(slots=True)
class AttemptView:
    task_id: str
    attempt_no: int
    status: str
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int | None
    failure_class: str | None
    reason_code: str | None
    issue_count: int
    error_summary: str | None


@dataclass(slots=True)
class EventView:
    task_id: str
    event_type: str
    phase_from: str | None
    phase_to: str | None
    details: dict[str, object]
    created_at: datetime


class AttemptLedger:
    """Ledger persistence facade backed by SQLModel + SQLite.

    Writes from concurrent pool threads are serialized with a lock; the
    engine uses ``NullPool`` so each session gets its own connection.
    """

    def __init__(self, db_path: Path, *, run_id: str) -> None:
        self.db_path = db_path
        self.run_id = run_id
        self.engine = build_sqlite_engine(db_path=db_path)
        self._lock = threading.Lock()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def start_attempt(self, *, task_id: str, attempt_no: int) -> int:
        """Record an attempt start and return its row id."""

        with self._lock, Session(self.engine) as session:
            row = TaskAttempt(
                run_id=self.run_id,
                task_id=task_id,
                attempt_no=attempt_no,
                status="running",
                started_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.attempt_id is None:
                raise RuntimeError("Ledger did not assign an attempt id")
            return row.attempt_id

    def finish_attempt(  # noqa: PLR0913
        self,
        attempt_id: int,
        *,
        status: str,
        failure_class: str | None = None,
        reason_code: str | None = None,
        issue_count: int = 0,
        error_summary: str | None = None,
    ) -> None:
        with self._lock, Session(self.engine) as session:
            row = session.get(TaskAttempt, attempt_id)
            if row is None:
                raise KeyError(f"Unknown ledger attempt id: {attempt_id}")
            finished_at = utc_now()
            row.status = status
            row.finished_at = finished_at
            row.duration_ms = int(
                (finished_at - ensure_utc(row.started_at)).total_seconds() * 1000,
            )
            row.failure_class = failure_class
            row.reason_code = reason_code
            row.issue_count = issue_count
            row.error_summary = (
                error_summary[:_ERROR_SUMMARY_MAX_CHARS] if error_summary is not None else None
            )
            session.add(row)
            session.commit()

    def add_event(
        self,
        *,
        task_id: str,
        event_type: str,
        phase_from: str | None = None,
        phase_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with self._lock, Session(self.engine) as session:
            session.add(
                TaskEvent(
                    run_id=self.run_id,
                    task_id=task_id,
                    event_type=event_type,
                    phase_from=phase_from,
                    phase_to=phase_to,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_attempts(self, task_id: str) -> list[AttemptView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskAttempt)
                .where(TaskAttempt.task_id == task_id)
                .order_by(col(TaskAttempt.started_at), col(TaskAttempt.attempt_id)),
            ).all()
            return [
                AttemptView(
                    task_id=row.task_id,
                    attempt_no=row.attempt_no,
                    status=row.status,
                    started_at=ensure_utc(row.started_at),
                    finished_at=ensure_utc(row.finished_at) if row.finished_at else None,
                    duration_ms=row.duration_ms,
                    failure_class=row.failure_class,
                    reason_code=row.reason_code,
                    issue_count=row.issue_count,
                    error_summary=row.error_summary,
                )
                for row in rows
            ]

    def list_events(self, task_id: str) -> list[EventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at), col(TaskEvent.id)),
            ).all()
            return [
                EventView(
                    task_id=row.task_id,
                    event_type=row.event_type,
                    phase_from=row.phase_from,
                    phase_to=row.phase_to,
                    details=json.loads(row.details_json) if row.details_json else {},
                    created_at=ensure_utc(row.created_at),
                )
                for row in rows
            ]
