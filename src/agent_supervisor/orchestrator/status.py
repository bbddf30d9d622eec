"""Queue status overview built from task definitions and stored records."""

from __future__ import annotations

from dataclasses import dataclass, field

from agent_supervisor.orchestrator.models import Task, TaskState, TaskStatus
from agent_supervisor.orchestrator.state_store import CorruptStateError, StateStore


@dataclass(slots=True)
class StatusEntry:
    task_id: str
    title: str
    state: TaskState | None = None
    error: str | None = None


@dataclass(slots=True)
class QueueStatus:
    completed: list[StatusEntry] = field(default_factory=list)
    in_progress: list[StatusEntry] = field(default_factory=list)
    blocked: list[StatusEntry] = field(default_factory=list)
    pending: list[StatusEntry] = field(default_factory=list)
    corrupt: list[StatusEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.completed)
            + len(self.in_progress)
            + len(self.blocked)
            + len(self.pending)
            + len(self.corrupt)
        )


def collect_status(tasks: list[Task], store: StateStore) -> QueueStatus:
    """Bucket every task by its stored record; unreadable records are reported, not raised."""

    status = QueueStatus()
    for task in tasks:
        entry = StatusEntry(task_id=task.id, title=task.title)
        try:
            entry.state = store.load(task.id)
        except CorruptStateError as error:
            entry.error = error.reason
            status.corrupt.append(entry)
            continue
        if entry.state is None:
            status.pending.append(entry)
        elif entry.state.status == TaskStatus.VERIFIED_COMPLETE:
            status.completed.append(entry)
        elif entry.state.status.is_blocker:
            status.blocked.append(entry)
        else:
            status.in_progress.append(entry)
    return status


def live_task_ids(tasks: list[Task], store: StateStore) -> set[str]:
    """Tasks that may still run: pending or mid-retry."""

    live: set[str] = set()
    for task in tasks:
        try:
            state = store.load(task.id)
        except CorruptStateError:
            live.add(task.id)
            continue
        if state is None or not state.status.is_terminal:
            live.add(task.id)
    return live
