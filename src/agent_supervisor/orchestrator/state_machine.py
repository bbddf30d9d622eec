"""Per-task supervision state machine.

Transitions are keyed by ``(phase, event) -> next phase``. Anything missing
from the table is illegal and raises, so every step the supervisor takes is
checked against the same table the tests exercise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from agent_supervisor.orchestrator.models import TaskState, TaskStatus


class Phase(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    VALIDATING = "VALIDATING"
    NEEDS_RETRY = "NEEDS_RETRY"
    VERIFIED_COMPLETE = "VERIFIED_COMPLETE"
    BLOCKED = "BLOCKED"
    ESCALATED = "ESCALATED"


class Event(str, Enum):
    ATTEMPT_STARTED = "attempt_started"
    EXECUTION_FAILED = "execution_failed"
    OUTPUT_LOADED = "output_loaded"
    VALIDATION_FAILED = "validation_failed"
    RETRY_REQUESTED = "retry_requested"
    VERIFIED = "verified"
    BLOCKER_REPORTED = "blocker_reported"
    CEILING_EXCEEDED = "ceiling_exceeded"


TERMINAL_PHASES: frozenset[Phase] = frozenset(
    {Phase.VERIFIED_COMPLETE, Phase.BLOCKED, Phase.ESCALATED},
)

TRANSITIONS: dict[tuple[Phase, Event], Phase] = {
    (Phase.PENDING, Event.ATTEMPT_STARTED): Phase.RUNNING,
    (Phase.PENDING, Event.CEILING_EXCEEDED): Phase.ESCALATED,
    (Phase.RUNNING, Event.OUTPUT_LOADED): Phase.VALIDATING,
    (Phase.RUNNING, Event.EXECUTION_FAILED): Phase.NEEDS_RETRY,
    (Phase.RUNNING, Event.BLOCKER_REPORTED): Phase.BLOCKED,
    (Phase.VALIDATING, Event.VALIDATION_FAILED): Phase.NEEDS_RETRY,
    (Phase.VALIDATING, Event.RETRY_REQUESTED): Phase.NEEDS_RETRY,
    (Phase.VALIDATING, Event.VERIFIED): Phase.VERIFIED_COMPLETE,
    (Phase.NEEDS_RETRY, Event.ATTEMPT_STARTED): Phase.RUNNING,
    (Phase.NEEDS_RETRY, Event.CEILING_EXCEEDED): Phase.ESCALATED,
}


class InvalidTransitionError(RuntimeError):
    """Event is not allowed in the current phase."""

    def __init__(self, task_id: str, phase: Phase, event: Event) -> None:
        super().__init__(
            f"Illegal transition for task {task_id}: {phase.value} --{event.value}--> ?",
        )
        self.task_id = task_id
        self.phase = phase
        self.event = event


def next_phase(phase: Phase, event: Event) -> Phase | None:
    """Look up the transition table without raising."""

    return TRANSITIONS.get((phase, event))


def phase_for_stored_state(state: TaskState | None) -> Phase:
    """Phase a task resumes from, given its persisted record."""

    if state is None:
        return Phase.PENDING
    if state.status == TaskStatus.VERIFIED_COMPLETE:
        return Phase.VERIFIED_COMPLETE
    if state.status.is_blocker:
        return Phase.BLOCKED
    return Phase.NEEDS_RETRY


def event_for_loaded_status(status: TaskStatus) -> Event:
    """Blockers are trusted as reported; everything else gets validated."""

    if status.is_blocker:
        return Event.BLOCKER_REPORTED
    return Event.OUTPUT_LOADED


def event_for_validated_status(status: TaskStatus, *, validation_passed: bool) -> Event:
    """Decide how a loaded worker outcome leaves the VALIDATING phase.

    Self-reported ``TASK_COMPLETE`` is a claim, not a result: it goes back for
    another attempt even when validation is clean.
    """

    if not validation_passed:
        return Event.VALIDATION_FAILED
    if status == TaskStatus.VERIFIED_COMPLETE:
        return Event.VERIFIED
    return Event.RETRY_REQUESTED


@dataclass(slots=True)
class TaskStateMachine:
    """Tracks one task's phase and the path it took."""

    task_id: str
    phase: Phase = Phase.PENDING
    history: list[tuple[Phase, Event, Phase]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def apply(self, event: Event) -> Phase:
        target = next_phase(self.phase, event)
        if target is None:
            raise InvalidTransitionError(self.task_id, self.phase, event)
        self.history.append((self.phase, event, target))
        self.phase = target
        return target
