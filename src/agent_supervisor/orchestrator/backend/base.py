"""Worker interface for supervised task execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_supervisor.orchestrator.failure_classifier import WorkerFailureClassification
from agent_supervisor.orchestrator.models import (
    ExecutionContext,
    FailureClass,
    Task,
    TaskState,
)


@dataclass(slots=True)
class WorkerRequest:
    """Inputs required to execute one task attempt."""

    task: Task
    context: ExecutionContext
    payload: str
    attempt_number: int
    timeout_seconds: int
    log_path: Path

    @property
    def state_path(self) -> Path:
        """Where the worker must write its state record inside the context."""

        return self.context.path / ".supervisor" / "state" / f"{self.task.id}.json"


class WorkerRunError(RuntimeError):
    """Worker invocation failed; the attempt counts against the ceiling."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        failure_class: FailureClass = FailureClass.WORKER_NON_RETRYABLE,
        classification: WorkerFailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.failure_class = failure_class
        self.classification = classification


class WorkerTimeoutError(WorkerRunError):
    """Worker exceeded its hard timeout and was killed."""

    def __init__(self, message: str, *, classification: WorkerFailureClassification | None = None):
        super().__init__(
            message,
            transient=True,
            failure_class=FailureClass.TIMEOUT,
            classification=classification,
        )


class MissingOutputError(WorkerRunError):
    """Worker finished without writing a state record."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True, failure_class=FailureClass.MISSING_OUTPUT)


class Worker(Protocol):
    """Protocol implemented by task executors."""

    def invoke(self, request: WorkerRequest) -> TaskState:
        """Run one attempt and return the state the worker recorded."""
