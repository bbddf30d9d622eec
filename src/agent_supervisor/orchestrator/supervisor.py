"""Supervisor that drives every task through attempts, validation and retries."""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from agent_supervisor.orchestrator.backend.base import (
    Worker,
    WorkerRequest,
    WorkerRunError,
    WorkerTimeoutError,
)
from agent_supervisor.orchestrator.ledger import AttemptLedger
from agent_supervisor.orchestrator.limiter import ConcurrencyLimiter
from agent_supervisor.orchestrator.models import (
    CleanupResult,
    ExecutionContext,
    FailureClass,
    GitStatus,
    RetryFeedback,
    Task,
    TaskState,
    TaskStatus,
)
from agent_supervisor.orchestrator.prompts import PromptBuilder
from agent_supervisor.orchestrator.state_machine import (
    Event,
    Phase,
    TaskStateMachine,
    event_for_loaded_status,
    event_for_validated_status,
    phase_for_stored_state,
)
from agent_supervisor.orchestrator.state_store import StateStore
from agent_supervisor.orchestrator.validator import validate_task_state
from agent_supervisor.orchestrator.workspace import ContextCreationError
from agent_supervisor.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_BRANCH_PREFIX = "feature"

RETRY_INSTRUCTION = "Fix every issue listed above, re-run verification and write a new state file."
UNVERIFIED_COMPLETION_ISSUE = (
    "TASK_COMPLETE is not accepted as done: run tests, build and lint, commit, "
    "and report VERIFIED_COMPLETE only when everything passes."
)


class TaskSource(Protocol):
    def load_tasks(self) -> list[Task]:
        """Return the ordered, static task list for one run."""


class ContextManager(Protocol):
    def open(self, task_id: str, branch_prefix: str = ...) -> ExecutionContext:
        """Create an exclusive context for ``task_id``."""

    def sync(self, task_id: str) -> CleanupResult:
        """Copy produced artifacts to the shared directory."""

    def close(self, task_id: str, *, keep_branch: bool = ...) -> CleanupResult:
        """Tear the context down."""

    def discard_branch(self, task_id: str, branch_prefix: str = ...) -> CleanupResult:
        """Delete a branch kept by an earlier, since reset, run of ``task_id``."""


@dataclass(slots=True)
class OrchestratorContext:
    """Collaborators for one supervisor run."""

    task_source: TaskSource
    limiter: ConcurrencyLimiter
    store: StateStore
    contexts: ContextManager
    worker: Worker
    prompts: PromptBuilder = field(default_factory=PromptBuilder)
    ledger: AttemptLedger | None = None


@dataclass(slots=True)
class TaskResult:
    """How one task ended in this run."""

    task_id: str
    phase: Phase
    status: TaskStatus | None
    attempts: int = 0
    retries: int = 0
    execution_failures: int = 0
    timeouts: int = 0
    context_failed: bool = False


@dataclass(slots=True)
class RunSummary:
    """Aggregate run counters for CLI reporting."""

    processed: int = 0
    verified: int = 0
    blocked: int = 0
    escalated: int = 0
    skipped: int = 0
    not_started: int = 0
    attempts: int = 0
    retries: int = 0
    execution_failures: int = 0
    timeouts: int = 0
    context_failures: int = 0
    results: list[TaskResult] = field(default_factory=list)

    def add(self, result: TaskResult) -> None:
        self.results.append(result)
        self.processed += 1
        self.attempts += result.attempts
        self.retries += result.retries
        self.execution_failures += result.execution_failures
        self.timeouts += result.timeouts
        if result.context_failed:
            self.context_failures += 1
        elif result.phase == Phase.VERIFIED_COMPLETE:
            if result.attempts == 0:
                self.skipped += 1
            else:
                self.verified += 1
        elif result.phase == Phase.BLOCKED:
            self.blocked += 1
        elif result.phase == Phase.ESCALATED:
            self.escalated += 1


class Orchestrator:
    """Runs the static task list over a fixed pool of worker threads.

    Each pool thread owns one task until it reaches a terminal phase. A
    corrupt stored record stops new tasks from starting; tasks already in
    flight finish and the error is re-raised once the pool drains.
    """

    def __init__(
        self,
        context: OrchestratorContext,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        parallel: int | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")
        self.context = context
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.branch_prefix = branch_prefix
        self.parallel = parallel or context.limiter.max_concurrency
        self._abort = threading.Event()

    def run(self) -> RunSummary:
        tasks = self.context.task_source.load_tasks()
        summary = RunSummary()
        logger.info(
            "Starting run: %d task(s), parallel=%d, max_attempts=%d",
            len(tasks),
            self.parallel,
            self.max_attempts,
        )
        self._abort.clear()
        with ThreadPoolExecutor(
            max_workers=self.parallel,
            thread_name_prefix="supervisor",
        ) as pool:
            futures: list[Future[TaskResult | None]] = [
                pool.submit(self._process_unless_aborted, task) for task in tasks
            ]

        first_error: BaseException | None = None
        for future in futures:
            error = future.exception()
            if error is not None:
                first_error = first_error or error
                continue
            result = future.result()
            if result is None:
                summary.not_started += 1
            else:
                summary.add(result)

        logger.info(
            "Run finished: verified=%d blocked=%d escalated=%d skipped=%d attempts=%d "
            "context_failures=%d",
            summary.verified,
            summary.blocked,
            summary.escalated,
            summary.skipped,
            summary.attempts,
            summary.context_failures,
        )
        if first_error is not None:
            raise first_error
        return summary

    def _process_unless_aborted(self, task: Task) -> TaskResult | None:
        if self._abort.is_set():
            logger.info("Not starting %s: run is aborting", task.id)
            return None
        try:
            return self.process_task(task)
        except Exception:
            self._abort.set()
            raise

    def process_task(self, task: Task) -> TaskResult:
        """Drive one task to a terminal phase."""

        store = self.context.store
        stored = store.load(task.id)
        machine = TaskStateMachine(task.id, phase=phase_for_stored_state(stored))
        result = TaskResult(task_id=task.id, phase=machine.phase, status=None)

        if machine.phase == Phase.VERIFIED_COMPLETE:
            logger.info("Task %s already verified, skipping", task.id)
            result.status = TaskStatus.VERIFIED_COMPLETE
            return result
        if machine.phase == Phase.BLOCKED and stored is not None:
            logger.warning(
                "Task %s is blocked (%s): %s",
                task.id,
                stored.status.value,
                stored.blocker_context or stored.summary,
            )
            result.status = stored.status
            return result

        if stored is None:
            # Blocked and escalated runs keep their branch; a reset leaves it behind.
            self.context.contexts.discard_branch(task.id, self.branch_prefix)

        previous = stored
        while True:
            attempt_number = previous.attempt_number + 1 if previous is not None else 1
            if attempt_number > self.max_attempts:
                record = self._escalate(task, machine, previous)
                result.phase, result.status = machine.phase, record.status
                return result

            record = self._run_attempt(task, machine, attempt_number, previous, result)
            if record is None:
                # Nothing ran, so the stored record and its attempt counter stay as they were.
                result.context_failed = True
                result.phase = machine.phase
                result.status = previous.status if previous is not None else None
                return result
            result.attempts += 1
            if previous is not None:
                result.retries += 1
            if machine.is_terminal:
                result.phase, result.status = machine.phase, record.status
                return result
            previous = record

    def _run_attempt(
        self,
        task: Task,
        machine: TaskStateMachine,
        attempt_number: int,
        previous: TaskState | None,
        result: TaskResult,
    ) -> TaskState | None:
        """Run one attempt, or return ``None`` when no context could be opened."""

        with self.context.limiter.slot():
            try:
                execution_context = self.context.contexts.open(task.id, self.branch_prefix)
            except ContextCreationError as error:
                logger.warning("Task %s not run this time: %s", task.id, error)
                self._ledger_event(
                    machine.task_id,
                    event_type=FailureClass.CONTEXT_UNAVAILABLE.value,
                    phase_from=machine.phase.value,
                    phase_to=machine.phase.value,
                    details={"attempt": attempt_number, "error": str(error)},
                )
                return None

            started_at = utc_now().isoformat()
            ledger_attempt_id = self._ledger_start(task.id, attempt_number)
            logger.info("Task %s: attempt %d/%d", task.id, attempt_number, self.max_attempts)
            keep_branch = False
            try:
                self._transition(machine, Event.ATTEMPT_STARTED)
                payload = self.context.prompts.build(
                    task,
                    execution_context,
                    attempt_number=attempt_number,
                    previous_state=previous,
                )
                request = WorkerRequest(
                    task=task,
                    context=execution_context,
                    payload=payload,
                    attempt_number=attempt_number,
                    timeout_seconds=self.timeout_seconds,
                    log_path=self.context.store.log_path(task.id),
                )
                try:
                    reported = self.context.worker.invoke(request)
                except WorkerRunError as error:
                    logger.warning("Task %s attempt %d failed: %s", task.id, attempt_number, error)
                    result.execution_failures += 1
                    if isinstance(error, WorkerTimeoutError):
                        result.timeouts += 1
                    return self._record_execution_failure(
                        task,
                        machine,
                        attempt_number,
                        previous,
                        started_at=started_at,
                        error=error,
                        ledger_attempt_id=ledger_attempt_id,
                    )

                record = self._record_outcome(task, machine, attempt_number, reported)
                keep_branch = machine.is_terminal
                self._ledger_finish(
                    ledger_attempt_id,
                    status=record.status.value,
                    issue_count=len(record.validation_issues or []),
                )
                return record
            finally:
                for outcome in (
                    self.context.contexts.sync(task.id),
                    self.context.contexts.close(task.id, keep_branch=keep_branch),
                ):
                    if not outcome.ok:
                        logger.warning(
                            "Task %s: context cleanup reported %d problem(s)",
                            task.id,
                            len(outcome.errors),
                        )

    def _record_outcome(
        self,
        task: Task,
        machine: TaskStateMachine,
        attempt_number: int,
        reported: TaskState,
    ) -> TaskState:
        state = dataclasses.replace(reported, task_id=task.id, attempt_number=attempt_number)

        if self._transition(machine, event_for_loaded_status(state.status)) == Phase.BLOCKED:
            logger.warning("Task %s reported blocker %s", task.id, state.status.value)
            self.context.store.save(state)
            return state

        validation = validate_task_state(state)
        event = event_for_validated_status(state.status, validation_passed=validation.valid)
        if event == Event.VALIDATION_FAILED:
            logger.info(
                "Task %s attempt %d failed validation with %d issue(s)",
                task.id,
                attempt_number,
                len(validation.issues),
            )
            state = dataclasses.replace(
                state,
                status=TaskStatus.NEEDS_RETRY,
                validation_issues=list(validation.issues),
                feedback=RetryFeedback(
                    issues=[issue.message for issue in validation.issues],
                    instruction=RETRY_INSTRUCTION,
                ),
            )
        elif event == Event.RETRY_REQUESTED and state.status == TaskStatus.TASK_COMPLETE:
            logger.info("Task %s reported unverified completion, retrying", task.id)
            state = dataclasses.replace(
                state,
                status=TaskStatus.NEEDS_RETRY,
                feedback=RetryFeedback(
                    issues=[UNVERIFIED_COMPLETION_ISSUE],
                    instruction=RETRY_INSTRUCTION,
                ),
            )
        elif event == Event.RETRY_REQUESTED:
            logger.info("Task %s asked for another attempt", task.id)
            state = dataclasses.replace(
                state,
                status=TaskStatus.NEEDS_RETRY,
                feedback=_reported_retry_feedback(state),
            )

        self._transition(machine, event)
        self.context.store.save(state)
        if machine.phase == Phase.VERIFIED_COMPLETE:
            logger.info("Task %s verified complete on attempt %d", task.id, attempt_number)
        return state

    def _record_execution_failure(  # noqa: PLR0913
        self,
        task: Task,
        machine: TaskStateMachine,
        attempt_number: int,
        previous: TaskState | None,
        *,
        started_at: str,
        error: WorkerRunError,
        ledger_attempt_id: int | None,
    ) -> TaskState:
        failure_class = error.failure_class
        message = f"Attempt {attempt_number} failed ({failure_class.value}): {error}"
        record = TaskState(
            task_id=task.id,
            status=TaskStatus.NEEDS_RETRY,
            attempt_number=attempt_number,
            started_at=started_at,
            completed_at=utc_now().isoformat(),
            git_status=previous.git_status if previous is not None else GitStatus(),
            files_changed=list(previous.files_changed) if previous is not None else [],
            summary=message,
            branch=previous.branch if previous is not None else None,
            commit_sha=previous.commit_sha if previous is not None else None,
            feedback=RetryFeedback(issues=[message], instruction=RETRY_INSTRUCTION),
        )
        if error.classification is not None:
            details = error.classification.to_event_details()
        else:
            details = {"failure_class": failure_class.value}
        self._transition(machine, Event.EXECUTION_FAILED, details=details)
        self.context.store.save(record)
        self._ledger_finish(
            ledger_attempt_id,
            status="execution_failed",
            failure_class=failure_class.value,
            reason_code=error.classification.reason_code if error.classification else None,
            error_summary=str(error),
        )
        return record

    def _escalate(
        self,
        task: Task,
        machine: TaskStateMachine,
        previous: TaskState | None,
    ) -> TaskState:
        self._transition(machine, Event.CEILING_EXCEEDED)
        now = utc_now().isoformat()
        context = f"Max retries exceeded ({self.max_attempts} attempts)."
        if previous is None:
            record = TaskState(
                task_id=task.id,
                status=TaskStatus.HUMAN_REVIEW_REQUIRED,
                attempt_number=max(1, self.max_attempts),
                started_at=now,
                completed_at=now,
                summary=context,
                blocker_context=context,
            )
        else:
            record = dataclasses.replace(
                previous,
                status=TaskStatus.HUMAN_REVIEW_REQUIRED,
                completed_at=now,
                blocker_context=(
                    f"{context} Last status: {previous.status.value}. {previous.summary}".strip()
                ),
            )
        self.context.store.save(record)
        logger.warning("Task %s escalated for human review: %s", task.id, context)
        return record

    def _transition(
        self,
        machine: TaskStateMachine,
        event: Event,
        *,
        details: dict[str, object] | None = None,
    ) -> Phase:
        before = machine.phase
        after = machine.apply(event)
        logger.debug("Task %s: %s --%s--> %s", machine.task_id, before.value, event.value, after.value)
        self._ledger_event(
            machine.task_id,
            event_type=event.value,
            phase_from=before.value,
            phase_to=after.value,
            details=details,
        )
        return after

    def _ledger_event(
        self,
        task_id: str,
        *,
        event_type: str,
        phase_from: str,
        phase_to: str,
        details: dict[str, object] | None = None,
    ) -> None:
        if self.context.ledger is None:
            return
        try:
            self.context.ledger.add_event(
                task_id=task_id,
                event_type=event_type,
                phase_from=phase_from,
                phase_to=phase_to,
                details=details,
            )
        except SQLAlchemyError as error:
            logger.warning("Ledger event write failed for %s: %s", task_id, error)

    def _ledger_start(self, task_id: str, attempt_number: int) -> int | None:
        if self.context.ledger is None:
            return None
        try:
            return self.context.ledger.start_attempt(task_id=task_id, attempt_no=attempt_number)
        except SQLAlchemyError as error:
            logger.warning("Ledger attempt write failed for %s: %s", task_id, error)
            return None

    def _ledger_finish(self, attempt_id: int | None, **fields: object) -> None:
        if self.context.ledger is None or attempt_id is None:
            return
        try:
            self.context.ledger.finish_attempt(attempt_id, **fields)  # type: ignore[arg-type]
        except SQLAlchemyError as error:
            logger.warning("Ledger attempt update failed for %s: %s", attempt_id, error)


def _reported_retry_feedback(state: TaskState) -> RetryFeedback:
    """Carry the worker's own account of what is left into the next prompt."""

    issues = list(state.feedback.issues) if state.feedback is not None else []
    for text in (state.blocker_context, state.summary):
        if text and text not in issues:
            issues.append(text)
    instruction = state.feedback.instruction if state.feedback is not None else ""
    return RetryFeedback(issues=issues, instruction=instruction or RETRY_INSTRUCTION)
