"""Controllers for supervisor CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from agent_supervisor.config import Settings
from agent_supervisor.orchestrator.backend import CliAgentWorker
from agent_supervisor.orchestrator.ledger import AttemptLedger
from agent_supervisor.orchestrator.limiter import ConcurrencyLimiter
from agent_supervisor.orchestrator.prompts import PromptBuilder
from agent_supervisor.orchestrator.state_store import StateStore
from agent_supervisor.orchestrator.status import StatusEntry, collect_status, live_task_ids
from agent_supervisor.orchestrator.supervisor import Orchestrator, OrchestratorContext, TaskResult
from agent_supervisor.orchestrator.task_source import TaskLoader
from agent_supervisor.orchestrator.workspace import (
    ExecutionContextManager,
    GitWorktreeBackend,
    VcsError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StartCommand:
    """CLI input for a supervisor run."""

    project_dir: Path | None
    parallel: int | None = None
    max_attempts: int | None = None
    timeout_seconds: int | None = None
    worker_command: str | None = None
    use_ledger: bool = True


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for commands that only need the project location."""

    project_dir: Path | None


@dataclass(slots=True)
class ResetCommand:
    project_dir: Path | None
    task_id: str | None
    all_tasks: bool = False


@dataclass(slots=True)
class CreateTaskCommand:
    project_dir: Path | None
    description: str


@dataclass(slots=True)
class HistoryCommand:
    project_dir: Path | None
    task_id: str


class SupervisorCliController:
    """Coordinates run, inspection and maintenance CLI operations."""

    def start(self, command: StartCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        if command.parallel is not None:
            settings.scheduling.parallel = command.parallel
        if command.max_attempts is not None:
            settings.scheduling.max_attempts = command.max_attempts
        if command.timeout_seconds is not None:
            settings.scheduling.timeout_seconds = command.timeout_seconds
        if command.worker_command is not None:
            settings.worker.command_template = command.worker_command
        if not command.use_ledger:
            settings.ledger.enabled = False
        settings.validate()

        vcs = GitWorktreeBackend(settings.project_dir)
        try:
            vcs.ensure_repository()
        except VcsError as error:
            raise ValueError(f"{settings.project_dir} is not a git repository: {error}") from error

        store = StateStore(settings.shared_dir)
        store.ensure_logs_dir()
        contexts = _context_manager(settings, vcs)
        # No context can be live before this run starts; leftovers are from a crash.
        stale = contexts.prune(frozenset())
        for message in stale.errors:
            logger.warning(message)

        run_id = uuid4().hex
        with _ledger(settings, run_id=run_id) as ledger:
            orchestrator = Orchestrator(
                OrchestratorContext(
                    task_source=TaskLoader(settings.tasks_dir),
                    limiter=ConcurrencyLimiter(settings.scheduling.parallel),
                    store=store,
                    contexts=contexts,
                    worker=CliAgentWorker(settings.worker.command_template),
                    prompts=PromptBuilder(settings.templates_dir),
                    ledger=ledger,
                ),
                max_attempts=settings.scheduling.max_attempts,
                timeout_seconds=settings.scheduling.timeout_seconds,
                branch_prefix=settings.scheduling.branch_prefix,
                parallel=settings.scheduling.parallel,
            )
            summary = orchestrator.run()

        lines = [
            "Run summary: "
            f"processed={summary.processed} verified={summary.verified} "
            f"blocked={summary.blocked} escalated={summary.escalated} "
            f"skipped={summary.skipped} attempts={summary.attempts} "
            f"retries={summary.retries} execution_failures={summary.execution_failures} "
            f"timeouts={summary.timeouts} context_failures={summary.context_failures}",
        ]
        lines.extend(_result_line(result) for result in summary.results)
        return lines

    def status(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        tasks = TaskLoader(settings.tasks_dir).load_tasks()
        queue = collect_status(tasks, StateStore(settings.shared_dir))
        if queue.total == 0:
            return [f"No tasks found in {settings.tasks_dir}"]

        lines = [f"Queue status: {queue.total} task(s)"]
        for title, entries in (
            ("Completed", queue.completed),
            ("In progress", queue.in_progress),
            ("Blocked", queue.blocked),
            ("Pending", queue.pending),
            ("Corrupt", queue.corrupt),
        ):
            if not entries:
                continue
            lines.append(f"{title} ({len(entries)}):")
            lines.extend(_status_line(entry) for entry in entries)
        return lines

    def reset(self, command: ResetCommand) -> list[str]:
        if command.all_tasks == (command.task_id is not None):
            raise ValueError("Pass either a task id or --all.")
        settings = Settings.from_env(project_dir=command.project_dir)
        store = StateStore(settings.shared_dir)
        task_ids = store.list_task_ids() if command.all_tasks else [command.task_id or ""]

        lines: list[str] = []
        for task_id in task_ids:
            if store.reset(task_id):
                lines.append(f"Reset {task_id}: next run starts at attempt 1")
            else:
                lines.append(f"No stored state for {task_id}")
        return lines or ["No stored state to reset"]

    def create(self, command: CreateTaskCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        task = TaskLoader(settings.tasks_dir).create_task(command.description)
        return [f"Created task {task.id}: {task.path}"]

    def prune(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        tasks = TaskLoader(settings.tasks_dir).load_tasks()
        live = live_task_ids(tasks, StateStore(settings.shared_dir))
        contexts = _context_manager(settings, GitWorktreeBackend(settings.project_dir))
        before = {context.task_id for context in contexts.list_active()}
        result = contexts.prune(live)
        removed = sorted(before - live)
        lines = [f"Pruned {len(removed)} orphaned context(s)"]
        lines.extend(f"- {task_id}" for task_id in removed)
        lines.extend(f"warning: {message}" for message in result.errors)
        return lines

    def contexts(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        contexts = _context_manager(settings, GitWorktreeBackend(settings.project_dir))
        active = contexts.list_active()
        if not active:
            return ["No active execution contexts"]
        return [f"{context.task_id}: {context.path} [{context.branch}]" for context in active]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        lines: list[str] = []
        state = StateStore(settings.shared_dir).load(command.task_id)
        if state is None:
            lines.append(f"{command.task_id}: pending (no stored state)")
        else:
            lines.append(
                f"{command.task_id}: {state.status.value} attempt {state.attempt_number} "
                f"completed {state.completed_at}",
            )

        if not settings.ledger.enabled or not settings.ledger_path.exists():
            lines.append("Attempt ledger is not available.")
            return lines

        with _ledger(settings, run_id="history") as ledger:
            if ledger is None:
                return lines
            attempts = ledger.list_attempts(command.task_id)
            events = ledger.list_events(command.task_id)

        lines.append(f"Attempts ({len(attempts)}):")
        for attempt in attempts:
            detail = f" {attempt.failure_class}" if attempt.failure_class else ""
            duration = f" {attempt.duration_ms}ms" if attempt.duration_ms is not None else ""
            lines.append(
                f"- #{attempt.attempt_no} {attempt.status}{detail}{duration} "
                f"started {attempt.started_at.isoformat(timespec='seconds')}",
            )
            if attempt.error_summary:
                lines.append(f"    {attempt.error_summary}")
        lines.append(f"Events ({len(events)}):")
        lines.extend(
            f"- {event.created_at.isoformat(timespec='seconds')} {event.event_type}: "
            f"{event.phase_from} -> {event.phase_to}"
            for event in events
        )
        return lines


def _result_line(result: TaskResult) -> str:
    if result.context_failed:
        return f"- {result.task_id}: not run (execution context unavailable)"
    status = result.status.value if result.status else "unknown"
    return f"- {result.task_id}: {status} (attempts this run: {result.attempts})"


def _status_line(entry: StatusEntry) -> str:
    if entry.error is not None:
        return f"  {entry.task_id}: unreadable state ({entry.error})"
    if entry.state is None:
        return f"  {entry.task_id}: {entry.title}"
    line = f"  {entry.task_id}: {entry.state.status.value} (attempt {entry.state.attempt_number})"
    if entry.state.status.is_blocker and entry.state.blocker_context:
        line += f" - {entry.state.blocker_context}"
    return line


def _context_manager(settings: Settings, vcs: GitWorktreeBackend) -> ExecutionContextManager:
    return ExecutionContextManager(settings.project_dir, vcs, shared_dir=settings.shared_dir)


@contextmanager
def _ledger(settings: Settings, *, run_id: str) -> Iterator[AttemptLedger | None]:
    if not settings.ledger.enabled:
        yield None
        return
    ledger = AttemptLedger(settings.ledger_path, run_id=run_id)
    ledger.init_schema()
    try:
        yield ledger
    finally:
        ledger.close()
