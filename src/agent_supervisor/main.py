"""CLI entrypoint for agent-supervisor."""

import logging
from pathlib import Path

import rich_click as click

from agent_supervisor import __version__
from agent_supervisor.orchestrator.controllers import (
    CreateTaskCommand,
    HistoryCommand,
    ProjectCommand,
    ResetCommand,
    StartCommand,
    SupervisorCliController,
)
from agent_supervisor.orchestrator.state_store import CorruptStateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SupervisorCliController()

_project_dir_option = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root containing `.supervisor/` (default: current directory).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-supervisor")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def agent_supervisor(verbose: bool) -> None:
    """Supervise autonomous coding agents over a queue of tasks.

    Tasks live in `.supervisor/tasks/*.md`; each runs in its own git worktree
    and only **VERIFIED_COMPLETE** with a plausible state record counts as done.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_supervisor.command("start")
@_project_dir_option
@click.option(
    "--parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent tasks (default 5 or AGENT_SUPERVISOR_PARALLEL).",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts per task before escalation (default 3).",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Hard wall-clock limit per attempt (default 3600).",
)
@click.option(
    "--worker-command",
    default=None,
    help="Worker command template with {prompt} or {prompt_file}.",
)
@click.option("--no-ledger", is_flag=True, help="Do not record attempts in the SQLite ledger.")
def start(  # noqa: PLR0913
    project_dir: Path | None,
    parallel: int | None,
    max_attempts: int | None,
    timeout_seconds: int | None,
    worker_command: str | None,
    no_ledger: bool,
) -> None:
    """Run every unfinished task until it is verified, blocked or escalated."""

    _emit_lines(
        _call(
            CONTROLLER.start,
            StartCommand(
                project_dir=project_dir,
                parallel=parallel,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                worker_command=worker_command,
                use_ledger=not no_ledger,
            ),
        ),
    )


@agent_supervisor.command("status")
@_project_dir_option
def status(project_dir: Path | None) -> None:
    """Show completed, in-progress, blocked and pending tasks."""

    _emit_lines(_call(CONTROLLER.status, ProjectCommand(project_dir=project_dir)))


@agent_supervisor.command("reset")
@_project_dir_option
@click.argument("task_id", required=False)
@click.option("--all", "all_tasks", is_flag=True, help="Reset every task with stored state.")
def reset(project_dir: Path | None, task_id: str | None, all_tasks: bool) -> None:
    """Clear stored state so a task starts again from attempt 1."""

    _emit_lines(
        _call(
            CONTROLLER.reset,
            ResetCommand(project_dir=project_dir, task_id=task_id, all_tasks=all_tasks),
        ),
    )


@agent_supervisor.command("create")
@_project_dir_option
@click.argument("description")
def create(project_dir: Path | None, description: str) -> None:
    """Create the next numbered task file from a one-line description."""

    _emit_lines(
        _call(
            CONTROLLER.create,
            CreateTaskCommand(project_dir=project_dir, description=description),
        ),
    )


@agent_supervisor.command("prune")
@_project_dir_option
def prune(project_dir: Path | None) -> None:
    """Remove worktrees left behind by tasks that are no longer pending or running."""

    _emit_lines(_call(CONTROLLER.prune, ProjectCommand(project_dir=project_dir)))


@agent_supervisor.command("contexts")
@_project_dir_option
def contexts(project_dir: Path | None) -> None:
    """List active execution contexts (git worktrees)."""

    _emit_lines(_call(CONTROLLER.contexts, ProjectCommand(project_dir=project_dir)))


@agent_supervisor.command("history")
@_project_dir_option
@click.argument("task_id")
def history(project_dir: Path | None, task_id: str) -> None:
    """Show the stored state and ledger history of one task."""

    _emit_lines(
        _call(CONTROLLER.history, HistoryCommand(project_dir=project_dir, task_id=task_id)),
    )


def _call(handler, command) -> list[str]:
    try:
        return handler(command)
    except CorruptStateError as error:
        raise click.ClickException(
            f"{error}. Fix or reset the record (agent-supervisor reset {error.task_id}).",
        ) from error
    except (ValueError, FileExistsError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_supervisor()
