"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_supervisor.orchestrator.backend.base import WorkerRequest
from agent_supervisor.orchestrator.limiter import ConcurrencyLimiter
from agent_supervisor.orchestrator.models import GitStatus, Task, TaskState, TaskStatus
from agent_supervisor.orchestrator.state_store import StateStore
from agent_supervisor.orchestrator.supervisor import Orchestrator, OrchestratorContext
from agent_supervisor.orchestrator.workspace import ExecutionContextManager, VcsError

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_supervisor.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --state-file {state_file}"
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def make_state(  # noqa: PLR0913
    task_id: str,
    *,
    status: TaskStatus = TaskStatus.VERIFIED_COMPLETE,
    attempt: int = 1,
    sha: str = "a1b2c3d4e5f6",
    uncommitted: bool = False,
    branch: str = "feature/task",
    summary: str = "All 12 tests passing. Build successful. No lint errors.",
    blocker_context: str | None = None,
) -> TaskState:
    return TaskState(
        task_id=task_id,
        status=status,
        attempt_number=attempt,
        started_at="2026-10-18T10:00:00Z",
        completed_at="2026-10-18T10:30:00Z",
        git_status=GitStatus(
            branch=branch,
            uncommitted_changes=uncommitted,
            last_commit_message="Implement task",
            last_commit_sha=sha,
        ),
        files_changed=["src/app.py"],
        summary=summary,
        blocker_context=blocker_context,
    )


class FakeVcs:
    """In-memory worktree registry that creates real directories."""

    def __init__(self) -> None:
        self.worktrees: dict[Path, str] = {}
        self.branches: set[str] = set()
        self.fail_add = False
        self.fail_remove = False
        self.prune_calls = 0
        self.open_now = 0
        self.max_open = 0
        self._lock = threading.Lock()

    def add_worktree(self, path: Path, branch: str) -> None:
        if self.fail_add:
            raise VcsError("fatal: could not create worktree")
        path.mkdir(parents=True)
        with self._lock:
            self.worktrees[path] = branch
            self.branches.add(branch)
            self.open_now += 1
            self.max_open = max(self.max_open, self.open_now)

    def remove_worktree(self, path: Path) -> None:
        if self.fail_remove:
            raise VcsError("fatal: worktree is locked")
        with self._lock:
            if path not in self.worktrees:
                raise VcsError(f"fatal: '{path}' is not a working tree")
            del self.worktrees[path]
            self.open_now -= 1
        shutil.rmtree(path, ignore_errors=True)

    def delete_branch(self, branch: str) -> None:
        with self._lock:
            if branch not in self.branches:
                raise VcsError(f"error: branch '{branch}' not found")
            self.branches.discard(branch)

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    def list_worktrees(self) -> list[tuple[Path, str | None]]:
        with self._lock:
            return list(self.worktrees.items())

    def prune(self) -> None:
        self.prune_calls += 1


Outcome = TaskState | Exception | Callable[[WorkerRequest], TaskState]


class ScriptedWorker:
    """Worker fake that replays scripted outcomes per task, one per invocation.

    Once a task's script is exhausted its last outcome repeats. Tasks without
    a script verify on the first attempt.
    """

    def __init__(self, script: dict[str, list[Outcome]] | None = None) -> None:
        self.script = {task_id: list(outcomes) for task_id, outcomes in (script or {}).items()}
        self.requests: list[WorkerRequest] = []
        self._lock = threading.Lock()

    def invoke(self, request: WorkerRequest) -> TaskState:
        with self._lock:
            self.requests.append(request)
            outcomes = self.script.get(request.task.id)
            if not outcomes:
                outcome: Outcome = make_state(
                    request.task.id,
                    attempt=request.attempt_number,
                    branch=request.context.branch,
                )
            elif len(outcomes) > 1:
                outcome = outcomes.pop(0)
            else:
                outcome = outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    def calls_for(self, task_id: str) -> list[WorkerRequest]:
        return [request for request in self.requests if request.task.id == task_id]


class StaticTaskSource:
    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks

    def load_tasks(self) -> list[Task]:
        return list(self.tasks)


@pytest.fixture()
def shared_dir(tmp_path: Path) -> Path:
    return tmp_path / ".supervisor"


@pytest.fixture()
def store(shared_dir: Path) -> StateStore:
    return StateStore(shared_dir)


@pytest.fixture()
def fake_vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture()
def context_manager(tmp_path: Path, fake_vcs: FakeVcs) -> ExecutionContextManager:
    return ExecutionContextManager(tmp_path, fake_vcs)


@pytest.fixture()
def build_orchestrator(
    store: StateStore,
    context_manager: ExecutionContextManager,
) -> Callable[..., Orchestrator]:
    def _build(
        tasks: list[Task],
        worker: ScriptedWorker,
        *,
        parallel: int = 2,
        max_attempts: int = 3,
        timeout_seconds: int = 60,
    ) -> Orchestrator:
        return Orchestrator(
            OrchestratorContext(
                task_source=StaticTaskSource(tasks),
                limiter=ConcurrencyLimiter(parallel),
                store=store,
                contexts=context_manager,
                worker=worker,
            ),
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            parallel=parallel,
        )

    return _build


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Initialized repository with one commit."""

    repo = tmp_path / "repo"
    repo.mkdir()
    for args in (
        ("init", "-q", "-b", "main"),
        ("config", "user.email", "dev@example.com"),
        ("config", "user.name", "Dev"),
        ("config", "commit.gpgsign", "false"),
    ):
        subprocess.run(["git", *args], cwd=repo, check=True)  # noqa: S603, S607
    (repo / "README.md").write_text("# demo\n", "utf-8")
    (repo / ".gitignore").write_text(".supervisor/\n", "utf-8")
    subprocess.run(["git", "add", "."], cwd=repo, check=True)  # noqa: S603, S607
    subprocess.run(["git", "commit", "-q", "-m", "init"], cwd=repo, check=True)  # noqa: S603, S607
    return repo
