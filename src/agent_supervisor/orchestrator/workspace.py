"""Per-task isolated working copies backed by git worktrees."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Protocol

from agent_supervisor.orchestrator.models import CleanupResult, ExecutionContext

logger = logging.getLogger(__name__)

SYNCED_SUBDIRS: tuple[str, ...] = ("tasks", "state", "logs")


class ContextCreationError(RuntimeError):
    """Execution context could not be created for a task."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(f"Failed to create execution context for task {task_id}: {message}")
        self.task_id = task_id


class VcsError(RuntimeError):
    """Version-control command failed."""


class VcsBackend(Protocol):
    """Primitive operations the context manager needs from version control."""

    def add_worktree(self, path: Path, branch: str) -> None:
        """Create ``path`` as a working copy on a new ``branch``."""

    def remove_worktree(self, path: Path) -> None:
        """Remove the working copy at ``path``."""

    def delete_branch(self, branch: str) -> None:
        """Delete ``branch``."""

    def branch_exists(self, branch: str) -> bool:
        """Return whether ``branch`` exists."""

    def list_worktrees(self) -> list[tuple[Path, str | None]]:
        """Return ``(path, branch)`` for every registered working copy."""

    def prune(self) -> None:
        """Drop bookkeeping for working copies that no longer exist."""


class GitWorktreeBackend:
    """``VcsBackend`` implemented with ``git worktree`` commands."""

    def __init__(self, repo_dir: Path, *, timeout_seconds: int = 120) -> None:
        self.repo_dir = repo_dir
        self.timeout_seconds = timeout_seconds

    def ensure_repository(self) -> None:
        """Fail unless ``repo_dir`` is a work tree with at least one commit."""

        self._git("rev-parse", "--is-inside-work-tree")
        self._git("rev-parse", "--verify", "HEAD")

    def add_worktree(self, path: Path, branch: str) -> None:
        self._git("worktree", "add", str(path), "-b", branch)

    def remove_worktree(self, path: Path) -> None:
        self._git("worktree", "remove", "--force", str(path))

    def delete_branch(self, branch: str) -> None:
        self._git("branch", "-D", branch)

    def branch_exists(self, branch: str) -> bool:
        completed = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return completed.returncode == 0

    def list_worktrees(self) -> list[tuple[Path, str | None]]:
        return parse_worktree_porcelain(self._git("worktree", "list", "--porcelain"))

    def prune(self) -> None:
        self._git("worktree", "prune")

    def _git(self, *args: str) -> str:
        completed = self._run(*args)
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout).strip()
            raise VcsError(f"git {' '.join(args[:2])} failed ({completed.returncode}): {detail}")
        return completed.stdout

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise VcsError(f"git {' '.join(args[:2])} could not run: {error}") from error


def parse_worktree_porcelain(text: str) -> list[tuple[Path, str | None]]:
    """Parse ``git worktree list --porcelain`` output."""

    entries: list[tuple[Path, str | None]] = []
    path: Path | None = None
    branch: str | None = None
    for line in [*text.splitlines(), ""]:
        if not line.strip():
            if path is not None:
                entries.append((path, branch))
            path, branch = None, None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            path = Path(value)
        elif key == "branch":
            branch = value.removeprefix("refs/heads/")
    return entries


class ExecutionContextManager:
    """Creates, syncs and tears down per-task working copies.

    VCS mutations are serialized because the repository's worktree metadata
    is shared by all contexts. Teardown and sync never raise; they log and
    return a ``CleanupResult``.
    """

    def __init__(
        self,
        project_dir: Path,
        vcs: VcsBackend,
        *,
        shared_dir: Path | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.shared_dir = shared_dir or project_dir / ".supervisor"
        self.worktrees_dir = self.shared_dir / "worktrees"
        self._vcs = vcs
        self._lock = threading.Lock()
        self._open: dict[str, ExecutionContext] = {}
        self._baselines: dict[str, dict[Path, tuple[int, int]]] = {}

    def context_path(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    @staticmethod
    def branch_name(task_id: str, branch_prefix: str) -> str:
        return f"{branch_prefix}/{task_id}"

    def open(self, task_id: str, branch_prefix: str = "feature") -> ExecutionContext:
        path = self.context_path(task_id)
        branch = self.branch_name(task_id, branch_prefix)
        with self._lock:
            if task_id in self._open or path.exists():
                raise ContextCreationError(task_id, f"workspace already exists at {path}")
            try:
                if self._vcs.branch_exists(branch):
                    raise ContextCreationError(task_id, f"branch {branch} already exists")
                self.worktrees_dir.mkdir(parents=True, exist_ok=True)
                self._vcs.add_worktree(path, branch)
            except VcsError as error:
                raise ContextCreationError(task_id, str(error)) from error
            context = ExecutionContext(task_id=task_id, path=path, branch=branch)
            self._open[task_id] = context
            self._baselines[task_id] = _snapshot(path / ".supervisor")
        logger.debug("Opened context for %s at %s on %s", task_id, path, branch)
        return context

    def sync(self, task_id: str) -> CleanupResult:
        """Copy supervisor artifacts the attempt produced into the shared directory.

        Only files created or changed since the context was opened are copied,
        so records checked out with the branch never overwrite newer shared
        ones. The owning task's own state record and log are skipped.
        """

        result = CleanupResult()
        source_root = self.context_path(task_id) / ".supervisor"
        baseline = self._baselines.get(task_id, {})
        skipped = {
            Path("state") / f"{task_id}.json",
            Path("logs") / f"{task_id}.log",
        }
        for subdir in SYNCED_SUBDIRS:
            source_dir = source_root / subdir
            if not source_dir.is_dir():
                continue
            for source in sorted(source_dir.rglob("*")):
                if not source.is_file():
                    continue
                relative = source.relative_to(source_root)
                if relative in skipped:
                    continue
                try:
                    stat = source.stat()
                    if baseline.get(relative) == (stat.st_mtime_ns, stat.st_size):
                        continue
                    target = self.shared_dir / relative
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
                except OSError as error:
                    message = f"Failed to sync {relative} for task {task_id}: {error}"
                    logger.warning(message)
                    result.add_error(message)
        return result

    def close(self, task_id: str, *, keep_branch: bool = False) -> CleanupResult:
        """Remove the working copy and, unless ``keep_branch``, its branch."""

        result = CleanupResult()
        with self._lock:
            context = self._open.pop(task_id, None)
            self._baselines.pop(task_id, None)
            path = context.path if context is not None else self.context_path(task_id)
            branch = context.branch if context is not None else self._branch_for_path(path)

            try:
                self._vcs.remove_worktree(path)
            except VcsError as error:
                message = f"Failed to remove worktree for task {task_id}: {error}"
                logger.warning(message)
                result.add_error(message)
            if path.exists():
                try:
                    shutil.rmtree(path)
                except OSError as error:
                    message = f"Failed to delete workspace directory {path}: {error}"
                    logger.warning(message)
                    result.add_error(message)

            if branch and not keep_branch:
                try:
                    self._vcs.delete_branch(branch)
                except VcsError as error:
                    message = f"Failed to delete branch {branch} for task {task_id}: {error}"
                    logger.warning(message)
                    result.add_error(message)
        logger.debug("Closed context for %s (keep_branch=%s)", task_id, keep_branch)
        return result

    def discard_branch(self, task_id: str, branch_prefix: str = "feature") -> CleanupResult:
        """Delete a leftover task branch that has no working copy.

        Blocked and escalated attempts keep their branch for inspection. Once
        the task's record is gone the branch would make the next ``open`` fail.
        """

        result = CleanupResult()
        branch = self.branch_name(task_id, branch_prefix)
        with self._lock:
            if task_id in self._open or self.context_path(task_id).exists():
                return result
            try:
                if not self._vcs.branch_exists(branch):
                    return result
                self._vcs.delete_branch(branch)
            except VcsError as error:
                message = f"Failed to delete leftover branch {branch} for task {task_id}: {error}"
                logger.warning(message)
                result.add_error(message)
                return result
        logger.info("Deleted leftover branch %s for task %s", branch, task_id)
        return result

    def list_active(self) -> list[ExecutionContext]:
        """Working copies registered under the managed worktree root."""

        try:
            worktrees = self._vcs.list_worktrees()
        except VcsError as error:
            logger.warning("Failed to list worktrees: %s", error)
            return []
        root = self.worktrees_dir.resolve()
        contexts: list[ExecutionContext] = []
        for path, branch in worktrees:
            resolved = path.resolve()
            if resolved.parent != root:
                continue
            contexts.append(
                ExecutionContext(task_id=resolved.name, path=path, branch=branch or ""),
            )
        return contexts

    def prune(self, live_task_ids: set[str] | frozenset[str]) -> CleanupResult:
        """Tear down contexts that no pending or running task refers to."""

        result = CleanupResult()
        for context in self.list_active():
            if context.task_id in live_task_ids or context.task_id in self._open:
                continue
            logger.info("Pruning orphaned context %s at %s", context.task_id, context.path)
            closed = self.close(context.task_id)
            for message in closed.errors:
                result.add_error(message)
        with self._lock:
            try:
                self._vcs.prune()
            except VcsError as error:
                message = f"Failed to prune stale worktrees: {error}"
                logger.warning(message)
                result.add_error(message)
        return result

    def _branch_for_path(self, path: Path) -> str | None:
        try:
            worktrees = self._vcs.list_worktrees()
        except VcsError:
            return None
        resolved = path.resolve()
        for candidate, branch in worktrees:
            if candidate.resolve() == resolved:
                return branch
        return None


def _snapshot(root: Path) -> dict[Path, tuple[int, int]]:
    if not root.is_dir():
        return {}
    snapshot: dict[Path, tuple[int, int]] = {}
    for path in root.rglob("*"):
        if path.is_file():
            stat = path.stat()
            snapshot[path.relative_to(root)] = (stat.st_mtime_ns, stat.st_size)
    return snapshot
