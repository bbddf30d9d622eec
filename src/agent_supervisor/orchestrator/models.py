"""Domain models for supervised task execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    """Statuses a worker (or the supervisor) may record for a task."""

    VERIFIED_COMPLETE = "VERIFIED_COMPLETE"
    TASK_COMPLETE = "TASK_COMPLETE"
    NEEDS_RETRY = "NEEDS_RETRY"
    HUMAN_REVIEW_REQUIRED = "HUMAN_REVIEW_REQUIRED"
    TESTS_FAILING_STUCK = "TESTS_FAILING_STUCK"
    BUILD_FAILING_STUCK = "BUILD_FAILING_STUCK"
    LINT_ERRORS_STUCK = "LINT_ERRORS_STUCK"
    MISSING_INFORMATION = "MISSING_INFORMATION"
    EXTERNAL_DEPENDENCY_BLOCKED = "EXTERNAL_DEPENDENCY_BLOCKED"
    MERGE_CONFLICT_DETECTED = "MERGE_CONFLICT_DETECTED"

    @property
    def is_blocker(self) -> bool:
        return self in BLOCKER_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self == TaskStatus.VERIFIED_COMPLETE or self in BLOCKER_STATUSES


BLOCKER_STATUSES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.HUMAN_REVIEW_REQUIRED,
        TaskStatus.TESTS_FAILING_STUCK,
        TaskStatus.BUILD_FAILING_STUCK,
        TaskStatus.LINT_ERRORS_STUCK,
        TaskStatus.MISSING_INFORMATION,
        TaskStatus.EXTERNAL_DEPENDENCY_BLOCKED,
        TaskStatus.MERGE_CONFLICT_DETECTED,
    },
)


class IssueType(str, Enum):
    """Plausibility issue categories reported by the outcome validator."""

    EXIT_CODE_MISMATCH = "exit_code_mismatch"
    INVALID_FORMAT = "invalid_format"
    SUSPICIOUS_CONTENT = "suspicious_content"
    GIT_INCONSISTENCY = "git_inconsistency"


class FailureClass(str, Enum):
    """Normalized execution failure classes for one worker invocation."""

    TIMEOUT = "timeout"
    CONTEXT_UNAVAILABLE = "context_unavailable"
    MISSING_OUTPUT = "missing_output"
    OUTPUT_INVALID = "output_invalid"
    WORKER_TRANSIENT = "worker_transient"
    WORKER_NON_RETRYABLE = "worker_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"


@dataclass(slots=True, frozen=True)
class Task:
    """Immutable unit of work loaded from a task definition."""

    id: str
    instruction_body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None

    @property
    def title(self) -> str:
        title = self.metadata.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
        return self.id

    @property
    def wants_follow_up_request(self) -> bool:
        return self.metadata.get("open_pr") is True


@dataclass(slots=True)
class GitStatus:
    """Version-control status the worker reports for its workspace."""

    branch: str = ""
    uncommitted_changes: bool = True
    last_commit_message: str = ""
    last_commit_sha: str = ""
    original_branch: str | None = None


@dataclass(slots=True)
class CommandOutput:
    """Captured output of one verification command run by the worker."""

    exit_code: int
    output: str
    summary: str = ""


@dataclass(slots=True)
class Verification:
    tests: CommandOutput
    build: CommandOutput
    lint: CommandOutput


@dataclass(slots=True)
class Assumption:
    description: str
    reasoning: str


@dataclass(slots=True)
class Workaround:
    issue: str
    solution: str


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    """One plausibility problem found in a self-reported task state."""

    type: IssueType
    message: str


@dataclass(slots=True)
class RetryFeedback:
    """Corrective feedback attached by the supervisor for the next attempt."""

    issues: list[str]
    instruction: str


@dataclass(slots=True)
class TaskState:
    """Last known progress record for one task."""

    task_id: str
    status: TaskStatus
    attempt_number: int
    started_at: str
    completed_at: str
    git_status: GitStatus = field(default_factory=GitStatus)
    files_changed: list[str] = field(default_factory=list)
    summary: str = ""
    branch: str | None = None
    commit_sha: str | None = None
    blocker_context: str | None = None
    assumptions: list[Assumption] | None = None
    workarounds: list[Workaround] | None = None
    verification: Verification | None = None
    feedback: RetryFeedback | None = None
    validation_issues: list[ValidationIssue] | None = None


@dataclass(slots=True)
class ValidationResult:
    """Outcome validator verdict."""

    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ExecutionContext:
    """Isolated working copy exclusively owned by one task attempt."""

    task_id: str
    path: Path
    branch: str


@dataclass(slots=True)
class CleanupResult:
    """Result of a best-effort operation whose failures are logged, not raised."""

    ok: bool = True
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.ok = False
        self.errors.append(message)
