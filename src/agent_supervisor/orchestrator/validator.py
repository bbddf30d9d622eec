"""Plausibility checks for worker-reported task states.

These checks look at shape and internal consistency only. They do not prove
that tests actually passed; they catch outputs that could not have come from
a real run.
"""

from __future__ import annotations

import re

from agent_supervisor.orchestrator.models import (
    CommandOutput,
    GitStatus,
    IssueType,
    TaskState,
    ValidationIssue,
    ValidationResult,
    Verification,
)

_COMMIT_SHA_RE = re.compile(r"^[0-9a-f]{7,40}$")
_BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-/.]+$")

_TEST_SUCCESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"PASS|✓"),
    re.compile(r"Test Suites?:.*passed", re.IGNORECASE),
    re.compile(r"Tests?:.*\d+.*passed", re.IGNORECASE),
    re.compile(r"\d+\.\d+s"),
    re.compile(r"tests/"),
)
_TEST_FAILURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"FAIL|✗|×"),
    re.compile(r"Tests?:.*\d+.*fail", re.IGNORECASE),
    re.compile(r"Error:|Expected|Received", re.IGNORECASE),
)
_BUILD_SUCCESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Built? in \d+\.?\d*s", re.IGNORECASE),
    re.compile(r"Compiled|Successfully", re.IGNORECASE),
    re.compile(r"webpack|vite|tsc|turbo", re.IGNORECASE),
    re.compile(r"✓.*built", re.IGNORECASE),
    re.compile(r"dist/|build/"),
)
_BUILD_FAILURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"error|failed|unable", re.IGNORECASE),
    re.compile(r"TypeError|SyntaxError", re.IGNORECASE),
    re.compile(r"Cannot find|no such file", re.IGNORECASE),
    re.compile(r"exit code.*[1-9]", re.IGNORECASE),
)
_LINT_SUCCESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"no (?:linting |)errors?", re.IGNORECASE),
    re.compile(r"✓|pass", re.IGNORECASE),
    re.compile(r"^$", re.MULTILINE),
)
_LINT_FAILURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"error\s*:", re.IGNORECASE),
    re.compile(r"\d+\s+errors?", re.IGNORECASE),
    re.compile(r"warnings?:", re.IGNORECASE),
    re.compile(r"eslint|prettier|ruff|flake8|pylint", re.IGNORECASE),
)


def validate_task_state(state: TaskState) -> ValidationResult:
    """Return every plausibility issue found in ``state``; never raises."""

    issues: list[ValidationIssue] = []
    issues.extend(validate_git_status(state.git_status))
    if state.verification is not None:
        issues.extend(validate_verification(state.verification))
    return ValidationResult(valid=not issues, issues=issues)


def validate_git_status(git: GitStatus) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    sha = git.last_commit_sha if isinstance(git.last_commit_sha, str) else ""
    branch = git.branch if isinstance(git.branch, str) else ""

    if not _COMMIT_SHA_RE.match(sha):
        issues.append(
            ValidationIssue(
                type=IssueType.GIT_INCONSISTENCY,
                message=f'Commit SHA "{sha}" does not look like a valid git commit hash',
            ),
        )
    if not _BRANCH_NAME_RE.match(branch):
        issues.append(
            ValidationIssue(
                type=IssueType.GIT_INCONSISTENCY,
                message=f'Branch name "{branch}" contains invalid characters',
            ),
        )
    if git.uncommitted_changes and sha:
        issues.append(
            ValidationIssue(
                type=IssueType.GIT_INCONSISTENCY,
                message="Uncommitted changes reported but task claims to be complete",
            ),
        )
    return issues


def validate_verification(verification: Verification) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    issues.extend(_validate_tests(verification.tests))
    issues.extend(_validate_build(verification.build))
    issues.extend(_validate_lint(verification.lint))
    return issues


def _validate_tests(tests: CommandOutput) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    output = tests.output
    if tests.exit_code == 0 and _count_matches(output, _TEST_SUCCESS_PATTERNS) < 3:  # noqa: PLR2004
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Test exit code is 0 (success) but output does not look like "
                    "real test output - possible hallucination"
                ),
            ),
        )
    if tests.exit_code != 0 and _count_matches(output, _TEST_FAILURE_PATTERNS) < 2:  # noqa: PLR2004
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Test exit code is non-zero (failure) but output does not look like "
                    "real test failure"
                ),
            ),
        )
    if tests.exit_code == 0 and not output.strip():
        issues.append(
            ValidationIssue(
                type=IssueType.INVALID_FORMAT,
                message="Test output is empty but exit code is 0 - incomplete capture",
            ),
        )
    return issues


def _validate_build(build: CommandOutput) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    output = build.output
    if build.exit_code == 0 and _count_matches(output, _BUILD_SUCCESS_PATTERNS) < 2:  # noqa: PLR2004
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Build exit code is 0 (success) but output does not look like "
                    "real build output"
                ),
            ),
        )
    if build.exit_code != 0 and _count_matches(output, _BUILD_FAILURE_PATTERNS) < 1:
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Build exit code is non-zero (failure) but output does not look like "
                    "real build failure"
                ),
            ),
        )
    if build.exit_code == 0 and not output.strip():
        issues.append(
            ValidationIssue(
                type=IssueType.INVALID_FORMAT,
                message="Build output is empty but exit code is 0",
            ),
        )
    return issues


def _validate_lint(lint: CommandOutput) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    output = lint.output
    if lint.exit_code == 0 and _count_matches(output, _LINT_SUCCESS_PATTERNS) < 1:
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Lint exit code is 0 (success) but output does not look like successful lint"
                ),
            ),
        )
    if lint.exit_code != 0 and _count_matches(output, _LINT_FAILURE_PATTERNS) < 1:
        issues.append(
            ValidationIssue(
                type=IssueType.SUSPICIOUS_CONTENT,
                message=(
                    "Lint exit code is non-zero (failure) but output does not look like "
                    "real lint failure"
                ),
            ),
        )
    return issues


def _count_matches(output: str, patterns: tuple[re.Pattern[str], ...]) -> int:
    if not isinstance(output, str):
        return 0
    return sum(1 for pattern in patterns if pattern.search(output))
