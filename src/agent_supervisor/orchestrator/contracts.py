"""File-based contract for task state records shared with the worker."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_supervisor.orchestrator.models import (
    Assumption,
    CommandOutput,
    GitStatus,
    IssueType,
    RetryFeedback,
    TaskState,
    TaskStatus,
    ValidationIssue,
    Verification,
    Workaround,
)


class StateSchemaError(ValueError):
    """Task state document does not match the expected schema."""


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise StateSchemaError(f"Expected JSON object in {path}")
    return payload


def task_state_to_dict(state: TaskState) -> dict[str, Any]:
    """Serialize task state using the camelCase keys the worker writes."""

    git: dict[str, Any] = {
        "branch": state.git_status.branch,
        "uncommittedChanges": state.git_status.uncommitted_changes,
        "lastCommitMessage": state.git_status.last_commit_message,
        "lastCommitSha": state.git_status.last_commit_sha,
    }
    if state.git_status.original_branch is not None:
        git["originalBranch"] = state.git_status.original_branch

    payload: dict[str, Any] = {
        "taskId": state.task_id,
        "status": state.status.value,
        "attemptNumber": state.attempt_number,
        "startedAt": state.started_at,
        "completedAt": state.completed_at,
        "gitStatus": git,
        "filesChanged": list(state.files_changed),
        "summary": state.summary,
    }
    if state.branch is not None:
        payload["branch"] = state.branch
    if state.commit_sha is not None:
        payload["commitSha"] = state.commit_sha
    if state.blocker_context is not None:
        payload["blockerContext"] = state.blocker_context
    if state.assumptions is not None:
        payload["assumptions"] = [
            {"description": item.description, "reasoning": item.reasoning}
            for item in state.assumptions
        ]
    if state.workarounds is not None:
        payload["workarounds"] = [
            {"issue": item.issue, "solution": item.solution} for item in state.workarounds
        ]
    if state.verification is not None:
        payload["verification"] = {
            name: {
                "exitCode": output.exit_code,
                "output": output.output,
                "summary": output.summary,
            }
            for name, output in (
                ("tests", state.verification.tests),
                ("build", state.verification.build),
                ("lint", state.verification.lint),
            )
        }
    if state.feedback is not None:
        payload["feedback"] = {
            "issues": list(state.feedback.issues),
            "instruction": state.feedback.instruction,
        }
    if state.validation_issues is not None:
        payload["validationIssues"] = [
            {"type": issue.type.value, "message": issue.message}
            for issue in state.validation_issues
        ]
    return payload


def task_state_from_dict(raw: dict[str, Any]) -> TaskState:  # noqa: C901
    """Deserialize and validate a task state document."""

    task_id = raw.get("taskId")
    if not isinstance(task_id, str) or not task_id.strip():
        raise StateSchemaError("taskId must be a non-empty string")

    status_raw = raw.get("status")
    try:
        status = TaskStatus(status_raw)
    except ValueError as error:
        raise StateSchemaError(f"status has unknown value: {status_raw!r}") from error

    attempt_number = raw.get("attemptNumber")
    if isinstance(attempt_number, bool) or not isinstance(attempt_number, int):
        raise StateSchemaError("attemptNumber must be an integer")
    if attempt_number < 1:
        raise StateSchemaError("attemptNumber must be >= 1")

    started_at = _require_timestamp(raw, "startedAt")
    completed_at = _require_timestamp(raw, "completedAt")

    files_changed = raw.get("filesChanged")
    if not isinstance(files_changed, list) or not all(
        isinstance(item, str) for item in files_changed
    ):
        raise StateSchemaError("filesChanged must be an array of strings")

    summary = raw.get("summary")
    if not isinstance(summary, str):
        raise StateSchemaError("summary must be a string")

    feedback_raw = raw.get("feedback")
    feedback: RetryFeedback | None = None
    if feedback_raw is not None:
        if not isinstance(feedback_raw, dict):
            raise StateSchemaError("feedback must be an object")
        feedback = RetryFeedback(
            issues=_string_list(feedback_raw.get("issues"), "feedback.issues"),
            instruction=_require_str(feedback_raw, "instruction", "feedback"),
        )

    return TaskState(
        task_id=task_id,
        status=status,
        attempt_number=attempt_number,
        started_at=started_at,
        completed_at=completed_at,
        git_status=_parse_git_status(raw.get("gitStatus")),
        files_changed=list(files_changed),
        summary=summary,
        branch=_optional_str(raw, "branch"),
        commit_sha=_optional_str(raw, "commitSha"),
        blocker_context=_optional_str(raw, "blockerContext"),
        assumptions=_parse_records(
            raw.get("assumptions"),
            "assumptions",
            lambda item: Assumption(
                description=_require_str(item, "description", "assumptions[]"),
                reasoning=_require_str(item, "reasoning", "assumptions[]"),
            ),
        ),
        workarounds=_parse_records(
            raw.get("workarounds"),
            "workarounds",
            lambda item: Workaround(
                issue=_require_str(item, "issue", "workarounds[]"),
                solution=_require_str(item, "solution", "workarounds[]"),
            ),
        ),
        verification=_parse_verification(raw.get("verification")),
        feedback=feedback,
        validation_issues=_parse_records(
            raw.get("validationIssues"),
            "validationIssues",
            _parse_validation_issue,
        ),
    )


def read_task_state(path: Path) -> TaskState:
    """Load and validate a task state record from disk."""

    return task_state_from_dict(load_json(path))


def write_task_state(path: Path, state: TaskState) -> None:
    """Serialize a task state record to disk."""

    write_json(path, task_state_to_dict(state))


def _parse_git_status(raw: object) -> GitStatus:
    if not isinstance(raw, dict):
        raise StateSchemaError("gitStatus must be an object")
    uncommitted = raw.get("uncommittedChanges")
    if not isinstance(uncommitted, bool):
        raise StateSchemaError("gitStatus.uncommittedChanges must be a boolean")
    return GitStatus(
        branch=_require_str(raw, "branch", "gitStatus"),
        uncommitted_changes=uncommitted,
        last_commit_message=_require_str(raw, "lastCommitMessage", "gitStatus"),
        last_commit_sha=_require_str(raw, "lastCommitSha", "gitStatus"),
        original_branch=_optional_str(raw, "originalBranch"),
    )


def _parse_verification(raw: object) -> Verification | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise StateSchemaError("verification must be an object")
    outputs: dict[str, CommandOutput] = {}
    for name in ("tests", "build", "lint"):
        item = raw.get(name)
        if not isinstance(item, dict):
            raise StateSchemaError(f"verification.{name} must be an object")
        exit_code = item.get("exitCode")
        if isinstance(exit_code, bool) or not isinstance(exit_code, int):
            raise StateSchemaError(f"verification.{name}.exitCode must be an integer")
        outputs[name] = CommandOutput(
            exit_code=exit_code,
            output=_require_str(item, "output", f"verification.{name}"),
            summary=_optional_str(item, "summary") or "",
        )
    return Verification(tests=outputs["tests"], build=outputs["build"], lint=outputs["lint"])


def _parse_validation_issue(item: dict[str, Any]) -> ValidationIssue:
    type_raw = item.get("type")
    try:
        issue_type = IssueType(type_raw)
    except ValueError as error:
        raise StateSchemaError(f"validationIssues[].type has unknown value: {type_raw!r}") from error
    return ValidationIssue(
        type=issue_type,
        message=_require_str(item, "message", "validationIssues[]"),
    )


def _parse_records(raw: object, name: str, factory):
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise StateSchemaError(f"{name} must be an array")
    records = []
    for item in raw:
        if not isinstance(item, dict):
            raise StateSchemaError(f"{name} entries must be objects")
        records.append(factory(item))
    return records


def _require_str(raw: dict[str, Any], key: str, scope: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise StateSchemaError(f"{scope}.{key} must be a string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise StateSchemaError(f"{key} must be a string when provided")
    return value


def _string_list(raw: object, name: str) -> list[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise StateSchemaError(f"{name} must be an array of strings")
    return list(raw)


def _require_timestamp(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise StateSchemaError(f"{key} must be an ISO-8601 timestamp string")
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        datetime.fromisoformat(text)
    except ValueError as error:
        raise StateSchemaError(f"{key} is not a valid ISO-8601 timestamp: {value!r}") from error
    return value
