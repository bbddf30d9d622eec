"""Instruction payload assembly for worker attempts."""

from __future__ import annotations

from pathlib import Path

from agent_supervisor.orchestrator.models import ExecutionContext, Task, TaskState

DEFAULT_SYSTEM_PROMPT = """\
[SYSTEM INSTRUCTIONS - SUPERVISED MODE]

You are working through an automated task queue. An external supervisor
checks what you report, so report exactly what happened.

## Workflow

1. You are in an isolated working copy already on the task branch.
2. Implement the requirements and add tests for new behavior.
3. Run the test suite, the build and the linter.
4. Commit your work with a descriptive message. Do not push.
5. Write the state file described below, then exit.

## State file

Write JSON to the state file path given in the task assignment:

```json
{
  "taskId": "<task id>",
  "status": "VERIFIED_COMPLETE",
  "attemptNumber": 1,
  "startedAt": "2026-01-01T10:00:00Z",
  "completedAt": "2026-01-01T10:45:00Z",
  "branch": "<task branch>",
  "commitSha": "<full commit sha>",
  "gitStatus": {
    "branch": "<task branch>",
    "uncommittedChanges": false,
    "lastCommitMessage": "<commit message>",
    "lastCommitSha": "<full commit sha>"
  },
  "filesChanged": ["src/module.py", "tests/test_module.py"],
  "summary": "What was done, with test, build and lint results."
}
```

Optionally include `verification` with `tests`, `build` and `lint` objects
(`exitCode`, `output`, `summary`) holding the real command output.

## Status values

- VERIFIED_COMPLETE: all checks pass and the work is committed
- TASK_COMPLETE: work done but not verified
- NEEDS_RETRY: you want another attempt
- HUMAN_REVIEW_REQUIRED: a decision or clarification is needed
- TESTS_FAILING_STUCK, BUILD_FAILING_STUCK, LINT_ERRORS_STUCK: repeated fixes did not help
- MISSING_INFORMATION: a reasonable assumption is not possible
- EXTERNAL_DEPENDENCY_BLOCKED: a service, database or network is unavailable
- MERGE_CONFLICT_DETECTED: conflicts need resolution

For any blocked status, explain the blocker in `blockerContext`.
"""

FOLLOW_UP_INSTRUCTION = (
    "When the work is verified, also prepare a pull request description for the "
    "task branch and mention it in the summary."
)


class PromptBuilder:
    """Builds the instruction payload for one attempt."""

    def __init__(self, templates_dir: Path | None = None) -> None:
        self.templates_dir = templates_dir

    def system_prompt(self) -> str:
        if self.templates_dir is not None:
            template = self.templates_dir / "system-prompt.md"
            if template.is_file():
                return template.read_text("utf-8")
        return DEFAULT_SYSTEM_PROMPT

    def build(
        self,
        task: Task,
        context: ExecutionContext,
        *,
        attempt_number: int,
        previous_state: TaskState | None = None,
    ) -> str:
        state_file = f".supervisor/state/{task.id}.json"
        parts = [
            self.system_prompt().rstrip(),
            "---",
            "\n".join(
                [
                    "[TASK ASSIGNMENT]",
                    "",
                    f"Task ID: {task.id}",
                    f"Attempt: {attempt_number}",
                    f"Branch: {context.branch}",
                    f"State file: {state_file}",
                    "",
                    f'Use "taskId": "{task.id}" and "attemptNumber": {attempt_number} '
                    "in the state file.",
                ],
            ),
            "---",
            f"[TASK DESCRIPTION]\n\n{task.instruction_body}",
        ]
        if task.wants_follow_up_request:
            parts.extend(["---", FOLLOW_UP_INSTRUCTION])
        if previous_state is not None:
            parts.extend(["---", build_retry_context(previous_state)])
        return "\n\n".join(parts) + "\n"


def build_retry_context(previous_state: TaskState) -> str:
    lines = [
        f"[PREVIOUS ATTEMPT - ATTEMPT #{previous_state.attempt_number}]",
        "",
        f"Status: {previous_state.status.value}",
        f"Completed at: {previous_state.completed_at}",
    ]
    feedback_issues = previous_state.feedback.issues if previous_state.feedback else []
    if feedback_issues:
        lines.extend(["", "Issues found:"])
        lines.extend(f"{index}. {issue}" for index, issue in enumerate(feedback_issues, 1))
    # Validation messages are usually already itemized in feedback.
    validation_issues = [
        issue
        for issue in previous_state.validation_issues or []
        if issue.message not in feedback_issues
    ]
    if validation_issues:
        lines.extend(["", "Validation issues:"])
        lines.extend(
            f"{index}. [{issue.type.value}] {issue.message}"
            for index, issue in enumerate(validation_issues, 1)
        )
    if previous_state.feedback and previous_state.feedback.instruction:
        lines.extend(["", previous_state.feedback.instruction])
    lines.extend(
        [
            "",
            "Please address these issues and try again.",
            "Write your updated state file when done.",
        ],
    )
    return "\n".join(lines)
