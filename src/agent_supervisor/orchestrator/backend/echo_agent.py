"""Local demo worker for CLI integration tests.

Reads its instructions, echoes them to stdout and writes a state record the
way a real agent is asked to.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from datetime import UTC, datetime
from pathlib import Path

from agent_supervisor.orchestrator.contracts import write_task_state
from agent_supervisor.orchestrator.models import GitStatus, TaskState, TaskStatus

_PLACEHOLDER_SHA = "0000000"


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic state record for the current attempt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--state-file", default=os.getenv("AGENT_SUPERVISOR_STATE_FILE"))
    parser.add_argument("--status", default=TaskStatus.VERIFIED_COMPLETE.value)
    parser.add_argument(
        "--first-attempt-status",
        default=None,
        help="Status to report on attempt 1 only, to exercise retries.",
    )
    parser.add_argument("--skip-state", action="store_true")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    print(prompt.strip().splitlines()[-1] if prompt.strip() else "(empty prompt)")

    if args.skip_state:
        return 0
    if not args.state_file:
        print("No state file given", file=sys.stderr)
        return 2

    task_id = os.getenv("AGENT_SUPERVISOR_TASK_ID", Path(args.state_file).stem)
    attempt = int(os.getenv("AGENT_SUPERVISOR_ATTEMPT", "1"))
    branch = os.getenv("AGENT_SUPERVISOR_BRANCH", "") or _current_branch() or "main"
    status = args.status
    if attempt == 1 and args.first_attempt_status:
        status = args.first_attempt_status

    now = datetime.now(UTC).isoformat()
    write_task_state(
        Path(args.state_file),
        TaskState(
            task_id=task_id,
            status=TaskStatus(status),
            attempt_number=attempt,
            started_at=now,
            completed_at=now,
            git_status=GitStatus(
                branch=branch,
                uncommitted_changes=False,
                last_commit_message=f"echo: {task_id}",
                last_commit_sha=_head_sha() or _PLACEHOLDER_SHA,
            ),
            summary=f"echo_agent handled {task_id} on attempt {attempt}",
            branch=branch,
        ),
    )
    return 0


def _current_branch() -> str | None:
    return _git_output("rev-parse", "--abbrev-ref", "HEAD")


def _head_sha() -> str | None:
    return _git_output("rev-parse", "HEAD")


def _git_output(*args: str) -> str | None:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout.strip() or None


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
