from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from agent_supervisor.orchestrator.backend.base import (
    MissingOutputError,
    WorkerRequest,
    WorkerRunError,
    WorkerTimeoutError,
)
from agent_supervisor.orchestrator.backend.cli_backend import CliAgentWorker, _build_run_args
from agent_supervisor.orchestrator.models import (
    ExecutionContext,
    FailureClass,
    Task,
    TaskStatus,
)
from tests.conftest import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Agent Command Rendering"),
]


def _request(tmp_path: Path, *, timeout_seconds: int = 30, attempt: int = 1) -> WorkerRequest:
    workdir = tmp_path / "worktrees" / "001-auth"
    workdir.mkdir(parents=True)
    return WorkerRequest(
        task=Task(id="001-auth", instruction_body="Add login"),
        context=ExecutionContext(task_id="001-auth", path=workdir, branch="feature/001-auth"),
        payload="[TASK ASSIGNMENT]\nImplement login",
        attempt_number=attempt,
        timeout_seconds=timeout_seconds,
        log_path=tmp_path / "logs" / "001-auth.log",
    )


def _python_command(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)} {{prompt_file}}"


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="claude -p {prompt} --cwd {workdir} --task {task_id}",
        prompt='hello "world" $HOME',
        prompt_file=Path("logs/001.prompt.md"),
        task_id="001-auth",
        workdir=Path("/repo/my worktree"),
        state_file=Path("state/001.json"),
    )

    assert command_head == "claude"
    assert run_args == [
        "claude",
        "-p",
        'hello "world" $HOME',
        "--cwd",
        "/repo/my worktree",
        "--task",
        "001-auth",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --task {task_id}", "must include {prompt} or {prompt_file}"),
        ("agent {prompt} --model {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(WorkerRunError, match=message) as error_info:
        _build_run_args(
            command_template=template,
            prompt="x",
            prompt_file=Path("p.md"),
            task_id="001",
            workdir=Path("."),
            state_file=Path("s.json"),
        )

    assert error_info.value.transient is False


def test_invoke_reads_state_written_by_echo_agent(tmp_path: Path) -> None:
    request = _request(tmp_path, attempt=2)

    state = CliAgentWorker(ECHO_AGENT_COMMAND_TEMPLATE).invoke(request)

    assert state.task_id == "001-auth"
    assert state.status == TaskStatus.VERIFIED_COMPLETE
    assert state.attempt_number == 2
    assert state.git_status.branch == "feature/001-auth"
    prompt_file = request.log_path.with_name("001-auth.prompt.md")
    assert prompt_file.read_text("utf-8") == request.payload
    log_text = request.log_path.read_text("utf-8")
    assert "=== 001-auth attempt 2 started" in log_text
    assert "Implement login" in log_text
    assert "exit code 0" in log_text


def test_invoke_discards_stale_state_and_reports_missing_output(tmp_path: Path) -> None:
    request = _request(tmp_path)
    request.state_path.parent.mkdir(parents=True)
    request.state_path.write_text('{"taskId": "001-auth"}', "utf-8")

    with pytest.raises(MissingOutputError, match="did not write a state record") as error_info:
        CliAgentWorker(f"{ECHO_AGENT_COMMAND_TEMPLATE} --skip-state").invoke(request)

    assert error_info.value.failure_class == FailureClass.MISSING_OUTPUT
    assert not request.state_path.exists()


def test_invoke_classifies_nonzero_exit(tmp_path: Path) -> None:
    code = "import sys; sys.stderr.write('fatal: permission denied\\n'); sys.exit(3)"

    with pytest.raises(WorkerRunError, match="exited with code 3") as error_info:
        CliAgentWorker(_python_command(code)).invoke(_request(tmp_path))

    assert error_info.value.failure_class == FailureClass.ACCESS_OR_AUTH
    assert error_info.value.transient is False
    stderr_log = tmp_path / "logs" / "001-auth.stderr.log"
    assert "permission denied" in stderr_log.read_text("utf-8")


def test_invoke_kills_worker_after_timeout(tmp_path: Path) -> None:
    code = "import time; time.sleep(30)"

    with pytest.raises(WorkerTimeoutError, match="timed out after 1s") as error_info:
        CliAgentWorker(_python_command(code)).invoke(_request(tmp_path, timeout_seconds=1))

    assert error_info.value.failure_class == FailureClass.TIMEOUT
    assert "timed out" in (tmp_path / "logs" / "001-auth.log").read_text("utf-8")


def test_invoke_rejects_malformed_state(tmp_path: Path) -> None:
    code = (
        "import os, pathlib; "
        "path = pathlib.Path(os.environ['AGENT_SUPERVISOR_STATE_FILE']); "
        "path.parent.mkdir(parents=True, exist_ok=True); "
        "path.write_text('not json')"
    )

    with pytest.raises(WorkerRunError, match="malformed") as error_info:
        CliAgentWorker(_python_command(code)).invoke(_request(tmp_path))

    assert error_info.value.failure_class == FailureClass.OUTPUT_INVALID


def test_invoke_reports_unknown_command(tmp_path: Path) -> None:
    with pytest.raises(WorkerRunError, match="Worker command not found"):
        CliAgentWorker("definitely-not-an-agent-binary {prompt}").invoke(_request(tmp_path))
