"""Subprocess-based worker for CLI coding agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from agent_supervisor.orchestrator.backend.base import (
    MissingOutputError,
    WorkerRequest,
    WorkerRunError,
    WorkerTimeoutError,
)
from agent_supervisor.orchestrator.contracts import StateSchemaError, read_task_state
from agent_supervisor.orchestrator.failure_classifier import classify_worker_failure
from agent_supervisor.orchestrator.models import FailureClass, TaskState

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 4000
_POLL_INTERVAL_SECONDS = 0.1
TIMEOUT_EXIT_CODE = 124


class CliAgentWorker:
    """Run an agent CLI inside the task's execution context.

    The command template is rendered with shell-quoted ``{prompt}``,
    ``{prompt_file}``, ``{task_id}``, ``{workdir}`` and ``{state_file}``
    values. Output goes to the task log; the worker's state record is read
    from the context once the process exits.
    """

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def invoke(self, request: WorkerRequest) -> TaskState:
        state_path = request.state_path
        log_path = request.log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_file = log_path.with_name(f"{request.task.id}.prompt.md")
        prompt_file.write_text(request.payload, "utf-8")
        stderr_path = log_path.with_name(f"{request.task.id}.stderr.log")
        # A record checked out with the branch is not this attempt's output.
        state_path.unlink(missing_ok=True)

        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            prompt=request.payload,
            prompt_file=prompt_file,
            task_id=request.task.id,
            workdir=request.context.path,
            state_file=state_path,
        )

        env = os.environ.copy()
        env["AGENT_SUPERVISOR_TASK_ID"] = request.task.id
        env["AGENT_SUPERVISOR_ATTEMPT"] = str(request.attempt_number)
        env["AGENT_SUPERVISOR_BRANCH"] = request.context.branch
        env["AGENT_SUPERVISOR_STATE_FILE"] = str(state_path)

        started = time.monotonic()
        try:
            with (
                log_path.open("a", encoding="utf-8") as log_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                _write_log_header(log_handle, request)
                exit_code, timed_out = _run_subprocess_with_timeout(
                    run_args=run_args,
                    cwd=request.context.path,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=log_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise WorkerRunError(
                f"Worker command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerRunError(f"Worker failed to start: {error}", transient=True) from error

        stderr_text = _read_tail(stderr_path)
        _append_log_footer(
            log_path,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
            stderr_text=stderr_text,
        )

        if timed_out:
            raise WorkerTimeoutError(
                f"Worker timed out after {request.timeout_seconds}s",
                classification=classify_worker_failure(
                    exit_code=exit_code,
                    timed_out=True,
                    stderr=stderr_text,
                ),
            )
        if exit_code != 0:
            classification = classify_worker_failure(
                exit_code=exit_code,
                timed_out=False,
                stderr=stderr_text,
            )
            raise WorkerRunError(
                f"Worker exited with code {exit_code}: {_last_line(stderr_text)}",
                transient=classification.failure_class == FailureClass.WORKER_TRANSIENT,
                failure_class=classification.failure_class,
                classification=classification,
            )

        if not state_path.exists():
            raise MissingOutputError(f"Worker did not write a state record at {state_path}")
        try:
            return read_task_state(state_path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, StateSchemaError) as error:
            raise WorkerRunError(
                f"Worker state record is malformed: {error}",
                transient=True,
                failure_class=FailureClass.OUTPUT_INVALID,
            ) from error


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    task_id: str,
    workdir: Path,
    state_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise WorkerRunError("Worker command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise WorkerRunError(
            "Worker command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_id=shlex.quote(task_id),
            workdir=shlex.quote(str(workdir)),
            state_file=shlex.quote(str(state_file)),
        )
    except (KeyError, IndexError) as error:
        raise WorkerRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerRunError("Worker command template rendered empty command.", transient=False)
    return argv, argv[0]


def _run_subprocess_with_timeout(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: TextIO,
    stderr_handle: TextIO,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - start_monotonic >= timeout_seconds:
            logger.warning("Worker pid %s exceeded %ss, terminating", process.pid, timeout_seconds)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _write_log_header(handle: TextIO, request: WorkerRequest) -> None:
    handle.write(
        f"\n=== {request.task.id} attempt {request.attempt_number} "
        f"started {_utc_timestamp()} ===\n"
        f"workdir: {request.context.path}\n"
        f"branch: {request.context.branch}\n\n",
    )
    handle.flush()


def _append_log_footer(
    log_path: Path,
    *,
    exit_code: int,
    timed_out: bool,
    duration_seconds: float,
    stderr_text: str,
) -> None:
    with log_path.open("a", encoding="utf-8") as handle:
        if stderr_text.strip():
            handle.write("\n--- stderr ---\n")
            handle.write(stderr_text.rstrip())
            handle.write("\n")
        outcome = "timed out" if timed_out else f"exit code {exit_code}"
        handle.write(
            f"\n=== finished {_utc_timestamp()}: {outcome} after {duration_seconds:.1f}s ===\n",
        )


def _read_tail(path: Path) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace")
    return text[-_STDERR_TAIL_CHARS:]


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "no stderr output"


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")
