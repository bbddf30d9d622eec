"""Worker implementations."""

from agent_supervisor.orchestrator.backend.base import (
    MissingOutputError,
    Worker,
    WorkerRequest,
    WorkerRunError,
    WorkerTimeoutError,
)
from agent_supervisor.orchestrator.backend.cli_backend import CliAgentWorker

__all__ = [
    "CliAgentWorker",
    "MissingOutputError",
    "Worker",
    "WorkerRequest",
    "WorkerRunError",
    "WorkerTimeoutError",
]
