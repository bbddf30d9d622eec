"""Runtime configuration for the task supervisor."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SUPERVISOR_DIRNAME = ".supervisor"
CONFIG_FILENAME = "config.json"
DEFAULT_WORKER_COMMAND = "claude -p {prompt} --permission-mode bypassPermissions"

_CONFIG_FILE_KEYS = frozenset(
    {"branchPrefix", "parallel", "maxAttempts", "timeoutSeconds", "workerCommand"},
)


@dataclass(slots=True)
class SchedulingSettings:
    """Pool, retry and timeout settings."""

    branch_prefix: str = "feature"
    parallel: int = 5
    max_attempts: int = 3
    timeout_seconds: int = 3600


@dataclass(slots=True)
class WorkerSettings:
    """Worker CLI settings."""

    command_template: str = DEFAULT_WORKER_COMMAND


@dataclass(slots=True)
class LedgerSettings:
    """Attempt ledger settings."""

    enabled: bool = True
    db_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_dir: Path = Path(".")
    scheduling: SchedulingSettings = field(default_factory=SchedulingSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)

    @property
    def shared_dir(self) -> Path:
        return self.project_dir / SUPERVISOR_DIRNAME

    @property
    def tasks_dir(self) -> Path:
        return self.shared_dir / "tasks"

    @property
    def templates_dir(self) -> Path:
        return self.shared_dir / "templates"

    @property
    def ledger_path(self) -> Path:
        return self.ledger.db_path or self.shared_dir / "ledger.db"

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load defaults, then ``.supervisor/config.json``, then environment overrides."""

        root = project_dir or Path(os.getenv("AGENT_SUPERVISOR_PROJECT_DIR", "."))
        file_values = load_config_file(root / SUPERVISOR_DIRNAME / CONFIG_FILENAME)
        defaults = SchedulingSettings()
        ledger_path = os.getenv("AGENT_SUPERVISOR_LEDGER_PATH", "").strip()
        return cls(
            project_dir=root,
            scheduling=SchedulingSettings(
                branch_prefix=os.getenv(
                    "AGENT_SUPERVISOR_BRANCH_PREFIX",
                    str(file_values.get("branchPrefix", defaults.branch_prefix)),
                ),
                parallel=int(
                    os.getenv(
                        "AGENT_SUPERVISOR_PARALLEL",
                        str(file_values.get("parallel", defaults.parallel)),
                    ),
                ),
                max_attempts=int(
                    os.getenv(
                        "AGENT_SUPERVISOR_MAX_ATTEMPTS",
                        str(file_values.get("maxAttempts", defaults.max_attempts)),
                    ),
                ),
                timeout_seconds=int(
                    os.getenv(
                        "AGENT_SUPERVISOR_TIMEOUT_SECONDS",
                        str(file_values.get("timeoutSeconds", defaults.timeout_seconds)),
                    ),
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "AGENT_SUPERVISOR_WORKER_COMMAND",
                    str(file_values.get("workerCommand", DEFAULT_WORKER_COMMAND)),
                ),
            ),
            ledger=LedgerSettings(
                enabled=_env_bool("AGENT_SUPERVISOR_LEDGER_ENABLED", default=True),
                db_path=Path(ledger_path) if ledger_path else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot run with."""

        if not self.scheduling.branch_prefix.strip():
            raise ValueError("AGENT_SUPERVISOR_BRANCH_PREFIX must not be empty.")
        if any(char.isspace() for char in self.scheduling.branch_prefix):
            raise ValueError("AGENT_SUPERVISOR_BRANCH_PREFIX must not contain whitespace.")
        if self.scheduling.parallel < 1:
            raise ValueError("AGENT_SUPERVISOR_PARALLEL must be >= 1.")
        if self.scheduling.max_attempts < 1:
            raise ValueError("AGENT_SUPERVISOR_MAX_ATTEMPTS must be >= 1.")
        if self.scheduling.timeout_seconds <= 0:
            raise ValueError("AGENT_SUPERVISOR_TIMEOUT_SECONDS must be > 0.")
        template = self.worker.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "AGENT_SUPERVISOR_WORKER_COMMAND must include {prompt} or {prompt_file}.",
            )


def load_config_file(path: Path) -> dict[str, Any]:
    """Read the optional JSON config file; unknown keys are rejected."""

    if not path.is_file():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Failed to parse {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object in {path}")
    unknown = sorted(set(payload) - _CONFIG_FILE_KEYS)
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return payload


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")
