"""Durable per-task state records under ``.supervisor/state``."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from agent_supervisor.orchestrator.contracts import (
    StateSchemaError,
    read_task_state,
    write_task_state,
)
from agent_supervisor.orchestrator.models import TaskState

logger = logging.getLogger(__name__)


class CorruptStateError(RuntimeError):
    """Stored state record exists but cannot be read as a valid task state."""

    def __init__(self, task_id: str, path: Path, reason: str) -> None:
        super().__init__(f"Corrupt state record for task {task_id} at {path}: {reason}")
        self.task_id = task_id
        self.path = path
        self.reason = reason


class StateStore:
    """JSON-file store keyed by task id.

    Each task owns exactly one record, so concurrent workers never contend on
    the same file and no cross-task locking is needed.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self.state_dir = root_dir / "state"
        self.logs_dir = root_dir / "logs"

    def state_path(self, task_id: str) -> Path:
        return self.state_dir / f"{task_id}.json"

    def log_path(self, task_id: str) -> Path:
        return self.logs_dir / f"{task_id}.log"

    def load(self, task_id: str) -> TaskState | None:
        """Return the stored state, or ``None`` when the task was never attempted."""

        path = self.state_path(task_id)
        if not path.exists():
            return None
        try:
            state = read_task_state(path)
        except (OSError, UnicodeDecodeError) as error:
            raise CorruptStateError(task_id, path, f"unreadable: {error}") from error
        except json.JSONDecodeError as error:
            raise CorruptStateError(task_id, path, f"invalid JSON: {error}") from error
        except StateSchemaError as error:
            raise CorruptStateError(task_id, path, str(error)) from error
        if state.task_id != task_id:
            raise CorruptStateError(
                task_id,
                path,
                f"record belongs to task {state.task_id!r}",
            )
        return state

    def save(self, state: TaskState) -> None:
        write_task_state(self.state_path(state.task_id), state)
        logger.debug(
            "Saved state for %s: status=%s attempt=%d",
            state.task_id,
            state.status.value,
            state.attempt_number,
        )

    def reset(self, task_id: str) -> bool:
        """Delete the stored record so the task is pending again."""

        path = self.state_path(task_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Reset task %s to pending", task_id)
        return True

    def list_task_ids(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(path.stem for path in self.state_dir.glob("*.json"))

    def ensure_logs_dir(self) -> Path:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir
