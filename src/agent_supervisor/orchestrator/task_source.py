"""Task definitions stored as markdown files under ``.supervisor/tasks``."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from agent_supervisor.orchestrator.models import Task

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_LEADING_NUMBER_RE = re.compile(r"^(\d+)")
_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_MAX_SLUG_LENGTH = 50


class TaskDefinitionError(ValueError):
    """Task file front matter cannot be parsed."""


class TaskLoader:
    """Loads an ordered, static task list from a directory of markdown files."""

    def __init__(self, tasks_dir: Path) -> None:
        self.tasks_dir = tasks_dir

    def load_tasks(self) -> list[Task]:
        if not self.tasks_dir.is_dir():
            return []
        paths = sorted(self.tasks_dir.glob("*.md"), key=lambda path: _sort_key(path.stem))
        return [self._load_path(path) for path in paths]

    def load_task(self, task_id: str) -> Task | None:
        path = self.tasks_dir / f"{task_id}.md"
        if not path.is_file():
            return None
        return self._load_path(path)

    def create_task(self, description: str) -> Task:
        """Write a new ``NNN-slug.md`` task file numbered after the highest existing one."""

        description = description.strip()
        if not description:
            raise ValueError("Task description must not be empty")
        highest = max(
            (_leading_number(task.id) for task in self.load_tasks()),
            default=0,
        )
        task_id = f"{highest + 1:03d}-{slugify(description)}".rstrip("-")
        path = self.tasks_dir / f"{task_id}.md"
        if path.exists():
            raise FileExistsError(f"Task file already exists: {path}")
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        body = f"# {description}\n\n(Add task details here)\n"
        path.write_text(body, "utf-8")
        logger.info("Created task %s", task_id)
        return Task(id=task_id, instruction_body=body.strip(), metadata={}, path=path)

    def _load_path(self, path: Path) -> Task:
        metadata, body = parse_front_matter(path.read_text("utf-8"), source=path)
        return Task(id=path.stem, instruction_body=body.strip(), metadata=metadata, path=path)


def parse_front_matter(text: str, *, source: Path | None = None) -> tuple[dict[str, Any], str]:
    """Split optional YAML front matter from a markdown body."""

    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return {}, text
    try:
        metadata = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as error:
        raise TaskDefinitionError(f"Invalid front matter in {source or 'task'}: {error}") from error
    if not isinstance(metadata, dict):
        raise TaskDefinitionError(f"Front matter in {source or 'task'} must be a mapping")
    return metadata, text[match.end() :]


def slugify(description: str) -> str:
    slug = _SLUG_STRIP_RE.sub("", description.lower()).strip()
    slug = _SLUG_SPACE_RE.sub("-", slug)
    return slug[:_MAX_SLUG_LENGTH]


def _leading_number(name: str) -> int:
    match = _LEADING_NUMBER_RE.match(name)
    return int(match.group(1)) if match else 0


def _sort_key(name: str) -> tuple[int, str]:
    return _leading_number(name), name
