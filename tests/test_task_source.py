from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_supervisor.orchestrator.task_source import (
    TaskDefinitionError,
    TaskLoader,
    parse_front_matter,
    slugify,
)

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Task Queue"),
]


def _write(tasks_dir: Path, name: str, text: str) -> None:
    tasks_dir.mkdir(parents=True, exist_ok=True)
    (tasks_dir / name).write_text(text, "utf-8")


def test_missing_directory_has_no_tasks(tmp_path: Path) -> None:
    assert TaskLoader(tmp_path / "tasks").load_tasks() == []


def test_tasks_are_ordered_by_leading_number(tmp_path: Path) -> None:
    tasks_dir = tmp_path / "tasks"
    for name in ("010-late.md", "002-b.md", "001-a.md", "notes.md"):
        _write(tasks_dir, name, f"# {name}\n")
    _write(tasks_dir, "README.txt", "ignored")

    tasks = TaskLoader(tasks_dir).load_tasks()

    assert [task.id for task in tasks] == ["notes", "001-a", "002-b", "010-late"]


def test_front_matter_becomes_metadata(tmp_path: Path) -> None:
    tasks_dir = tmp_path / "tasks"
    _write(
        tasks_dir,
        "001-auth.md",
        "---\ntitle: Add login\nopen_pr: true\n---\n# Login\n\nUse sessions.\n",
    )

    task = TaskLoader(tasks_dir).load_task("001-auth")

    assert task is not None
    assert task.title == "Add login"
    assert task.wants_follow_up_request is True
    assert task.instruction_body == "# Login\n\nUse sessions."
    assert TaskLoader(tasks_dir).load_task("999-none") is None


def test_text_without_front_matter_is_all_body() -> None:
    metadata, body = parse_front_matter("# Plain task\n")

    assert metadata == {}
    assert body == "# Plain task\n"


@pytest.mark.parametrize(
    "text",
    ["---\ntitle: [unclosed\n---\nbody\n", "---\n- a\n- b\n---\nbody\n"],
)
def test_invalid_front_matter_is_rejected(text: str) -> None:
    with pytest.raises(TaskDefinitionError):
        parse_front_matter(text)


def test_create_task_numbers_after_highest_existing(tmp_path: Path) -> None:
    tasks_dir = tmp_path / "tasks"
    _write(tasks_dir, "001-a.md", "# a\n")
    _write(tasks_dir, "007-b.md", "# b\n")
    loader = TaskLoader(tasks_dir)

    task = loader.create_task("Add OAuth login (Google)!")

    assert task.id == "008-add-oauth-login-google"
    assert task.path is not None
    assert task.path.read_text("utf-8") == "# Add OAuth login (Google)!\n\n(Add task details here)\n"
    assert [item.id for item in loader.load_tasks()][-1] == "008-add-oauth-login-google"


def test_create_first_task_in_empty_queue(tmp_path: Path) -> None:
    task = TaskLoader(tmp_path / "tasks").create_task("Set up CI")

    assert task.id == "001-set-up-ci"


def test_create_task_rejects_blank_description(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        TaskLoader(tmp_path / "tasks").create_task("   ")


def test_slugify_truncates_long_descriptions() -> None:
    slug = slugify("Refactor " * 20)

    assert len(slug) == 50
    assert slug.startswith("refactor-refactor")
