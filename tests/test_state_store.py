from __future__ import annotations

import json

import allure
import pytest

from agent_supervisor.orchestrator.models import TaskStatus
from agent_supervisor.orchestrator.state_store import CorruptStateError, StateStore
from tests.conftest import make_state

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("State Store"),
]


def test_absent_record_loads_as_none(store: StateStore) -> None:
    assert store.load("001-missing") is None


def test_save_then_load_keeps_status_and_attempt(store: StateStore) -> None:
    store.save(make_state("001", status=TaskStatus.NEEDS_RETRY, attempt=2))

    loaded = store.load("001")

    assert loaded is not None
    assert loaded.status == TaskStatus.NEEDS_RETRY
    assert loaded.attempt_number == 2
    assert store.list_task_ids() == ["001"]
    assert not list(store.state_dir.glob("*.tmp"))


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        ("", "invalid JSON"),
        ("{broken", "invalid JSON"),
        ("[]", "Expected JSON object"),
        ('{"taskId": "001", "status": "DONE"}', "status has unknown value"),
    ],
)
def test_unreadable_record_is_corrupt(store: StateStore, content: str, reason: str) -> None:
    store.state_dir.mkdir(parents=True)
    store.state_path("001").write_text(content, "utf-8")

    with pytest.raises(CorruptStateError, match=reason) as error_info:
        store.load("001")

    assert error_info.value.task_id == "001"


def test_record_for_another_task_is_corrupt(store: StateStore) -> None:
    store.save(make_state("002"))
    store.state_path("002").rename(store.state_path("001"))

    with pytest.raises(CorruptStateError, match="belongs to task '002'"):
        store.load("001")


def test_reset_removes_record(store: StateStore) -> None:
    store.save(make_state("001"))

    assert store.reset("001") is True
    assert store.reset("001") is False
    assert store.load("001") is None


def test_saved_record_uses_camel_case_keys(store: StateStore) -> None:
    store.save(make_state("001", attempt=3))

    payload = json.loads(store.state_path("001").read_text("utf-8"))

    assert payload["taskId"] == "001"
    assert payload["attemptNumber"] == 3
    assert payload["gitStatus"]["lastCommitSha"] == "a1b2c3d4e5f6"
    assert payload["gitStatus"]["uncommittedChanges"] is False
