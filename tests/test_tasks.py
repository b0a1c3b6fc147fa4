import json
import logging
import shutil
from pathlib import Path
from typing import Any

import pytest

from beanloop.errors import FetchFailure, TaskSchemaError, TaskStoreError
from beanloop.selector import select
from beanloop.tasks import (
    BeansTaskStore,
    InMemoryTaskStore,
    Priority,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
    require_snapshot,
)
from beanloop.tasks.store import build_list_query, build_tree_query


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": "beans-1",
        "title": "Add login",
        "type": "feature",
        "status": "todo",
        "priority": "high",
        "tags": ["auth"],
        "body": "Do it",
        "parentId": "beans-0",
        "children": [],
        "blockedBy": [],
    }
    payload.update(overrides)
    return payload


def test_task_from_payload_parses_typed_fields() -> None:
    task = Task.from_payload(
        _payload(
            children=[{"id": "beans-2", "type": "task", "status": "completed"}],
            blockedBy=[{"id": "beans-9", "status": "scrapped"}],
        )
    )

    assert task.type is TaskType.FEATURE
    assert task.status is TaskStatus.TODO
    assert task.priority is Priority.HIGH
    assert task.tags == frozenset({"auth"})
    assert task.parent_id == "beans-0"
    assert task.is_composite
    assert task.children_resolved
    assert task.blockers_resolved
    assert task.is_eligible


def test_empty_priority_means_unset() -> None:
    assert Task.from_payload(_payload(priority="")).priority is None
    assert Task.from_payload(_payload(priority=None)).priority is None


def test_malformed_root_record_is_rejected() -> None:
    with pytest.raises(TaskSchemaError):
        Task.from_payload(_payload(status="doing"))
    with pytest.raises(TaskSchemaError):
        Task.from_payload(_payload(id=""))
    with pytest.raises(TaskSchemaError):
        Task.from_payload(["not", "a", "record"])


def test_malformed_child_is_quarantined(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    task = Task.from_payload(
        _payload(
            children=[
                {"id": "ok", "type": "task", "status": "todo"},
                {"id": "bad", "type": "spaceship", "status": "todo"},
            ]
        )
    )

    assert [child.id for child in task.children] == ["ok", "bad"]
    placeholder = task.children[1]
    assert placeholder.status is TaskStatus.TODO
    assert placeholder.has_control_tag
    assert "Malformed child bad of " in caplog.text
    assert caplog.records[-1].levelno == logging.ERROR


def test_unreadable_child_keeps_parent_from_review() -> None:
    epic = Task.from_payload(
        _payload(
            type="epic",
            children=[
                {"id": "done", "type": "task", "status": "completed"},
                {"id": "odd", "type": "task", "status": "someday"},
                {"type": "task", "status": "completed"},
            ],
        )
    )

    assert [child.id for child in epic.children][1:] == ["odd", f"{epic.id}:unreadable"]
    assert epic.children[2].is_terminal
    assert not epic.children_resolved
    assert not epic.is_eligible
    assert select(epic) is None


def test_malformed_blocker_is_not_silently_dropped() -> None:
    with pytest.raises(TaskSchemaError):
        Task.from_payload(_payload(blockedBy=[{"id": "x", "status": "unknown"}]))


def test_eligibility_rules() -> None:
    leaf = Task(id="t", type=TaskType.TASK, status=TaskStatus.TODO)
    assert leaf.is_eligible
    assert not Task(id="t", type=TaskType.TASK, status=TaskStatus.DRAFT).is_eligible
    assert not Task(
        id="t", type=TaskType.TASK, status=TaskStatus.TODO, tags=frozenset({"failed"})
    ).is_eligible
    open_child = Task(id="c", type=TaskType.TASK, status=TaskStatus.IN_PROGRESS)
    assert not Task(
        id="f", type=TaskType.EPIC, status=TaskStatus.TODO, children=(open_child,)
    ).is_eligible


def test_tree_query_is_bounded_by_depth() -> None:
    query = build_tree_query("beans-1", depth=3)

    assert query.count("children {") == 2
    assert '"beans-1"' in query
    assert "parent {" in query
    assert build_tree_query("x", depth=1).count("children {") == 0


def test_list_query_filters_status_and_top_level() -> None:
    query = build_list_query([TaskStatus.TODO], top_level=True)

    assert '"todo"' in query
    assert "noParent: true" in query


def test_in_memory_store_truncates_deep_trees() -> None:
    store = InMemoryTaskStore()
    parent_id = None
    for index in range(7):
        store.add(
            Task(
                id=f"n{index}",
                type=TaskType.EPIC if index < 6 else TaskType.TASK,
                status=TaskStatus.TODO,
                parent_id=parent_id,
            )
        )
        parent_id = f"n{index}"

    tree = store.get("n0", depth=5)
    assert tree is not None
    depth = 1
    node = tree
    while node.children:
        node = node.children[0]
        depth += 1
    assert depth == 5


def test_in_memory_store_create_registers_blocking() -> None:
    store = InMemoryTaskStore([Task(id="t1", type=TaskType.TASK, status=TaskStatus.TODO)])

    blocker_id = store.create(TaskSpec(title="Blocker: flaky db", type=TaskType.BUG, blocking=["t1"]))

    task = store.get("t1")
    assert task is not None
    assert [ref.id for ref in task.blocked_by] == [blocker_id]
    assert not task.blockers_resolved


def test_in_memory_store_update_unknown_task_raises() -> None:
    with pytest.raises(TaskStoreError):
        InMemoryTaskStore().update("missing", status=TaskStatus.COMPLETED)


def test_require_snapshot_wraps_missing_task() -> None:
    with pytest.raises(FetchFailure, match="not found"):
        require_snapshot(InMemoryTaskStore(), "missing")


class _ScriptedStore(BeansTaskStore):
    def __init__(self, responses: list[str]) -> None:
        super().__init__(Path("."))
        self.responses = responses
        self.calls: list[tuple[list[str], str | None]] = []

    def _run(self, args: list[str], input_text: str | None = None) -> str:
        self.calls.append((args, input_text))
        return self.responses.pop(0)


def test_beans_store_get_parses_query_response() -> None:
    store = _ScriptedStore([json.dumps({"bean": _payload()})])

    task = store.get("beans-1", depth=2)

    assert task is not None
    assert task.id == "beans-1"
    args, query = store.calls[0]
    assert args == ["query", "--json"]
    assert query is not None and "beans-1" in query


def test_beans_store_get_returns_none_for_missing() -> None:
    assert _ScriptedStore([json.dumps({"bean": None})]).get("nope") is None


def test_beans_store_rejects_garbage_output() -> None:
    with pytest.raises(TaskStoreError):
        _ScriptedStore(["not json"]).get("beans-1")


def test_beans_store_list_skips_malformed_records() -> None:
    store = _ScriptedStore(
        [json.dumps({"beans": [_payload(), _payload(id="beans-2", type="unknown")]})]
    )

    tasks = store.list_top_level([TaskStatus.TODO])

    assert [task.id for task in tasks] == ["beans-1"]


def test_beans_store_update_and_create_commands() -> None:
    store = _ScriptedStore(["", json.dumps({"id": "beans-77"})])

    store.update("beans-1", status=TaskStatus.IN_PROGRESS, add_tags=["blocked"])
    created = store.create(TaskSpec(title="Blocker", type=TaskType.BUG, body="why", blocking=["beans-1"]))

    assert store.calls[0][0] == ["update", "beans-1", "--status", "in-progress", "--tag", "blocked"]
    create_args, body = store.calls[1]
    assert create_args[:2] == ["create", "Blocker"]
    assert "--blocking" in create_args
    assert body == "why"
    assert created == "beans-77"


def test_beans_store_missing_binary_raises(tmp_path: Path) -> None:
    store = BeansTaskStore(tmp_path, binary="beans-binary-that-does-not-exist")

    with pytest.raises(TaskStoreError, match="not found"):
        store.get("beans-1")


def test_beans_store_nonzero_exit_raises(tmp_path: Path) -> None:
    binary = shutil.which("false")
    if binary is None:
        pytest.skip("false binary unavailable")
    store = BeansTaskStore(tmp_path, binary=binary)

    with pytest.raises(TaskStoreError, match="exit code"):
        store.list_tasks([TaskStatus.TODO])
