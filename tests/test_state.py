import json
from pathlib import Path

import pytest

from beanloop.errors import TaskStoreError
from beanloop.state import RootTracker, StateError, StateStore
from beanloop.tasks import InMemoryTaskStore, Priority, Task, TaskStatus, TaskType


def _backlog() -> InMemoryTaskStore:
    return InMemoryTaskStore(
        [
            Task(id="task-a", type=TaskType.TASK, status=TaskStatus.TODO, priority=Priority.CRITICAL),
            Task(id="feat-b", type=TaskType.FEATURE, status=TaskStatus.TODO),
            Task(id="epic-c", type=TaskType.EPIC, status=TaskStatus.TODO, priority=Priority.LOW),
            Task(id="epic-d", type=TaskType.EPIC, status=TaskStatus.IN_PROGRESS, priority=Priority.HIGH),
            Task(id="ms-e", type=TaskType.MILESTONE, status=TaskStatus.DRAFT),
            Task(id="child", type=TaskType.TASK, status=TaskStatus.TODO, parent_id="epic-c"),
        ]
    )


def test_state_store_envelope_and_revision(tmp_path: Path) -> None:
    state = StateStore(tmp_path)

    state.set_json("root", {"task_id": "x"})
    state.set_json("root", {"task_id": "y"})
    envelope = state.get_envelope("root")

    assert envelope["revision"] == 2
    assert envelope["data"] == {"task_id": "y"}
    assert envelope["updated_at"]
    assert (tmp_path / ".beanloop" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_state_store_detects_stale_writer(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    state.set_json("root", {"task_id": "x"})

    with pytest.raises(StateError, match="Concurrent state update"):
        state.set_json("root", {"task_id": "z"}, expected_revision=0)


def test_state_store_rejects_unknown_namespace(tmp_path: Path) -> None:
    with pytest.raises(StateError):
        StateStore(tmp_path).set_json("metrics", {})


def test_state_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    (tmp_path / ".beanloop" / "state" / "root.json").write_text("{broken", encoding="utf-8")

    assert state.get_json("root", default={}) == {}


def test_run_records_are_capped(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    for index in range(5):
        state.record_run({"task_id": f"t{index}", "state": "completed"}, keep=3)

    runs = state.get_runs()
    assert [run["task_id"] for run in runs] == ["t2", "t3", "t4"]
    assert all("recorded_at" in run for run in runs)


def test_detect_ranks_by_type_then_priority(tmp_path: Path) -> None:
    tracker = RootTracker(StateStore(tmp_path), _backlog())

    assert tracker.detect() == "epic-d"


def test_resolve_prefers_override_and_persists_it(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    tracker = RootTracker(state, _backlog())

    resolved = tracker.resolve("feat-b")

    assert resolved is not None
    assert (resolved.task_id, resolved.source) == ("feat-b", "override")
    assert state.get_json("root") == {"task_id": "feat-b", "source": "override"}


def test_root_survives_restart(tmp_path: Path) -> None:
    store = _backlog()
    first = RootTracker(StateStore(tmp_path), store)
    assert first.resolve("epic-c") is not None

    restarted = RootTracker(StateStore(tmp_path), store)
    resolved = restarted.resolve()

    assert resolved is not None
    assert (resolved.task_id, resolved.source) == ("epic-c", "resumed")


def test_finished_root_is_discarded_and_redetected(tmp_path: Path) -> None:
    store = _backlog()
    tracker = RootTracker(StateStore(tmp_path), store)
    tracker.resolve("epic-c")
    store.update("epic-c", status=TaskStatus.COMPLETED)

    resolved = tracker.resolve()

    assert resolved is not None
    assert (resolved.task_id, resolved.source) == ("epic-d", "detected")
    assert tracker.current() == "epic-d"


def test_nothing_to_detect_is_idle(tmp_path: Path) -> None:
    store = InMemoryTaskStore(
        [Task(id="done", type=TaskType.EPIC, status=TaskStatus.COMPLETED)]
    )
    tracker = RootTracker(StateStore(tmp_path), store)

    assert tracker.resolve() is None
    assert tracker.current() is None


class _FlakyStore(InMemoryTaskStore):
    def get(self, task_id: str, *, depth: int = 5) -> Task | None:
        raise TaskStoreError("beans query failed")


def test_unreadable_root_is_kept(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    state.set_json("root", {"task_id": "epic-c", "source": "detected"})
    tracker = RootTracker(state, _FlakyStore())

    resolved = tracker.resolve()

    assert resolved is not None
    assert resolved.task_id == "epic-c"
    assert json.loads((tmp_path / ".beanloop" / "state" / "root.json").read_text())["data"]["task_id"] == "epic-c"
