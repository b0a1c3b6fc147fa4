from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from beanloop.errors import TaskStoreError
from beanloop.state.store import StateStore
from beanloop.tasks.models import ACTIVE_STATUSES, Task, priority_rank, type_rank
from beanloop.tasks.store import TaskStore

logger = logging.getLogger(__name__)

RootSource = Literal["override", "resumed", "detected"]


@dataclass(frozen=True, slots=True)
class ResolvedRoot:
    task_id: str
    source: RootSource


def root_key(task: Task) -> tuple[int, int, str]:
    return (type_rank(task.type), priority_rank(task.priority), task.id)


class RootTracker:
    """Decides which subtree the loop works on and remembers it across restarts."""

    def __init__(self, state: StateStore, store: TaskStore) -> None:
        self.state = state
        self.store = store

    def current(self) -> str | None:
        payload = self.state.get_json("root", default={})
        if isinstance(payload, dict):
            task_id = payload.get("task_id")
            if isinstance(task_id, str) and task_id:
                return task_id
        return None

    def persist(self, task_id: str, source: RootSource) -> None:
        self.state.set_json("root", {"task_id": task_id, "source": source})

    def clear(self) -> None:
        self.state.clear("root")

    def _resumable(self, task_id: str) -> bool:
        try:
            task = self.store.get(task_id, depth=1)
        except TaskStoreError as exc:
            logger.warning("Cannot read persisted root %s, keeping it: %s", task_id, exc)
            return True
        return task is not None and not task.is_terminal

    def detect(self) -> str | None:
        candidates = self.store.list_top_level(ACTIVE_STATUSES)
        top_level = [task for task in candidates if not task.parent_id]
        if not top_level:
            return None
        return min(top_level, key=root_key).id

    def resolve(self, override: str | None = None) -> ResolvedRoot | None:
        if override:
            self.persist(override, "override")
            logger.info("Traversal root set to %s", override)
            return ResolvedRoot(override, "override")

        previous = self.current()
        if previous is not None:
            if self._resumable(previous):
                logger.info("Resuming traversal root %s", previous)
                return ResolvedRoot(previous, "resumed")
            logger.info("Discarding finished traversal root %s", previous)
            self.clear()

        detected = self.detect()
        if detected is None:
            return None
        self.persist(detected, "detected")
        logger.info("Detected traversal root %s", detected)
        return ResolvedRoot(detected, "detected")
