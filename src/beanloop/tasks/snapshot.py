from __future__ import annotations

import logging

from beanloop.errors import FetchFailure, TaskStoreError
from beanloop.tasks.models import Task
from beanloop.tasks.store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 5


def fetch_snapshot(store: TaskStore, task_id: str, depth: int = DEFAULT_DEPTH) -> Task | None:
    """Read a fresh bounded-depth tree for ``task_id``; ``None`` when it does not exist."""
    return store.get(task_id, depth=depth)


def require_snapshot(store: TaskStore, task_id: str, depth: int = DEFAULT_DEPTH) -> Task:
    try:
        snapshot = fetch_snapshot(store, task_id, depth)
    except TaskStoreError as exc:
        logger.debug("Snapshot query for %s failed", task_id, exc_info=True)
        raise FetchFailure(task_id, str(exc)) from exc
    if snapshot is None:
        raise FetchFailure(task_id, "not found")
    return snapshot
