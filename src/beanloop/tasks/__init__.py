from beanloop.tasks.models import (
    COMPOSITE_TYPES,
    CONTROL_TAGS,
    Priority,
    Task,
    TaskRef,
    TaskSpec,
    TaskStatus,
    TaskType,
    priority_rank,
    type_rank,
)
from beanloop.tasks.snapshot import fetch_snapshot, require_snapshot
from beanloop.tasks.store import BeansTaskStore, InMemoryTaskStore, TaskStore

__all__ = [
    "COMPOSITE_TYPES",
    "CONTROL_TAGS",
    "BeansTaskStore",
    "InMemoryTaskStore",
    "Priority",
    "Task",
    "TaskRef",
    "TaskSpec",
    "TaskStatus",
    "TaskStore",
    "TaskType",
    "fetch_snapshot",
    "priority_rank",
    "require_snapshot",
    "type_rank",
]
