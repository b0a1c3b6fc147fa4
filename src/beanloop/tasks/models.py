from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from beanloop.errors import TaskSchemaError

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    MILESTONE = "milestone"
    EPIC = "epic"
    FEATURE = "feature"
    TASK = "task"
    BUG = "bug"


class TaskStatus(str, Enum):
    DRAFT = "draft"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SCRAPPED = "scrapped"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    DEFERRED = "deferred"


COMPOSITE_TYPES = frozenset({TaskType.MILESTONE, TaskType.EPIC, TaskType.FEATURE})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SCRAPPED})
ACTIVE_STATUSES = frozenset({TaskStatus.TODO, TaskStatus.IN_PROGRESS})
CONTROL_TAGS = frozenset({"blocked", "failed"})

PRIORITY_RANKS: dict[Priority | None, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
    Priority.DEFERRED: 4,
    None: 2,
}
TYPE_RANKS: dict[TaskType, int] = {
    TaskType.MILESTONE: 0,
    TaskType.EPIC: 1,
    TaskType.FEATURE: 2,
}


def priority_rank(priority: Priority | None) -> int:
    return PRIORITY_RANKS[priority]


def type_rank(task_type: TaskType) -> int:
    return TYPE_RANKS.get(task_type, 3)


def status_rank(status: TaskStatus) -> int:
    return 0 if status is TaskStatus.IN_PROGRESS else 1


@dataclass(frozen=True, slots=True)
class TaskRef:
    id: str
    status: TaskStatus

    @property
    def resolved(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    type: TaskType
    status: TaskStatus
    title: str = ""
    priority: Priority | None = None
    tags: frozenset[str] = frozenset()
    body: str = ""
    parent_id: str | None = None
    parent: Task | None = None
    children: tuple[Task, ...] = ()
    blocked_by: tuple[TaskRef, ...] = ()

    @property
    def is_composite(self) -> bool:
        return self.type in COMPOSITE_TYPES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def control_tags(self) -> frozenset[str]:
        return self.tags & CONTROL_TAGS

    @property
    def has_control_tag(self) -> bool:
        return bool(self.control_tags)

    @property
    def blockers_resolved(self) -> bool:
        return all(ref.resolved for ref in self.blocked_by)

    @property
    def children_resolved(self) -> bool:
        return all(child.is_terminal for child in self.children)

    @property
    def is_eligible(self) -> bool:
        if self.status not in ACTIVE_STATUSES:
            return False
        if self.has_control_tag or not self.blockers_resolved:
            return False
        if self.is_composite and not self.children_resolved:
            return False
        return True

    @classmethod
    def from_payload(cls, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise TaskSchemaError(f"Task record must be an object, got {type(payload).__name__}")
        task_id = payload.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise TaskSchemaError("Task record is missing an id")
        task_type = _parse_enum(TaskType, payload.get("type"), task_id, "type")
        status = _parse_enum(TaskStatus, payload.get("status"), task_id, "status")
        raw_priority = payload.get("priority")
        priority = None
        if raw_priority not in (None, ""):
            priority = _parse_enum(Priority, raw_priority, task_id, "priority")

        raw_tags = payload.get("tags") or []
        if not isinstance(raw_tags, list):
            raise TaskSchemaError(f"Task {task_id}: tags must be a list")
        tags = frozenset(str(tag) for tag in raw_tags if isinstance(tag, str))

        parent: Task | None = None
        parent_id = payload.get("parentId")
        raw_parent = payload.get("parent")
        if isinstance(raw_parent, dict):
            parent = _quarantine_parent(raw_parent, task_id)
            if parent is not None and not parent_id:
                parent_id = parent.id
        if parent_id is not None and not isinstance(parent_id, str):
            raise TaskSchemaError(f"Task {task_id}: parentId must be a string")

        children = tuple(
            _quarantine_child(raw, task_id) for raw in _list_field(payload, "children")
        )
        blocked_by = tuple(_parse_ref(raw, task_id) for raw in _list_field(payload, "blockedBy"))
        body = payload.get("body")
        title = payload.get("title")
        return cls(
            id=task_id,
            type=task_type,
            status=status,
            title=title if isinstance(title, str) else "",
            priority=priority,
            tags=tags,
            body=body if isinstance(body, str) else "",
            parent_id=parent_id or None,
            parent=parent,
            children=children,
            blocked_by=blocked_by,
        )


def _parse_enum(enum_type: type[Enum], value: Any, task_id: str, field_name: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        raise TaskSchemaError(f"Task {task_id}: invalid {field_name} {value!r}") from exc


def _list_field(payload: dict[str, Any], name: str) -> list[Any]:
    value = payload.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TaskSchemaError(f"Task {payload.get('id')}: {name} must be a list")
    return value


def _quarantine_parent(raw: Any, owner_id: str) -> Task | None:
    try:
        return Task.from_payload(raw)
    except TaskSchemaError as exc:
        logger.warning("Dropping malformed parent of %s: %s", owner_id, exc)
        return None


def _quarantine_child(raw: Any, owner_id: str) -> Task:
    """Parse a child record. An unreadable one becomes a blocked placeholder
    that keeps its parent from counting as finished.
    """
    try:
        return Task.from_payload(raw)
    except TaskSchemaError as exc:
        fields = raw if isinstance(raw, dict) else {}
        raw_id = fields.get("id")
        child_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else f"{owner_id}:unreadable"
        try:
            status = TaskStatus(fields.get("status"))
        except ValueError:
            status = TaskStatus.TODO
        if status not in TERMINAL_STATUSES:
            status = TaskStatus.TODO
        logger.error("Malformed child %s of %s held as blocked: %s", child_id, owner_id, exc)
        return Task(
            id=child_id,
            type=TaskType.TASK,
            status=status,
            title="(unreadable record)",
            tags=frozenset({"blocked"}),
            parent_id=owner_id,
        )


def _parse_ref(raw: Any, owner_id: str) -> TaskRef:
    # An unreadable blocker must not make its owner look unblocked.
    if not isinstance(raw, dict):
        raise TaskSchemaError(f"Task {owner_id}: malformed blocker {raw!r}")
    status = _parse_enum(TaskStatus, raw.get("status"), owner_id, "blocker status")
    ref_id = raw.get("id")
    return TaskRef(id=ref_id if isinstance(ref_id, str) else "", status=status)


@dataclass(slots=True)
class TaskSpec:
    title: str
    type: TaskType = TaskType.TASK
    status: TaskStatus = TaskStatus.TODO
    priority: Priority | None = None
    tags: list[str] = field(default_factory=list)
    body: str = ""
    parent: str | None = None
    blocking: list[str] = field(default_factory=list)
