from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any

from beanloop.errors import TaskSchemaError, TaskStoreError
from beanloop.tasks.models import Task, TaskRef, TaskSpec, TaskStatus

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = "id title status type priority tags body parentId"
LIST_FIELDS = f"{SUMMARY_FIELDS} blockedBy {{ id status }} children {{ id status }}"


class TaskStore(ABC):
    """Port to the external task tracker."""

    @abstractmethod
    def get(self, task_id: str, *, depth: int = 5) -> Task | None:
        """Return the task with descendants and blockers up to ``depth`` levels."""

    @abstractmethod
    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        add_tags: Iterable[str] = (),
        remove_tags: Iterable[str] = (),
    ) -> None:
        """Change status and/or tags of a task."""

    @abstractmethod
    def create(self, spec: TaskSpec) -> str:
        """Create a task and return its id."""

    @abstractmethod
    def list_tasks(self, statuses: Iterable[TaskStatus], *, top_level: bool = False) -> list[Task]:
        """List tasks with one level of children and their blockers."""

    def list_top_level(self, statuses: Iterable[TaskStatus]) -> list[Task]:
        return self.list_tasks(statuses, top_level=True)


def build_tree_query(task_id: str, depth: int = 5) -> str:
    """Build a single query fetching ``task_id`` and ``depth - 1`` levels of children.

    Anything deeper than ``depth`` is not requested, so the returned tree is
    truncated there.
    """
    node = f"{SUMMARY_FIELDS} blockedBy {{ id status }}"
    for _ in range(max(0, depth - 1)):
        node = f"{SUMMARY_FIELDS} blockedBy {{ id status }} children {{ {node} }}"
    parent = "parent { id title type status body parentId }"
    return f'{{ bean(id: {json.dumps(task_id)}) {{ {node} {parent} }} }}'


def build_list_query(statuses: Iterable[TaskStatus], *, top_level: bool = False) -> str:
    filters = [f"status: [{', '.join(json.dumps(status.value) for status in statuses)}]"]
    if top_level:
        filters.append("noParent: true")
    return f"{{ beans(filter: {{ {', '.join(filters)} }}) {{ {LIST_FIELDS} }} }}"


class BeansTaskStore(TaskStore):
    """Task store backed by the ``beans`` command-line tracker."""

    def __init__(self, repo_root: Path, binary: str = "beans") -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary

    def _run(self, args: list[str], input_text: str | None = None) -> str:
        command = [self.binary, *args]
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                input=input_text,
            )
        except FileNotFoundError as exc:
            raise TaskStoreError(
                f"Task store binary not found: {self.binary}", command=" ".join(command)
            ) from exc
        if proc.returncode != 0:
            raise TaskStoreError(
                f"{' '.join(command[:3])} failed (exit code {proc.returncode}): "
                f"{proc.stderr.strip() or proc.stdout.strip()}",
                command=" ".join(command),
            )
        return proc.stdout

    def query(self, graphql: str) -> dict[str, Any]:
        output = self._run(["query", "--json"], input_text=graphql)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TaskStoreError(f"Unparsable task store response: {exc}") from exc
        if not isinstance(payload, dict):
            raise TaskStoreError("Task store response is not an object")
        return payload

    def get(self, task_id: str, *, depth: int = 5) -> Task | None:
        payload = self.query(build_tree_query(task_id, depth))
        raw = payload.get("bean")
        if raw is None:
            return None
        return Task.from_payload(raw)

    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        add_tags: Iterable[str] = (),
        remove_tags: Iterable[str] = (),
    ) -> None:
        args = ["update", task_id]
        if status is not None:
            args.extend(["--status", status.value])
        for tag in add_tags:
            args.extend(["--tag", tag])
        for tag in remove_tags:
            args.extend(["--remove-tag", tag])
        if len(args) == 2:
            return
        self._run(args)

    def create(self, spec: TaskSpec) -> str:
        args = ["create", spec.title, "-t", spec.type.value, "-s", spec.status.value]
        if spec.priority is not None:
            args.extend(["-p", spec.priority.value])
        for tag in spec.tags:
            args.extend(["--tag", tag])
        if spec.parent:
            args.extend(["--parent", spec.parent])
        for blocking_id in spec.blocking:
            args.extend(["--blocking", blocking_id])
        args.extend(["-d", "-", "--json"])
        output = self._run(args, input_text=spec.body)
        try:
            created = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TaskStoreError(f"Unparsable create response: {exc}") from exc
        task_id = created.get("id") if isinstance(created, dict) else None
        if not isinstance(task_id, str):
            raise TaskStoreError("Create response did not include an id")
        return task_id

    def list_tasks(self, statuses: Iterable[TaskStatus], *, top_level: bool = False) -> list[Task]:
        payload = self.query(build_list_query(statuses, top_level=top_level))
        raw_items = payload.get("beans") or []
        if not isinstance(raw_items, list):
            raise TaskStoreError("Task list response is not a list")
        tasks: list[Task] = []
        for raw in raw_items:
            try:
                tasks.append(Task.from_payload(raw))
            except TaskSchemaError as exc:
                logger.warning("Skipping malformed task record: %s", exc)
        return tasks


class InMemoryTaskStore(TaskStore):
    """Dictionary-backed store. Records are flat; trees are assembled on read."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {}
        self._blockers: dict[str, list[str]] = {}
        self._counter = 0
        for task in tasks:
            self.add(task)

    def add(self, task: Task, *, blocked_by: Iterable[str] = ()) -> Task:
        self._tasks[task.id] = replace(task, children=(), parent=None, blocked_by=())
        blocker_ids = [ref.id for ref in task.blocked_by] + list(blocked_by)
        self._blockers[task.id] = blocker_ids
        return self._tasks[task.id]

    def block(self, task_id: str, blocker_id: str) -> None:
        self._blockers.setdefault(task_id, []).append(blocker_id)

    def record(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def _children_of(self, task_id: str) -> list[Task]:
        return [task for task in self._tasks.values() if task.parent_id == task_id]

    def _refs(self, task_id: str) -> tuple[TaskRef, ...]:
        refs: list[TaskRef] = []
        for blocker_id in self._blockers.get(task_id, []):
            blocker = self._tasks.get(blocker_id)
            if blocker is not None:
                refs.append(TaskRef(id=blocker.id, status=blocker.status))
        return tuple(refs)

    def _tree(self, task_id: str, depth: int) -> Task:
        task = self._tasks[task_id]
        children: tuple[Task, ...] = ()
        if depth > 1:
            children = tuple(
                self._tree(child.id, depth - 1) for child in self._children_of(task_id)
            )
        return replace(task, children=children, blocked_by=self._refs(task_id))

    def get(self, task_id: str, *, depth: int = 5) -> Task | None:
        if task_id not in self._tasks:
            return None
        tree = self._tree(task_id, depth)
        parent_id = tree.parent_id
        if parent_id and parent_id in self._tasks:
            tree = replace(tree, parent=self._tasks[parent_id])
        return tree

    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        add_tags: Iterable[str] = (),
        remove_tags: Iterable[str] = (),
    ) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskStoreError(f"Task not found: {task_id}")
        tags = (task.tags | frozenset(add_tags)) - frozenset(remove_tags)
        self._tasks[task_id] = replace(task, status=status or task.status, tags=tags)

    def create(self, spec: TaskSpec) -> str:
        self._counter += 1
        task_id = f"new-{self._counter}"
        self.add(
            Task(
                id=task_id,
                type=spec.type,
                status=spec.status,
                title=spec.title,
                priority=spec.priority,
                tags=frozenset(spec.tags),
                body=spec.body,
                parent_id=spec.parent,
            )
        )
        for blocked_id in spec.blocking:
            self.block(blocked_id, task_id)
        return task_id

    def list_tasks(self, statuses: Iterable[TaskStatus], *, top_level: bool = False) -> list[Task]:
        wanted = set(statuses)
        return [
            self._tree(task.id, 2)
            for task in self._tasks.values()
            if task.status in wanted and not (top_level and task.parent_id)
        ]
