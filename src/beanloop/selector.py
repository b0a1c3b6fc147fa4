"""Next-task selection.

Both modes are pure functions over already-fetched task values. The rooted
mode walks a snapshot depth-first: at each level it descends into the single
best incomplete child and returns whatever that subtree yields. It does not
try the next sibling when the best child's subtree yields nothing.
"""

from __future__ import annotations

from collections.abc import Iterable

from beanloop.tasks.models import Task, TaskStatus, priority_rank, status_rank

UNSELECTABLE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SCRAPPED, TaskStatus.DRAFT})


def sibling_key(task: Task) -> tuple[int, int, str]:
    return (status_rank(task.status), priority_rank(task.priority), task.id)


def select(node: Task) -> str | None:
    if node.status in UNSELECTABLE_STATUSES:
        return None
    if node.has_control_tag:
        return None
    if not node.blockers_resolved:
        return None
    incomplete = [child for child in node.children if child.status not in UNSELECTABLE_STATUSES]
    if incomplete:
        return select(min(incomplete, key=sibling_key))
    return node.id


def flat_candidates(pool: Iterable[Task], *, exclude: Iterable[str] = ()) -> list[Task]:
    excluded = set(exclude)
    eligible = [task for task in pool if task.is_eligible and task.id not in excluded]
    return sorted(eligible, key=lambda task: (status_rank(task.status), priority_rank(task.priority)))


def select_flat(pool: Iterable[Task], *, exclude: Iterable[str] = ()) -> str | None:
    candidates = flat_candidates(pool, exclude=exclude)
    return candidates[0].id if candidates else None
