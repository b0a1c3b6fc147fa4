from __future__ import annotations

import re

from beanloop.tasks.models import Task, TaskType

CHANGELOG_HEADING = re.compile(r"^##\s+changelog\s*$", re.IGNORECASE)
H2_HEADING = re.compile(r"^## ")

COMMIT_TYPES: dict[TaskType, str] = {
    TaskType.FEATURE: "feat",
    TaskType.BUG: "fix",
}


def commit_type_for(task_type: TaskType) -> str:
    return COMMIT_TYPES.get(task_type, "chore")


def extract_changelog(body: str) -> str | None:
    """Return the text under the body's ``## Changelog`` heading, if any."""
    collected: list[str] = []
    inside = False
    for line in body.splitlines():
        if inside:
            if H2_HEADING.match(line) and not CHANGELOG_HEADING.match(line):
                break
            collected.append(line)
        elif CHANGELOG_HEADING.match(line):
            inside = True
    if not inside:
        return None
    content = "\n".join(collected).strip()
    return content or None


def task_footer(task_id: str) -> str:
    return f"Bean: {task_id}"


def format_squash_message(task: Task) -> str:
    parts = [f"{commit_type_for(task.type)}: {task.title}"]
    details = extract_changelog(task.body)
    if details is None:
        paragraphs = re.split(r"\n\s*\n", task.body.strip(), maxsplit=1)
        details = paragraphs[0].strip() if paragraphs and paragraphs[0].strip() else None
    if details:
        parts.extend(["", details])
    parts.extend(["", task_footer(task.id)])
    return "\n".join(parts)


def format_merge_message(task: Task) -> str:
    return f"Merge {task.type.value} {task.id}: {task.title}\n\n{task_footer(task.id)}"


def format_wip_message(task_id: str, iteration: int) -> str:
    return f"wip({task_id}): iteration {iteration}\n\n{task_footer(task_id)}"
