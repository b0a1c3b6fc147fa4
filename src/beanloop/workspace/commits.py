from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import PurePosixPath

from beanloop.commits import format_wip_message
from beanloop.workspace.git import GitBackend, StatusEntry

logger = logging.getLogger(__name__)

TIMESTAMP_LINE = re.compile(r"^[+-]\s*(updated_at|updatedAt)\s*[:=]")


class CommitKind(str, Enum):
    NONE = "none"
    DISCARDED_NOISE = "discarded-noise"
    WIP = "wip"
    AMENDED = "amended"
    STORE_ONLY = "store-only"


def in_store(path: str, store_dir: str) -> bool:
    return PurePosixPath(path).parts[:1] == PurePosixPath(store_dir).parts[:1]


def is_task_entry(path: str, task_id: str, store_dir: str) -> bool:
    # Entries are named "<id>.md" or "<id>--<slug>.md".
    name = PurePosixPath(path).name
    return in_store(path, store_dir) and (name == f"{task_id}.md" or name.startswith(f"{task_id}--"))


def mentions_task(subject: str, task_id: str) -> bool:
    pattern = rf"(?<![\w.#-]){re.escape(task_id)}(?![\w#-])"
    return re.search(pattern, subject) is not None


def is_timestamp_only(diff_lines: list[str]) -> bool:
    return bool(diff_lines) and all(TIMESTAMP_LINE.match(line) for line in diff_lines)


def _paths(entries: list[StatusEntry]) -> list[str]:
    return [entry.path for entry in entries]


def commit_iteration(git: GitBackend, task_id: str, iteration: int, store_dir: str) -> CommitKind:
    """Commit whatever the agent left uncommitted after an iteration.

    Task-store files whose only change is a bumped timestamp are reverted.
    Remaining changes become one WIP commit. When only task-store files
    changed and the previous commit already touched this task's entry, they
    are amended into it instead.
    """
    entries = git.status()
    if not entries:
        return CommitKind.NONE

    store_entries = [entry for entry in entries if in_store(entry.path, store_dir)]
    other_entries = [entry for entry in entries if not in_store(entry.path, store_dir)]
    noise = [
        entry
        for entry in store_entries
        if not entry.added and is_timestamp_only(git.changed_lines(entry.path))
    ]
    if noise:
        logger.debug("Discarding timestamp-only changes: %s", ", ".join(_paths(noise)))
        git.discard(_paths(noise))
    meaningful_store = [entry for entry in store_entries if entry not in noise]

    if other_entries:
        logger.warning("Agent left uncommitted changes, creating WIP commit")
        git.stage(_paths(other_entries) + _paths(meaningful_store))
        git.commit_staged(format_wip_message(task_id, iteration))
        return CommitKind.WIP

    if not meaningful_store:
        return CommitKind.DISCARDED_NOISE if noise else CommitKind.NONE

    git.stage(_paths(meaningful_store))
    previous_touched_entry = any(
        is_task_entry(path, task_id, store_dir) for path in git.last_commit_files()
    )
    if previous_touched_entry and mentions_task(git.last_commit_subject(), task_id):
        git.amend_last()
        return CommitKind.AMENDED
    git.commit_staged(f"chore({task_id}): update task state (iteration {iteration})")
    return CommitKind.STORE_ONLY
