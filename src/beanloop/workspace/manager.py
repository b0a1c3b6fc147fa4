from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from beanloop.commits import format_merge_message, format_squash_message
from beanloop.config import BranchConfig
from beanloop.errors import DirtyWorkspaceError, ReconciliationConflict, WorkspaceError
from beanloop.tasks.models import COMPOSITE_TYPES, Task, TaskType
from beanloop.workspace.commits import in_store
from beanloop.workspace.git import GitBackend, validate_task_id

logger = logging.getLogger(__name__)

# One working tree per process, so every workspace switch goes through this lock.
workspace_lock = threading.Lock()

TaskFetcher = Callable[[str], Task | None]


class MergeStrategy(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"


class ReconcileKind(str, Enum):
    SKIPPED = "skipped"
    NOOP = "noop"
    SQUASHED = "squashed"
    MERGED = "merged"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    kind: ReconcileKind
    source: str
    target: str
    commit_sha: str | None = None


def strategy_for(task_type: TaskType) -> MergeStrategy:
    return MergeStrategy.MERGE if task_type in COMPOSITE_TYPES else MergeStrategy.SQUASH


class IsolationManager:
    """Gives each task its own branch and merges it back when the task is done.

    Branches form the same tree as the tasks: a task branches from its
    parent's branch, top-level tasks branch from trunk. When isolation is
    disabled every operation works on whatever branch is checked out.
    """

    def __init__(
        self,
        git: GitBackend,
        config: BranchConfig,
        fetch: TaskFetcher,
        *,
        lock: threading.Lock | None = None,
    ) -> None:
        self.git = git
        self.config = config
        self.fetch = fetch
        self.lock = lock or workspace_lock

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def branch_name(self, task_id: str) -> str:
        return f"{self.config.prefix}{validate_task_id(task_id)}"

    def merge_target(self, task: Task) -> str:
        if task.parent_id:
            return self.branch_name(task.parent_id)
        return self.config.trunk

    def strategy_for(self, task_type: TaskType) -> MergeStrategy:
        return strategy_for(task_type)

    def git_for(self, task_id: str) -> GitBackend:
        """The working tree the task's agent runs in."""
        return self.git

    def _restore_source(self, source: str) -> None:
        self.git.checkout(source)

    def _active(self) -> str:
        return self.git.current_branch() if self.git.is_repository() else ""

    def recover(self) -> bool:
        """Abort a merge or rebase left behind by an interrupted run."""
        if not self.enabled:
            return False
        with self.lock:
            return self._recover()

    def _recover(self) -> bool:
        recovered = False
        if self.git.is_merge_in_progress():
            logger.warning("Aborting unfinished merge from a previous run")
            self.git.abort_merge()
            recovered = True
        elif self.git.has_unmerged_files():
            logger.warning("Resetting unfinished squash merge from a previous run")
            self.git.reset_hard()
            recovered = True
        if self.git.is_rebase_in_progress():
            logger.warning("Aborting unfinished rebase from a previous run")
            self.git.abort_rebase()
            recovered = True
        return recovered

    def commit_new_records(self) -> bool:
        new_records = [
            entry.path
            for entry in self.git.status()
            if entry.added and in_store(entry.path, self.config.store_dir)
        ]
        if not new_records:
            return False
        logger.info("Committing %d new task record(s) before switching", len(new_records))
        self.git.stage(new_records)
        self.git.commit_staged("chore: commit new task records before workspace switch")
        return True

    def discard_bookkeeping(self) -> list[str]:
        mutated = [
            entry.path
            for entry in self.git.status()
            if not entry.added and in_store(entry.path, self.config.store_dir)
        ]
        if mutated:
            logger.debug("Discarding task store changes: %s", ", ".join(mutated))
            self.git.discard(mutated)
        return mutated

    def _prepare_switch(self) -> None:
        self.commit_new_records()
        self.discard_bookkeeping()
        dirty = self.git.status()
        if dirty:
            paths = ", ".join(entry.path for entry in dirty[:5])
            raise DirtyWorkspaceError(f"Uncommitted changes block the workspace switch: {paths}")

    def _ensure_branch(self, task: Task, seen: frozenset[str] = frozenset()) -> str:
        if task.id in seen:
            raise WorkspaceError(f"Task hierarchy contains a cycle at {task.id}")
        name = self.branch_name(task.id)
        if self.git.branch_exists(name):
            return name
        if task.parent_id:
            parent = self.fetch(task.parent_id)
            if parent is None:
                raise WorkspaceError(f"Cannot resolve parent {task.parent_id} of {task.id}")
            base = self._ensure_branch(parent, seen | {task.id})
        else:
            base = self.config.trunk
            if not self.git.branch_exists(base):
                raise WorkspaceError(f"Trunk branch {base!r} does not exist")
        logger.info("Creating workspace %s from %s", name, base)
        self.git.open(name, base)
        return name

    def open(self, task: Task) -> str:
        """Check out the task's workspace, creating it and its ancestors as needed."""
        if not self.enabled:
            return self._active()
        with self.lock:
            self._recover()
            name = self.branch_name(task.id)
            if self.git.current_branch() == name:
                return name
            self._prepare_switch()
            self._ensure_branch(task)
            self.git.checkout(name)
            logger.info("Working on %s in %s", task.id, name)
            return name

    def reconcile(self, task: Task) -> ReconcileResult:
        """Merge the task's workspace into its merge target.

        Leaves the merge target checked out on success. On conflict the merge
        is aborted, the task's workspace is checked out again and
        :class:`ReconciliationConflict` is raised.
        """
        if not self.enabled:
            current = self._active()
            return ReconcileResult(ReconcileKind.SKIPPED, current, current)
        with self.lock:
            source = self.branch_name(task.id)
            if not self.git.branch_exists(source):
                raise WorkspaceError(f"Workspace {source} does not exist")
            if task.parent_id:
                parent = self.fetch(task.parent_id)
                if parent is None:
                    raise WorkspaceError(f"Cannot resolve parent {task.parent_id} of {task.id}")
                target = self._ensure_branch(parent)
            else:
                target = self.config.trunk
            self._prepare_switch()

            if not self.git.has_diff(source, target):
                logger.info("No changes in %s, skipping merge into %s", source, target)
                self.git.checkout(target)
                return ReconcileResult(ReconcileKind.NOOP, source, target)

            strategy = self.strategy_for(task.type)
            if strategy is MergeStrategy.MERGE:
                outcome = self.git.merge_commit(source, target, format_merge_message(task))
                kind = ReconcileKind.MERGED
            else:
                outcome = self.git.squash_merge(source, target, format_squash_message(task))
                kind = ReconcileKind.SQUASHED
            if not outcome.ok:
                self._restore_source(source)
                if outcome.conflict:
                    logger.error("Merge conflict reconciling %s into %s", source, target)
                    raise ReconciliationConflict(source, target)
                raise WorkspaceError(f"Merging {source} into {target} failed: {outcome.error}")
            logger.info("Reconciled %s into %s (%s)", source, target, strategy.value)
            return ReconcileResult(kind, source, target, outcome.commit_sha)

    def close(self, task: Task, success: bool) -> None:
        if not self.enabled:
            return
        if not success:
            self.abandon(task)
            return
        if not self.config.delete_after_merge:
            return
        with self.lock:
            name = self.branch_name(task.id)
            if self.git.branch_exists(name) and self.git.current_branch() != name:
                self.git.delete_workspace(name)
                logger.info("Deleted workspace %s", name)

    def abandon(self, task: Task) -> None:
        """Keep the task's workspace for inspection and return to its merge target."""
        if not self.enabled:
            return
        with self.lock:
            target = self.merge_target(task)
            if not self.git.branch_exists(target):
                logger.warning("Merge target %s is gone, staying on %s", target, self.git.current_branch())
                return
            if self.git.current_branch() == target:
                return
            self._prepare_switch()
            self.git.checkout(target)
            logger.info("Left workspace %s intact, switched to %s", self.branch_name(task.id), target)


class WorktreeIsolation(IsolationManager):
    """Runs every task in its own linked worktree so several can run at once.

    Agents never touch the main working tree. It is used only under the lock,
    to create branches and to merge finished work into the merge target. A
    task that stops without completing keeps its worktree for inspection.
    """

    def __init__(
        self,
        git: GitBackend,
        config: BranchConfig,
        fetch: TaskFetcher,
        worktree_dir: Path,
        *,
        lock: threading.Lock | None = None,
    ) -> None:
        if not config.enabled:
            raise WorkspaceError("Worktree isolation needs branch isolation enabled")
        super().__init__(git, config, fetch, lock=lock)
        self.worktree_dir = worktree_dir

    def worktree_path(self, task_id: str) -> Path:
        return self.worktree_dir / validate_task_id(task_id)

    def git_for(self, task_id: str) -> GitBackend:
        return GitBackend(self.worktree_path(task_id))

    def _restore_source(self, source: str) -> None:
        # The source branch is still checked out in its worktree.
        return

    def _ensure_ignored(self) -> None:
        self.worktree_dir.mkdir(parents=True, exist_ok=True)
        ignore = self.worktree_dir / ".gitignore"
        if not ignore.exists():
            ignore.write_text("*\n", encoding="utf-8")

    def open(self, task: Task) -> str:
        name = self.branch_name(task.id)
        path = self.worktree_path(task.id)
        with self.lock:
            if path.exists():
                return name
            self._recover()
            self.commit_new_records()
            self._ensure_branch(task)
            if self.git.current_branch() == name:
                self._prepare_switch()
                self.git.checkout(self.merge_target(task))
            self._ensure_ignored()
            self.git.add_worktree(path, name)
            logger.info("Working on %s in worktree %s", task.id, path)
            return name

    def close(self, task: Task, success: bool) -> None:
        if not success:
            return
        path = self.worktree_path(task.id)
        with self.lock:
            if path.exists():
                self.git.remove_worktree(path)
        super().close(task, success)

    def abandon(self, task: Task) -> None:
        logger.info("Left worktree %s intact", self.worktree_path(task.id))
