from beanloop.workspace.commits import CommitKind, commit_iteration
from beanloop.workspace.git import GitBackend, MergeOutcome, StatusEntry, validate_task_id
from beanloop.workspace.manager import (
    IsolationManager,
    MergeStrategy,
    ReconcileKind,
    ReconcileResult,
    WorktreeIsolation,
    strategy_for,
    workspace_lock,
)

__all__ = [
    "CommitKind",
    "GitBackend",
    "IsolationManager",
    "MergeOutcome",
    "MergeStrategy",
    "ReconcileKind",
    "ReconcileResult",
    "StatusEntry",
    "WorktreeIsolation",
    "commit_iteration",
    "strategy_for",
    "validate_task_id",
    "workspace_lock",
]
