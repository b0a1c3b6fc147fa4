from __future__ import annotations


class BeanloopError(RuntimeError):
    """Base class for loop failures."""


class ConfigError(BeanloopError):
    """Raised when configuration is invalid. Fatal to the whole run."""


class TaskStoreError(BeanloopError):
    """Raised when the task store CLI fails or returns unreadable output."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class TaskSchemaError(TaskStoreError):
    """Raised when a task record does not match the expected schema."""


class FetchFailure(BeanloopError):
    """Raised when the selected task cannot be read back from the store."""

    def __init__(self, task_id: str, reason: str = "") -> None:
        message = f"Failed to fetch task {task_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id


class WorkspaceError(BeanloopError):
    """Raised when a version-control operation fails."""


class DirtyWorkspaceError(WorkspaceError):
    """Raised when a workspace switch is attempted over uncommitted changes."""


class ReconciliationConflict(WorkspaceError):
    """Raised when merging a workspace back into its target conflicts."""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"Merge conflict merging {source} into {target}")
        self.source = source
        self.target = target
