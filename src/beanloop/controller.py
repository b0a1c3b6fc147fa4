from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from beanloop.backends.base import AgentBackend, AgentExecutionError
from beanloop.config import BeanloopConfig
from beanloop.errors import FetchFailure, ReconciliationConflict, TaskStoreError, WorkspaceError
from beanloop.notify import Notifier
from beanloop.prompts import build_prompt
from beanloop.tasks.models import Task, TaskStatus
from beanloop.tasks.snapshot import require_snapshot
from beanloop.tasks.store import TaskStore
from beanloop.workspace.commits import CommitKind, commit_iteration
from beanloop.workspace.manager import IsolationManager, ReconcileResult

logger = logging.getLogger(__name__)

RELEASED_STATUSES = frozenset({TaskStatus.DRAFT, TaskStatus.SCRAPPED})


class ExecutionState(str, Enum):
    SELECTING = "selecting"
    ISOLATING = "isolating"
    ITERATING = "iterating"
    COMPLETED = "completed"
    STUCK = "stuck"
    CIRCUIT_BROKEN = "circuit-broken"
    EXHAUSTED = "exhausted"
    FETCH_FAILED = "fetch-failed"
    ISOLATION_FAILED = "isolation-failed"
    RECONCILE_FAILED = "reconcile-failed"
    RELEASED = "released"


FAILED_STATES = frozenset(
    {
        ExecutionState.CIRCUIT_BROKEN,
        ExecutionState.FETCH_FAILED,
        ExecutionState.ISOLATION_FAILED,
        ExecutionState.RECONCILE_FAILED,
    }
)


@dataclass(slots=True)
class ExecutionAttempt:
    task_id: str
    iteration: int = 0
    consecutive_failures: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


@dataclass(slots=True)
class ExecutionOutcome:
    task_id: str
    state: ExecutionState
    iterations: int = 0
    reason: str = ""
    workspace: str | None = None
    reconcile: ReconcileResult | None = None
    commits: list[CommitKind] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.state in FAILED_STATES

    def to_record(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "iterations": self.iterations,
            "reason": self.reason,
            "workspace": self.workspace,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class ExecutionController:
    """Drives one task from workspace setup through agent iterations to reconciliation."""

    def __init__(
        self,
        store: TaskStore,
        backend: AgentBackend,
        isolation: IsolationManager,
        config: BeanloopConfig,
        notifier: Notifier | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.backend = backend
        self.isolation = isolation
        self.config = config
        self.notifier = notifier or Notifier(enabled=False)
        self.sleep = sleep
        self.state = ExecutionState.SELECTING

    def _snapshot(self, task_id: str) -> Task:
        return require_snapshot(self.store, task_id, self.config.loop.snapshot_depth)

    def dry_run(self, task_id: str) -> str:
        """Return the prompt the next iteration would send, without side effects."""
        return build_prompt(self._snapshot(task_id))

    async def execute(self, task_id: str) -> ExecutionOutcome:
        attempt = ExecutionAttempt(task_id)
        self.state = ExecutionState.SELECTING
        try:
            task = self._snapshot(task_id)
        except FetchFailure as exc:
            return self._finish(attempt, ExecutionState.FETCH_FAILED, str(exc))
        if task.is_terminal or task.status in RELEASED_STATUSES:
            return self._finish(attempt, ExecutionState.RELEASED, f"task is {task.status.value}")

        self.state = ExecutionState.ISOLATING
        try:
            workspace = self.isolation.open(task)
        except WorkspaceError as exc:
            return self._finish(attempt, ExecutionState.ISOLATION_FAILED, str(exc))

        self.state = ExecutionState.ITERATING
        self._mark_in_progress(task)
        commits: list[CommitKind] = []
        try:
            outcome = await self._iterate(attempt, task, commits)
        except asyncio.CancelledError:
            logger.warning("Cancelled while working on %s", task_id)
            self._commit_leftovers(attempt, commits)
            raise
        outcome.workspace = workspace
        outcome.commits = commits
        return outcome

    async def _iterate(
        self, attempt: ExecutionAttempt, task: Task, commits: list[CommitKind]
    ) -> ExecutionOutcome:
        loop_config = self.config.loop
        model = self.config.agent.resolved_model or None
        while attempt.iteration < loop_config.max_iterations:
            attempt.iteration += 1
            try:
                snapshot = self._snapshot(task.id)
            except FetchFailure as exc:
                self._leave(attempt, task, commits)
                return self._finish(attempt, ExecutionState.FETCH_FAILED, str(exc))
            if snapshot.status in RELEASED_STATUSES:
                self._leave(attempt, task, commits)
                return self._finish(
                    attempt, ExecutionState.RELEASED, f"task moved to {snapshot.status.value}"
                )

            logger.info(
                "Iteration %d/%d for %s", attempt.iteration, loop_config.max_iterations, task.id
            )
            exit_code, retriable = await self._run_agent(snapshot, model)
            if exit_code != 0:
                attempt.consecutive_failures += 1
                logger.warning(
                    "Agent exited with %s on %s (%d/%d consecutive failures)",
                    exit_code,
                    task.id,
                    attempt.consecutive_failures,
                    loop_config.failure_threshold,
                )
                if not retriable or attempt.consecutive_failures >= loop_config.failure_threshold:
                    self._leave(attempt, task, commits)
                    return self._finish(
                        attempt,
                        ExecutionState.CIRCUIT_BROKEN,
                        f"{attempt.consecutive_failures} consecutive agent failures",
                    )
                await self.sleep(loop_config.retry_pause_seconds)
                continue

            attempt.consecutive_failures = 0
            self.notifier.bell()
            commits.append(self._classify(attempt))
            try:
                current = self._snapshot(task.id)
            except FetchFailure as exc:
                self._leave(attempt, task, commits)
                return self._finish(attempt, ExecutionState.FETCH_FAILED, str(exc))
            if current.status is TaskStatus.COMPLETED:
                return self._reconcile(attempt, current)
            if current.has_control_tag:
                self._leave(attempt, task, commits)
                tags = ", ".join(sorted(current.control_tags))
                return self._finish(attempt, ExecutionState.STUCK, f"tagged {tags}")
            if current.status in RELEASED_STATUSES:
                self._leave(attempt, task, commits)
                return self._finish(
                    attempt, ExecutionState.RELEASED, f"task moved to {current.status.value}"
                )

        self._leave(attempt, task, commits)
        return self._finish(
            attempt,
            ExecutionState.EXHAUSTED,
            f"reached {loop_config.max_iterations} iterations",
        )

    async def _run_agent(self, task: Task, model: str | None) -> tuple[int, bool]:
        try:
            result = await self.backend.run(build_prompt(task), model=model)
        except AgentExecutionError as exc:
            logger.error("Agent %s failed to run: %s", self.backend.name, exc)
            return (exc.exit_code if exc.exit_code not in (None, 0) else -1), exc.retriable
        return result.exit_code, True

    def _reconcile(self, attempt: ExecutionAttempt, task: Task) -> ExecutionOutcome:
        try:
            result = self.isolation.reconcile(task)
        except ReconciliationConflict as exc:
            return self._finish(
                attempt, ExecutionState.RECONCILE_FAILED, f"{exc}; resolve it by hand"
            )
        except WorkspaceError as exc:
            return self._finish(attempt, ExecutionState.RECONCILE_FAILED, str(exc))
        try:
            self.isolation.close(task, success=True)
        except WorkspaceError as exc:
            logger.warning("Could not delete workspace for %s: %s", task.id, exc)
        outcome = self._finish(attempt, ExecutionState.COMPLETED, result.kind.value)
        outcome.reconcile = result
        return outcome

    def _classify(self, attempt: ExecutionAttempt) -> CommitKind:
        git = self.isolation.git_for(attempt.task_id)
        if not git.is_repository():
            return CommitKind.NONE
        try:
            kind = commit_iteration(
                git, attempt.task_id, attempt.iteration, self.isolation.config.store_dir
            )
        except WorkspaceError as exc:
            logger.error("Could not commit iteration %d of %s: %s", attempt.iteration, attempt.task_id, exc)
            return CommitKind.NONE
        if kind is not CommitKind.NONE:
            logger.info("Iteration %d of %s: %s", attempt.iteration, attempt.task_id, kind.value)
        return kind

    def _commit_leftovers(self, attempt: ExecutionAttempt, commits: list[CommitKind]) -> None:
        commits.append(self._classify(attempt))

    def _leave(self, attempt: ExecutionAttempt, task: Task, commits: list[CommitKind]) -> None:
        self._commit_leftovers(attempt, commits)
        try:
            self.isolation.abandon(task)
        except WorkspaceError as exc:
            logger.error("Could not switch away from the workspace of %s: %s", task.id, exc)

    def _mark_in_progress(self, task: Task) -> None:
        if task.status is TaskStatus.IN_PROGRESS:
            return
        try:
            self.store.update(task.id, status=TaskStatus.IN_PROGRESS)
        except TaskStoreError as exc:
            logger.warning("Could not mark %s in-progress: %s", task.id, exc)

    def _finish(
        self, attempt: ExecutionAttempt, state: ExecutionState, reason: str = ""
    ) -> ExecutionOutcome:
        self.state = state
        outcome = ExecutionOutcome(
            task_id=attempt.task_id,
            state=state,
            iterations=attempt.iteration,
            reason=reason,
            duration_seconds=attempt.elapsed_seconds,
        )
        if state is ExecutionState.COMPLETED:
            logger.info("Completed %s after %d iteration(s)", attempt.task_id, attempt.iteration)
            self.notifier.task_completed(attempt.task_id)
        elif state in FAILED_STATES:
            logger.error("%s: %s (%s)", attempt.task_id, state.value, reason)
            self.notifier.task_failed(attempt.task_id, state.value)
        elif state is ExecutionState.RELEASED:
            logger.info("Released %s: %s", attempt.task_id, reason)
        else:
            logger.warning("%s: %s (%s)", attempt.task_id, state.value, reason)
            self.notifier.task_failed(attempt.task_id, state.value)
        return outcome
