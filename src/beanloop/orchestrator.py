from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from beanloop.config import BeanloopConfig
from beanloop.controller import ExecutionController, ExecutionOutcome, ExecutionState
from beanloop.errors import BeanloopError, ConfigError, FetchFailure, TaskStoreError
from beanloop.notify import Notifier
from beanloop.selector import flat_candidates, select, select_flat
from beanloop.state.roots import ResolvedRoot, RootTracker
from beanloop.state.store import StateError, StateStore
from beanloop.tasks.models import ACTIVE_STATUSES, Task
from beanloop.tasks.snapshot import require_snapshot
from beanloop.tasks.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    completed: int = 0
    attempted: int = 0
    outcomes: list[ExecutionOutcome] = field(default_factory=list)
    root: ResolvedRoot | None = None
    error: str | None = None

    @property
    def idle(self) -> bool:
        return self.attempted == 0 and self.error is None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(outcome.failed for outcome in self.outcomes)


class Orchestrator:
    """Selects tasks one after another and hands each to the execution controller."""

    def __init__(
        self,
        store: TaskStore,
        controller: ExecutionController,
        config: BeanloopConfig,
        *,
        tracker: RootTracker | None = None,
        state: StateStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.controller = controller
        self.config = config
        self.tracker = tracker
        self.state = state
        self.notifier = notifier or Notifier(enabled=False)
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        logger.info("Pausing after the current task")
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def resolve_root(self, override: str | None = None) -> ResolvedRoot | None:
        if self.tracker is None or not self.config.loop.root_tracking:
            return None
        return self.tracker.resolve(override)

    def next_task(
        self, root: ResolvedRoot | None, exclude: set[str] | frozenset[str] = frozenset()
    ) -> str | None:
        """Pick the next actionable task id, or ``None`` when nothing is ready.

        With a root the pick is a depth-first walk of the root's subtree;
        without one it is the best eligible task from the flat backlog.
        """
        if root is not None:
            snapshot = require_snapshot(self.store, root.task_id, self.config.loop.snapshot_depth)
            return select(snapshot)
        return select_flat(self.store.list_tasks(ACTIVE_STATUSES), exclude=exclude)

    def _record(self, outcome: ExecutionOutcome) -> None:
        if self.state is None:
            return
        try:
            self.state.record_run(outcome.to_record())
        except StateError as exc:
            logger.warning("Could not record run for %s: %s", outcome.task_id, exc)

    async def run_task(self, task_id: str) -> RunSummary:
        summary = RunSummary()
        outcome = await self.controller.execute(task_id)
        self._tally(summary, outcome)
        self._report(summary)
        return summary

    async def run(self, *, root_override: str | None = None, once: bool = False) -> RunSummary:
        summary = RunSummary()
        try:
            summary.root = self.resolve_root(root_override)
        except TaskStoreError as exc:
            summary.error = f"Could not resolve the traversal root: {exc}"
            logger.error(summary.error)
            return summary
        if summary.root is None:
            logger.info("No traversal root, selecting from the whole backlog")

        stopped: set[str] = set()
        while True:
            if self._paused:
                logger.info("Paused, not starting another task")
                break
            try:
                task_id = self.next_task(summary.root, exclude=stopped)
            except (FetchFailure, TaskStoreError) as exc:
                summary.error = f"Task selection failed: {exc}"
                logger.error(summary.error)
                break
            if task_id is None:
                break
            if task_id in stopped:
                logger.warning("Selection returned %s again after it stopped, ending the run", task_id)
                break

            outcome = await self.controller.execute(task_id)
            self._tally(summary, outcome)
            if outcome.state is not ExecutionState.COMPLETED:
                stopped.add(task_id)
            if once:
                break

        self._report(summary)
        return summary

    def _tally(self, summary: RunSummary, outcome: ExecutionOutcome) -> None:
        # Counts attempts, not successes.
        summary.attempted += 1
        summary.outcomes.append(outcome)
        if outcome.state is ExecutionState.COMPLETED:
            summary.completed += 1
        self._record(outcome)

    def _report(self, summary: RunSummary) -> None:
        if summary.idle:
            logger.info("Nothing to do")
            return
        logger.info(
            "Run finished: %d completed out of %d attempted", summary.completed, summary.attempted
        )
        if summary.completed:
            self.notifier.run_finished(summary.completed)


class Daemon:
    """Runs several controllers at once, each on a different task.

    The backlog is rescanned every ``poll_interval_seconds`` and whenever
    :meth:`request_rescan` is called, for example by a file watcher.
    """

    def __init__(
        self,
        store: TaskStore,
        controller_factory: Callable[[Task], ExecutionController],
        config: BeanloopConfig,
        *,
        state: StateStore | None = None,
    ) -> None:
        if config.daemon.max_parallel > 1 and not config.branch.enabled:
            raise ConfigError(
                "Running more than one task at a time needs branch isolation "
                "(each task gets its own worktree)"
            )
        self.store = store
        self.controller_factory = controller_factory
        self.config = config
        self.state = state
        self.summary = RunSummary()
        self._claims: set[str] = set()
        self._stopped: set[str] = set()
        self._running: set[asyncio.Task[None]] = set()
        self._rescan = asyncio.Event()
        self._stopping = False

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._claims)

    def request_rescan(self) -> None:
        self._rescan.set()

    def stop(self) -> None:
        self._stopping = True
        self._rescan.set()

    def _launch_ready(self) -> None:
        capacity = self.config.daemon.max_parallel - len(self._claims)
        if capacity <= 0:
            return
        try:
            pool = self.store.list_tasks(ACTIVE_STATUSES)
        except TaskStoreError as exc:
            logger.error("Backlog scan failed: %s", exc)
            return
        for task in flat_candidates(pool, exclude=self._claims | self._stopped)[:capacity]:
            self._claims.add(task.id)
            job = asyncio.create_task(self._execute(task))
            self._running.add(job)
            job.add_done_callback(self._job_done)

    def _job_done(self, job: asyncio.Task[None]) -> None:
        self._running.discard(job)
        if not job.cancelled() and job.exception() is not None:
            logger.error("Task runner crashed", exc_info=job.exception())

    async def _execute(self, task: Task) -> None:
        task_id = task.id
        logger.info("Claimed %s", task_id)
        try:
            controller = self.controller_factory(task)
            outcome = await controller.execute(task_id)
        except BeanloopError as exc:
            logger.error("Could not start %s: %s", task_id, exc)
            self._stopped.add(task_id)
            return
        finally:
            self._claims.discard(task_id)
        self.summary.attempted += 1
        self.summary.outcomes.append(outcome)
        if outcome.state is ExecutionState.COMPLETED:
            self.summary.completed += 1
        else:
            self._stopped.add(task_id)
        if self.state is not None:
            try:
                self.state.record_run(outcome.to_record())
            except StateError as exc:
                logger.warning("Could not record run for %s: %s", task_id, exc)
        self.request_rescan()

    async def run(self) -> RunSummary:
        logger.info("Daemon started (max %d parallel)", self.config.daemon.max_parallel)
        while not self._stopping:
            self._rescan.clear()
            self._launch_ready()
            try:
                await asyncio.wait_for(
                    self._rescan.wait(), timeout=self.config.daemon.poll_interval_seconds
                )
            except TimeoutError:
                pass
        if self._running:
            logger.info("Waiting for %d running task(s)", len(self._running))
            await asyncio.gather(*self._running, return_exceptions=True)
        logger.info("Daemon stopped")
        return self.summary
