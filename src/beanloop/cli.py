from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

import click

from beanloop import __version__
from beanloop.backends import build_backend
from beanloop.config import AGENT_NAMES, BeanloopConfig, load_config, save_config
from beanloop.controller import ExecutionController
from beanloop.errors import BeanloopError, ConfigError, FetchFailure, TaskStoreError
from beanloop.notify import Notifier
from beanloop.orchestrator import Daemon, Orchestrator, RunSummary
from beanloop.state import ResolvedRoot, RootTracker, StateStore
from beanloop.tasks import BeansTaskStore, Task, TaskStore
from beanloop.workspace import GitBackend, IsolationManager, WorktreeIsolation

T = TypeVar("T")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config: BeanloopConfig
    store: TaskStore
    state: StateStore
    tracker: RootTracker
    notifier: Notifier
    git: GitBackend

    def controller(self) -> ExecutionController:
        isolation = IsolationManager(
            self.git,
            self.config.branch,
            lambda task_id: self.store.get(task_id, depth=1),
        )
        backend = build_backend(self.config.agent, self.repo_root)
        return ExecutionController(self.store, backend, isolation, self.config, self.notifier)

    def daemon_controller(self, task: Task) -> ExecutionController:
        if self.config.daemon.max_parallel <= 1:
            return self.controller()
        isolation = WorktreeIsolation(
            self.git,
            self.config.branch,
            lambda task_id: self.store.get(task_id, depth=1),
            self.repo_root / ".beanloop" / "worktrees",
        )
        isolation.open(task)
        # Task records edited by the agent are merged back along with the code.
        worktree = isolation.worktree_path(task.id)
        store = BeansTaskStore(worktree)
        backend = build_backend(self.config.agent, worktree)
        return ExecutionController(store, backend, isolation, self.config, self.notifier)

    def orchestrator(self) -> Orchestrator:
        return Orchestrator(
            self.store,
            self.controller(),
            self.config,
            tracker=self.tracker,
            state=self.state,
            notifier=self.notifier,
        )


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        force=True,
    )


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(
    config_value: str,
    *,
    agent: str | None = None,
    model: str | None = None,
    max_iterations: int | None = None,
    no_branch: bool = False,
    silent: bool = False,
    max_parallel: int | None = None,
    require_git: bool = True,
) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value)).with_overrides(
            backend=agent,
            model=model,
            max_iterations=max_iterations,
            branches=False if no_branch else None,
            silent=silent,
            max_parallel=max_parallel,
        )
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc

    git = GitBackend(repo_root)
    if require_git and config.branch.enabled and not git.is_repository():
        raise click.UsageError(
            f"{repo_root} is not a git repository (use --no-branch to skip isolation)"
        )
    store = BeansTaskStore(repo_root)
    state = StateStore(repo_root)
    return Runtime(
        repo_root=repo_root,
        config=config,
        store=store,
        state=state,
        tracker=RootTracker(state, store),
        notifier=Notifier(enabled=config.notify.enabled),
        git=git,
    )


def _run_async(make: Callable[[], Awaitable[T]], on_pause: Callable[[], None] | None = None) -> T:
    """Run a coroutine, cancelling it on SIGTERM and pausing on SIGUSR1."""

    async def _main() -> T:
        loop = asyncio.get_running_loop()
        current = asyncio.current_task()
        installed: list[int] = []
        handlers: list[tuple[int | None, Callable[[], None] | None]] = [
            (signal.SIGTERM, current.cancel if current else None),
            (getattr(signal, "SIGUSR1", None), on_pause),
        ]
        for signum, handler in handlers:
            if signum is None or handler is None:
                continue
            try:
                loop.add_signal_handler(signum, handler)
            except NotImplementedError:
                continue
            installed.append(signum)
        try:
            return await make()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    try:
        return asyncio.run(_main())
    except (KeyboardInterrupt, asyncio.CancelledError):
        click.echo("Interrupted.", err=True)
        sys.exit(130)


def _peek_root(runtime: Runtime, override: str | None) -> ResolvedRoot | None:
    if override:
        return ResolvedRoot(override, "override")
    if not runtime.config.loop.root_tracking:
        return None
    current = runtime.tracker.current()
    if current is not None:
        return ResolvedRoot(current, "resumed")
    detected = runtime.tracker.detect()
    return ResolvedRoot(detected, "detected") if detected else None


def _echo_summary(summary: RunSummary) -> None:
    for outcome in summary.outcomes:
        line = f"{outcome.task_id}: {outcome.state.value} after {outcome.iterations} iteration(s)"
        if outcome.reason:
            line = f"{line} ({outcome.reason})"
        click.echo(line)
    if summary.error:
        click.echo(f"Error: {summary.error}", err=True)
    if summary.idle:
        click.echo("Nothing to do.")
    else:
        click.echo(f"Completed {summary.completed} of {summary.attempted} task(s).")


@click.group()
@click.version_option(__version__, prog_name="beanloop")
def cli() -> None:
    """Run coding agents over a task backlog, one isolated branch per task."""


@cli.command("run")
@click.argument("task_id", required=False)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("-m", "--model", default=None)
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None)
@click.option("--dry-run", is_flag=True, default=False, help="Print the next prompt and exit.")
@click.option("--once", is_flag=True, default=False, help="Stop after one task.")
@click.option("-s", "--silent", is_flag=True, default=False, help="No notifications.")
@click.option("--no-branch", is_flag=True, default=False, help="Work on the current branch.")
@click.option("--root", "root_id", default=None, help="Traverse this task's subtree.")
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    task_id: str | None,
    max_iterations: int | None,
    model: str | None,
    agent: str | None,
    dry_run: bool,
    once: bool,
    silent: bool,
    no_branch: bool,
    root_id: str | None,
    config_value: str,
    verbose: bool,
) -> None:
    _configure_logging(verbose)
    runtime = _load_runtime(
        config_value,
        agent=agent,
        model=model,
        max_iterations=max_iterations,
        no_branch=no_branch or dry_run,
        silent=silent,
    )
    orchestrator = runtime.orchestrator()

    if dry_run:
        try:
            target = task_id or orchestrator.next_task(_peek_root(runtime, root_id))
            if target is None:
                click.echo("Nothing to do.")
                return
            prompt = orchestrator.controller.dry_run(target)
        except (FetchFailure, TaskStoreError) as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"# {target} ({runtime.config.agent.backend}, {runtime.config.agent.resolved_model})")
        click.echo(prompt)
        return

    if task_id:
        summary = _run_async(lambda: orchestrator.run_task(task_id))
    else:
        summary = _run_async(
            lambda: orchestrator.run(root_override=root_id, once=once),
            on_pause=orchestrator.pause,
        )
    _echo_summary(summary)
    if summary.failed:
        sys.exit(1)


@cli.command("daemon")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("-m", "--model", default=None)
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None)
@click.option("-s", "--silent", is_flag=True, default=False)
@click.option("--no-branch", is_flag=True, default=False)
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def daemon_command(
    max_parallel: int | None,
    model: str | None,
    agent: str | None,
    silent: bool,
    no_branch: bool,
    config_value: str,
    verbose: bool,
) -> None:
    _configure_logging(verbose)
    runtime = _load_runtime(
        config_value,
        agent=agent,
        model=model,
        no_branch=no_branch,
        silent=silent,
        max_parallel=max_parallel,
    )
    try:
        daemon = Daemon(
            runtime.store, runtime.daemon_controller, runtime.config, state=runtime.state
        )
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc

    async def _serve() -> RunSummary:
        try:
            return await daemon.run()
        except asyncio.CancelledError:
            daemon.stop()
            raise

    summary = _run_async(_serve, on_pause=daemon.stop)
    _echo_summary(summary)


@cli.command("select")
@click.option("--root", "root_id", default=None)
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
def select_command(root_id: str | None, config_value: str) -> None:
    """Print the id of the task the loop would work on next."""
    runtime = _load_runtime(config_value, require_git=False)
    try:
        task_id = runtime.orchestrator().next_task(_peek_root(runtime, root_id))
    except (FetchFailure, TaskStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    if task_id is None:
        click.echo("Nothing to do.")
        return
    click.echo(task_id)


@cli.command("root")
@click.argument("task_id", required=False)
@click.option("--clear", is_flag=True, default=False)
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
def root_command(task_id: str | None, clear: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value, require_git=False)
    if clear:
        runtime.tracker.clear()
        click.echo("Traversal root cleared.")
        return
    if task_id:
        runtime.tracker.persist(task_id, "override")
        click.echo(f"Traversal root set to {task_id}")
        return
    current = runtime.tracker.current()
    click.echo(current or "No traversal root.")


@cli.command("init")
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None)
@click.option("--trunk", default=None)
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
def init_command(agent: str | None, trunk: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path, environ={}).with_overrides(backend=agent)
        if trunk:
            config = replace(config, branch=replace(config.branch, trunk=trunk))
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc
    save_config(config_path, config)
    StateStore(repo_root)

    click.echo(f"Initialized beanloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.backend} ({config.agent.resolved_model})")
    click.echo(f"Trunk: {config.branch.trunk}")


@cli.command("status")
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--config", "config_value", default="beanloop.toml", show_default=True)
def status_command(limit: int, config_value: str) -> None:
    runtime = _load_runtime(config_value, require_git=False)
    payload = {
        "root": runtime.tracker.current(),
        "agent": runtime.config.agent.backend,
        "model": runtime.config.agent.resolved_model,
        "branches": runtime.config.branch.enabled,
        "trunk": runtime.config.branch.trunk,
        "runs": runtime.state.get_runs()[-limit:],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def main() -> None:
    try:
        cli()
    except BeanloopError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
