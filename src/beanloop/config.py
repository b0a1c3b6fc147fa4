from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from beanloop.errors import ConfigError

AgentName = Literal["opencode", "claude", "codex"]
AGENT_NAMES: tuple[str, ...] = ("opencode", "claude", "codex")

DEFAULT_MODELS: dict[str, str] = {
    "opencode": "anthropic/claude-opus-4-5-20251101",
    "claude": "claude-sonnet-4-20250514",
    "codex": "codex-mini-latest",
}


@dataclass(frozen=True, slots=True)
class AgentConfig:
    backend: str = "opencode"
    model: str = ""
    binary: str = ""
    skip_permissions: bool = True
    cancel_grace_seconds: float = 5.0

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS.get(self.backend, "")


@dataclass(frozen=True, slots=True)
class LoopConfig:
    max_iterations: int = 5
    failure_threshold: int = 3
    retry_pause_seconds: float = 2.0
    snapshot_depth: int = 5
    root_tracking: bool = True


@dataclass(frozen=True, slots=True)
class BranchConfig:
    enabled: bool = True
    trunk: str = "main"
    prefix: str = "bean/"
    delete_after_merge: bool = True
    store_dir: str = ".beans"


@dataclass(frozen=True, slots=True)
class DaemonConfig:
    max_parallel: int = 1
    poll_interval_seconds: float = 5.0


@dataclass(frozen=True, slots=True)
class NotifyConfig:
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class BeanloopConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    branch: BranchConfig = field(default_factory=BranchConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    def __post_init__(self) -> None:
        if self.agent.backend not in AGENT_NAMES:
            raise ConfigError(
                f"Unknown agent backend: {self.agent.backend!r} "
                f"(expected one of {', '.join(AGENT_NAMES)})"
            )
        if self.loop.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if self.loop.failure_threshold < 1:
            raise ConfigError("failure_threshold must be at least 1")
        if self.loop.snapshot_depth < 1:
            raise ConfigError("snapshot_depth must be at least 1")
        if self.daemon.max_parallel < 1:
            raise ConfigError("max_parallel must be at least 1")

    @classmethod
    def default(cls) -> BeanloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BeanloopConfig:
        try:
            return cls(
                agent=AgentConfig(**data.get("agent", {})),
                loop=LoopConfig(**data.get("loop", {})),
                branch=BranchConfig(**data.get("branch", {})),
                daemon=DaemonConfig(**data.get("daemon", {})),
                notify=NotifyConfig(**data.get("notify", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            "agent": {
                "backend": self.agent.backend,
                "model": self.agent.model,
                "binary": self.agent.binary,
                "skip_permissions": self.agent.skip_permissions,
                "cancel_grace_seconds": self.agent.cancel_grace_seconds,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "failure_threshold": self.loop.failure_threshold,
                "retry_pause_seconds": self.loop.retry_pause_seconds,
                "snapshot_depth": self.loop.snapshot_depth,
                "root_tracking": self.loop.root_tracking,
            },
            "branch": {
                "enabled": self.branch.enabled,
                "trunk": self.branch.trunk,
                "prefix": self.branch.prefix,
                "delete_after_merge": self.branch.delete_after_merge,
                "store_dir": self.branch.store_dir,
            },
            "daemon": {
                "max_parallel": self.daemon.max_parallel,
                "poll_interval_seconds": self.daemon.poll_interval_seconds,
            },
            "notify": {
                "enabled": self.notify.enabled,
            },
        }

    def with_overrides(
        self,
        *,
        backend: str | None = None,
        model: str | None = None,
        max_iterations: int | None = None,
        branches: bool | None = None,
        silent: bool = False,
        max_parallel: int | None = None,
    ) -> BeanloopConfig:
        agent = self.agent
        if backend is not None:
            agent = replace(agent, backend=backend)
        if model is not None:
            agent = replace(agent, model=model)
        loop = self.loop
        if max_iterations is not None:
            loop = replace(loop, max_iterations=max_iterations)
        branch = self.branch
        if branches is not None:
            branch = replace(branch, enabled=branches)
        notify = replace(self.notify, enabled=False) if silent else self.notify
        daemon = self.daemon
        if max_parallel is not None:
            daemon = replace(daemon, max_parallel=max_parallel)
        return replace(self, agent=agent, loop=loop, branch=branch, notify=notify, daemon=daemon)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def apply_env(config: BeanloopConfig, environ: dict[str, str] | None = None) -> BeanloopConfig:
    env = os.environ if environ is None else environ
    max_iterations = env.get("BEANLOOP_MAX_ITERATIONS")
    branches = env.get("BEANLOOP_BRANCHES")
    max_parallel = env.get("BEANLOOP_MAX_PARALLEL")
    updated = config.with_overrides(
        backend=env.get("BEANLOOP_AGENT") or None,
        model=env.get("BEANLOOP_MODEL") or None,
        max_iterations=(
            _env_int("BEANLOOP_MAX_ITERATIONS", max_iterations) if max_iterations else None
        ),
        branches=_env_bool(branches) if branches else None,
        max_parallel=_env_int("BEANLOOP_MAX_PARALLEL", max_parallel) if max_parallel else None,
    )
    trunk = env.get("BEANLOOP_TRUNK")
    if trunk:
        updated = replace(updated, branch=replace(updated.branch, trunk=trunk))
    return updated


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BeanloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("agent", "loop", "branch", "daemon", "notify"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, environ: dict[str, str] | None = None) -> BeanloopConfig:
    if path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Cannot parse {path}: {exc}") from exc
        config = BeanloopConfig.from_dict(data)
    else:
        config = BeanloopConfig.default()
    return apply_env(config, environ)


def save_config(path: Path, config: BeanloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
