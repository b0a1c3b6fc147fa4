from __future__ import annotations

from pathlib import Path

from beanloop.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentProcessError,
    AgentResult,
)
from beanloop.backends.claude import ClaudeCodeBackend
from beanloop.backends.codex import CodexBackend
from beanloop.backends.opencode import OpenCodeBackend
from beanloop.config import AgentConfig
from beanloop.errors import ConfigError


def build_backend(config: AgentConfig, working_directory: Path | None = None) -> AgentBackend:
    binary = config.binary or None
    grace = config.cancel_grace_seconds
    if config.backend == "opencode":
        return OpenCodeBackend(binary, working_directory, cancel_grace_seconds=grace)
    if config.backend == "claude":
        return ClaudeCodeBackend(
            binary,
            working_directory,
            skip_permissions=config.skip_permissions,
            cancel_grace_seconds=grace,
        )
    if config.backend == "codex":
        return CodexBackend(binary, working_directory, cancel_grace_seconds=grace)
    raise ConfigError(f"Unknown agent backend: {config.backend!r}")


__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentResult",
    "ClaudeCodeBackend",
    "CodexBackend",
    "OpenCodeBackend",
    "build_backend",
]
