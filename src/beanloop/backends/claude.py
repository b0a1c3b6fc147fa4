from __future__ import annotations

from pathlib import Path

from beanloop.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        super().__init__(binary, working_directory, cancel_grace_seconds=cancel_grace_seconds)
        self.skip_permissions = skip_permissions

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "-p", prompt]
        if model:
            command.extend(["--model", model])
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command
