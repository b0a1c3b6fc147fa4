from __future__ import annotations

from beanloop.backends.base import AgentBackend


class OpenCodeBackend(AgentBackend):
    name = "opencode"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "run", prompt]
        if model:
            command.extend(["-m", model])
        return command
