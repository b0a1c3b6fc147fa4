from __future__ import annotations

from beanloop.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "exec", "--full-auto"]
        if model and model.strip():
            command.extend(["-m", model.strip()])
        command.append(prompt)
        return command
