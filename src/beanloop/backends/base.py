from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

agent_logger = logging.getLogger("beanloop.agent")
logger = logging.getLogger(__name__)

RELAY_CHUNK_BYTES = 65536


def _log_line(raw_line: bytes, level: int) -> None:
    line = raw_line.decode("utf-8", errors="replace").rstrip()
    if line:
        agent_logger.log(level, "%s", line)


class AgentExecutionError(RuntimeError):
    """Raised when an agent process cannot be run to completion."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process lifecycle fails (missing binary, no pipes)."""


@dataclass(slots=True)
class AgentResult:
    exit_code: int
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class AgentBackend(ABC):
    name: str = "agent"

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        *,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self.binary = binary or self.name
        self.working_directory = working_directory
        self.cancel_grace_seconds = cancel_grace_seconds

    @abstractmethod
    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        """Return the argv that runs the agent on ``prompt``."""

    async def run(self, prompt: str, *, model: str | None = None) -> AgentResult:
        """Run the agent to completion and report its exit status.

        Output is relayed line by line to the ``beanloop.agent`` logger and not
        interpreted. If the calling task is cancelled the process is terminated,
        then killed after ``cancel_grace_seconds``, and the cancellation is
        re-raised.
        """
        command = self.build_command(prompt, model)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None or process.stderr is None:
            raise AgentProcessError(
                f"{self.name} backend did not expose output pipes.",
                backend=self.name,
                retriable=False,
            )

        relays = [
            asyncio.ensure_future(self._relay(process.stdout, logging.INFO)),
            asyncio.ensure_future(self._relay(process.stderr, logging.WARNING)),
        ]
        try:
            return_code = await process.wait()
            await asyncio.gather(*relays)
        except asyncio.CancelledError:
            await self._stop(process)
            for relay in relays:
                relay.cancel()
            raise
        return AgentResult(exit_code=return_code, duration_seconds=time.monotonic() - started)

    async def _relay(self, stream: asyncio.StreamReader, level: int) -> None:
        # Chunked reads: agent lines may exceed the StreamReader line limit.
        pending = b""
        while True:
            chunk = await stream.read(RELAY_CHUNK_BYTES)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for raw_line in lines:
                _log_line(raw_line, level)
        _log_line(pending, level)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.warning("Terminating %s agent (pid %s)", self.name, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.cancel_grace_seconds)
        except TimeoutError:
            logger.warning("Agent did not exit after %.1fs, killing", self.cancel_grace_seconds)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
