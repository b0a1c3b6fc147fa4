from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import TextIO

logger = logging.getLogger(__name__)


def _quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class Notifier:
    """Terminal bell plus a desktop banner where ``osascript`` exists."""

    def __init__(self, enabled: bool = True, stream: TextIO | None = None) -> None:
        self.enabled = enabled
        self.stream = stream or sys.stderr
        self.osascript = shutil.which("osascript")

    def bell(self) -> None:
        if not self.enabled:
            return
        self.stream.write("\a")
        self.stream.flush()

    def notify(self, title: str, message: str, sound: str = "default") -> None:
        if not self.enabled:
            return
        self.bell()
        if self.osascript is None:
            return
        script = (
            f'display notification "{_quote(message)}" '
            f'with title "{_quote(title)}" sound name "{_quote(sound)}"'
        )
        try:
            subprocess.run(
                [self.osascript, "-e", script],
                capture_output=True,
                timeout=5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("Desktop notification failed: %s", exc)

    def task_completed(self, task_id: str) -> None:
        self.notify("Task completed", task_id, "Glass")

    def task_failed(self, task_id: str, reason: str) -> None:
        self.notify("Task stopped", f"{task_id}: {reason}", "Basso")

    def run_finished(self, completed: int) -> None:
        self.notify("beanloop done", f"Completed {completed} task(s)", "Hero")
