from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from beanloop.errors import BeanloopError

STATE_DIR = Path(".beanloop") / "state"


class StateError(BeanloopError):
    """Raised when persisted loop state cannot be read or written."""


class StateStore:
    """Versioned JSON documents under ``.beanloop/state``.

    The directory lives outside version control so it survives workspace
    switches. Writes go through an exclusive lock file and bump a revision
    counter so concurrent writers are detected instead of silently lost.
    """

    NAMESPACES = {"root", "runs"}
    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = self.repo_root / STATE_DIR
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        ignore_file = self.state_dir.parent / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def get_envelope(self, namespace: str, default: Any = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        raw = self._read_raw(namespace)
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return raw
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": None,
            "data": default,
        }

    def get_json(self, namespace: str, default: Any = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data", default)

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._lock():
            current_revision = int(self.get_envelope(namespace).get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            tmp_path = self._file(namespace).with_suffix(".tmp")
            tmp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._file(namespace))

    def update_json(self, namespace: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        last_error: StateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default)
            updated = updater(current.get("data", default))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def clear(self, namespace: str) -> None:
        self._validate_namespace(namespace)
        with self._lock():
            try:
                self._file(namespace).unlink()
            except FileNotFoundError:
                pass

    def record_run(self, record: dict[str, Any], *, keep: int = 50) -> None:
        def _updater(payload: Any) -> list[dict[str, Any]]:
            runs = payload if isinstance(payload, list) else []
            runs.append({**record, "recorded_at": self._utcnow_iso()})
            return runs[-keep:]

        self.update_json("runs", _updater, default=[])

    def get_runs(self) -> list[dict[str, Any]]:
        runs = self.get_json("runs", default=[])
        return runs if isinstance(runs, list) else []
