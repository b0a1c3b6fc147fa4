from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from beanloop.errors import WorkspaceError

logger = logging.getLogger(__name__)

SAFE_ID = re.compile(r"^[A-Za-z0-9_#-][A-Za-z0-9_.#-]*$")


def validate_task_id(task_id: str) -> str:
    if not SAFE_ID.match(task_id) or ".." in task_id or task_id.endswith((".", ".lock")):
        raise WorkspaceError(f"Invalid task id for a workspace name: {task_id!r}")
    return task_id


@dataclass(frozen=True, slots=True)
class StatusEntry:
    code: str
    path: str

    @property
    def untracked(self) -> bool:
        return self.code == "??"

    @property
    def added(self) -> bool:
        return self.untracked or "A" in self.code


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    ok: bool
    conflict: bool = False
    commit_sha: str | None = None
    error: str | None = None


class GitBackend:
    """Version-control operations on one working tree."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args[:3])} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def is_repository(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return proc.returncode == 0

    def open(self, name: str, base_ref: str) -> None:
        self._run_git(["branch", name, base_ref])

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", name])

    def has_diff(self, name: str, base_ref: str) -> bool:
        proc = self._run_git(["diff", "--quiet", f"{base_ref}...{name}"], check=False)
        if proc.returncode not in (0, 1):
            raise WorkspaceError(f"git diff {base_ref} {name} failed: {proc.stderr.strip()}")
        return proc.returncode == 1

    def has_unmerged_files(self) -> bool:
        proc = self._run_git(["ls-files", "--unmerged"], check=False)
        return bool(proc.stdout.strip())

    def has_staged_changes(self) -> bool:
        proc = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode == 1

    def squash_merge(self, name: str, target: str, message: str) -> MergeOutcome:
        self.checkout(target)
        proc = self._run_git(["merge", "--squash", name], check=False)
        if proc.returncode != 0:
            if self.has_unmerged_files() or "CONFLICT" in proc.stdout:
                self.reset_hard()
                return MergeOutcome(ok=False, conflict=True, error=proc.stdout.strip())
            return MergeOutcome(ok=False, error=proc.stderr.strip() or proc.stdout.strip())
        if not self.has_staged_changes():
            return MergeOutcome(ok=True)
        return MergeOutcome(ok=True, commit_sha=self.commit_staged(message))

    def merge_commit(self, name: str, target: str, message: str) -> MergeOutcome:
        self.checkout(target)
        proc = self._run_git(["merge", "--no-ff", "--no-verify", "-m", message, name], check=False)
        if proc.returncode != 0:
            if self.is_merge_in_progress():
                self.abort_merge()
                return MergeOutcome(ok=False, conflict=True, error=proc.stdout.strip())
            return MergeOutcome(ok=False, error=proc.stderr.strip() or proc.stdout.strip())
        return MergeOutcome(ok=True, commit_sha=self.head())

    def reset_hard(self, ref: str = "HEAD") -> None:
        self._run_git(["reset", "--hard", ref])

    def delete_workspace(self, name: str) -> None:
        proc = self._run_git(["branch", "-d", name], check=False)
        if proc.returncode != 0:
            self._run_git(["branch", "-D", name])

    def add_worktree(self, path: Path, name: str) -> None:
        self._run_git(["worktree", "add", str(path), name])

    def remove_worktree(self, path: Path) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)])

    def stage(self, paths: list[str] | None = None) -> None:
        self._run_git(["add", "-A", "--", *(paths or ["."])])

    def commit_staged(self, message: str) -> str:
        self._run_git(["commit", "--no-verify", "-m", message])
        return self.head()

    def amend_last(self) -> str:
        self._run_git(["commit", "--amend", "--no-edit", "--no-verify"])
        return self.head()

    def has_uncommitted_changes(self) -> bool:
        return bool(self.status())

    def status(self, paths: list[str] | None = None) -> list[StatusEntry]:
        args = ["status", "--porcelain", "--untracked-files=all"]
        if paths:
            args.extend(["--", *paths])
        proc = self._run_git(args)
        entries: list[StatusEntry] = []
        for line in proc.stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", maxsplit=1)[1].strip()
            entries.append(StatusEntry(code=line[:2], path=path.strip('"')))
        return entries

    def changed_lines(self, path: str) -> list[str]:
        proc = self._run_git(["diff", "-U0", "HEAD", "--", path], check=False)
        lines: list[str] = []
        for line in proc.stdout.splitlines():
            if line.startswith(("+++", "---")):
                continue
            if line.startswith(("+", "-")):
                lines.append(line)
        return lines

    def discard(self, paths: list[str]) -> None:
        if not paths:
            return
        self._run_git(["reset", "-q", "HEAD", "--", *paths], check=False)
        self._run_git(["checkout", "HEAD", "--", *paths])

    def last_commit_files(self) -> list[str]:
        proc = self._run_git(["show", "--pretty=format:", "--name-only", "HEAD"], check=False)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def last_commit_subject(self) -> str:
        proc = self._run_git(["log", "-1", "--pretty=format:%s"], check=False)
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def _git_dir(self) -> Path:
        return Path(self._run_git(["rev-parse", "--absolute-git-dir"]).stdout.strip())

    def is_merge_in_progress(self) -> bool:
        return (self._git_dir() / "MERGE_HEAD").exists()

    def abort_merge(self) -> None:
        self._run_git(["merge", "--abort"])

    def is_rebase_in_progress(self) -> bool:
        git_dir = self._git_dir()
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def abort_rebase(self) -> None:
        self._run_git(["rebase", "--abort"])
