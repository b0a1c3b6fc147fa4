import json
import subprocess
from pathlib import Path

import pytest
from click.testing import CliRunner

from beanloop.backends.base import AgentBackend, AgentResult
from beanloop.cli import cli
from beanloop.state import StateStore
from beanloop.tasks import InMemoryTaskStore, Task, TaskStatus, TaskType


class FakeBackend(AgentBackend):
    name = "fake"

    def __init__(self, store: InMemoryTaskStore, repo: Path, *, exit_code: int = 0) -> None:
        super().__init__("fake")
        self.store = store
        self.repo = repo
        self.exit_code = exit_code
        self.prompts: list[str] = []

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, prompt]

    async def run(self, prompt: str, *, model: str | None = None) -> AgentResult:
        self.prompts.append(prompt)
        if self.exit_code == 0:
            (self.repo / "feature.py").write_text("VALUE = 1\n", encoding="utf-8")
            self.store.update("solo", status=TaskStatus.COMPLETED)
        return AgentResult(exit_code=self.exit_code, duration_seconds=0.0)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "branch", "-M", "main"], cwd=repo_path, check=True, text=True, capture_output=True
    )


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, InMemoryTaskStore]:
    for name in ("BEANLOOP_AGENT", "BEANLOOP_MODEL", "BEANLOOP_MAX_ITERATIONS", "BEANLOOP_BRANCHES"):
        monkeypatch.delenv(name, raising=False)
    store = InMemoryTaskStore(
        [Task(id="solo", type=TaskType.TASK, status=TaskStatus.TODO, title="Solo")]
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("beanloop.cli.BeansTaskStore", lambda repo_root: store)
    return tmp_path, store


def _use_backend(monkeypatch: pytest.MonkeyPatch, backend: AgentBackend) -> None:
    monkeypatch.setattr("beanloop.cli.build_backend", lambda agent, repo_root=None: backend)


def test_init_writes_config_and_state_dir(workspace: tuple[Path, InMemoryTaskStore]) -> None:
    repo, _ = workspace
    result = CliRunner().invoke(cli, ["init", "--agent", "claude", "--trunk", "develop"])

    assert result.exit_code == 0, result.output
    assert "Initialized beanloop" in result.output
    config_text = (repo / "beanloop.toml").read_text(encoding="utf-8")
    assert 'backend = "claude"' in config_text
    assert 'trunk = "develop"' in config_text
    assert (repo / ".beanloop" / ".gitignore").exists()


def test_run_completes_task_on_isolated_branch(
    workspace: tuple[Path, InMemoryTaskStore], monkeypatch: pytest.MonkeyPatch
) -> None:
    repo, store = workspace
    _init_git_repo(repo)
    backend = FakeBackend(store, repo)
    _use_backend(monkeypatch, backend)

    result = CliRunner().invoke(cli, ["run", "-s"])

    assert result.exit_code == 0, result.output
    assert "solo: completed after 1 iteration(s)" in result.output
    assert "Completed 1 of 1 task(s)." in result.output
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert _git(repo, "log", "-1", "--pretty=%s") == "chore: Solo"
    assert len(backend.prompts) == 1


def test_run_exits_nonzero_when_a_task_fails(
    workspace: tuple[Path, InMemoryTaskStore], monkeypatch: pytest.MonkeyPatch
) -> None:
    repo, store = workspace
    (repo / "beanloop.toml").write_text(
        "[loop]\nfailure_threshold = 1\nretry_pause_seconds = 0\n", encoding="utf-8"
    )
    _use_backend(monkeypatch, FakeBackend(store, repo, exit_code=2))

    result = CliRunner().invoke(cli, ["run", "solo", "--no-branch", "-s"])

    assert result.exit_code == 1
    assert "circuit-broken" in result.output


def test_dry_run_prints_prompt_without_running(
    workspace: tuple[Path, InMemoryTaskStore], monkeypatch: pytest.MonkeyPatch
) -> None:
    repo, store = workspace
    backend = FakeBackend(store, repo)
    _use_backend(monkeypatch, backend)

    result = CliRunner().invoke(cli, ["run", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "# solo (opencode, " in result.output
    assert "## Current Task: solo" in result.output
    assert backend.prompts == []
    assert store.record("solo").status is TaskStatus.TODO
    assert StateStore(repo).get_json("root") is None


def test_run_outside_git_requires_no_branch(workspace: tuple[Path, InMemoryTaskStore]) -> None:
    result = CliRunner().invoke(cli, ["run", "-s"])

    assert result.exit_code == 2
    assert "not a git repository" in result.output


def test_unknown_agent_from_environment_is_a_usage_error(
    workspace: tuple[Path, InMemoryTaskStore], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BEANLOOP_AGENT", "gemini")

    result = CliRunner().invoke(cli, ["select"])

    assert result.exit_code == 2
    assert "Unknown agent backend" in result.output


def test_select_prints_next_task(workspace: tuple[Path, InMemoryTaskStore]) -> None:
    _, store = workspace

    first = CliRunner().invoke(cli, ["select"])
    store.update("solo", status=TaskStatus.COMPLETED)
    second = CliRunner().invoke(cli, ["select"])

    assert first.exit_code == 0, first.output
    assert first.output.strip() == "solo"
    assert "Nothing to do." in second.output


def test_root_set_show_and_clear(workspace: tuple[Path, InMemoryTaskStore]) -> None:
    runner = CliRunner()

    assert "No traversal root." in runner.invoke(cli, ["root"]).output
    assert "Traversal root set to solo" in runner.invoke(cli, ["root", "solo"]).output
    assert runner.invoke(cli, ["root"]).output.strip() == "solo"
    assert "Traversal root cleared." in runner.invoke(cli, ["root", "--clear"]).output
    assert "No traversal root." in runner.invoke(cli, ["root"]).output


def test_status_reports_recent_runs(workspace: tuple[Path, InMemoryTaskStore]) -> None:
    repo, _ = workspace
    state = StateStore(repo)
    for index in range(3):
        state.record_run({"task_id": f"t{index}", "state": "completed"})

    result = CliRunner().invoke(cli, ["status", "--limit", "2"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["agent"] == "opencode"
    assert payload["branches"] is True
    assert [run["task_id"] for run in payload["runs"]] == ["t1", "t2"]


def test_parallel_daemon_without_branches_is_a_usage_error(
    workspace: tuple[Path, InMemoryTaskStore],
) -> None:
    result = CliRunner().invoke(cli, ["daemon", "--no-branch", "--max-parallel", "2"])

    assert result.exit_code == 2
    assert "needs branch isolation" in result.output
