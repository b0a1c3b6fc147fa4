import tomllib
from pathlib import Path

import pytest

from beanloop import __version__
from beanloop.config import (
    BeanloopConfig,
    apply_env,
    dumps_toml,
    load_config,
    save_config,
)
from beanloop.errors import ConfigError


def test_defaults() -> None:
    config = BeanloopConfig.default()

    assert config.agent.backend == "opencode"
    assert config.agent.resolved_model
    assert config.loop.max_iterations == 5
    assert config.loop.failure_threshold == 3
    assert config.loop.snapshot_depth == 5
    assert config.branch.enabled is True
    assert config.branch.trunk == "main"
    assert config.branch.prefix == "bean/"


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "beanloop.toml"
    config = BeanloopConfig.default().with_overrides(
        backend="claude", model="sonnet", max_iterations=9, branches=False, max_parallel=2
    )

    save_config(config_path, config)
    loaded = load_config(config_path, environ={})

    assert loaded == config
    assert loaded.agent.backend == "claude"
    assert loaded.agent.resolved_model == "sonnet"
    assert loaded.loop.max_iterations == 9
    assert loaded.branch.enabled is False
    assert loaded.daemon.max_parallel == 2


def test_toml_dump_is_valid_toml() -> None:
    rendered = dumps_toml(BeanloopConfig.default())
    parsed = tomllib.loads(rendered)

    assert set(parsed) == {"agent", "loop", "branch", "daemon", "notify"}
    assert parsed["loop"]["retry_pause_seconds"] == 2
    assert parsed["branch"]["store_dir"] == ".beans"


def test_environment_overrides_file(tmp_path: Path) -> None:
    config_path = tmp_path / "beanloop.toml"
    config_path.write_text('[agent]\nbackend = "codex"\n\n[loop]\nmax_iterations = 3\n', encoding="utf-8")

    loaded = load_config(
        config_path,
        environ={
            "BEANLOOP_AGENT": "claude",
            "BEANLOOP_MODEL": "opus",
            "BEANLOOP_MAX_ITERATIONS": "7",
            "BEANLOOP_BRANCHES": "false",
            "BEANLOOP_TRUNK": "develop",
        },
    )

    assert loaded.agent.backend == "claude"
    assert loaded.agent.model == "opus"
    assert loaded.loop.max_iterations == 7
    assert loaded.branch.enabled is False
    assert loaded.branch.trunk == "develop"


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "absent.toml", environ={}) == BeanloopConfig.default()


def test_unknown_agent_is_fatal() -> None:
    with pytest.raises(ConfigError, match="Unknown agent backend"):
        BeanloopConfig.default().with_overrides(backend="gemini")
    with pytest.raises(ConfigError):
        apply_env(BeanloopConfig.default(), {"BEANLOOP_AGENT": "gemini"})


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        BeanloopConfig.default().with_overrides(max_iterations=0)
    with pytest.raises(ConfigError, match="integer"):
        apply_env(BeanloopConfig.default(), {"BEANLOOP_MAX_ITERATIONS": "lots"})
    with pytest.raises(ConfigError):
        BeanloopConfig.from_dict({"loop": {"unknown_key": 1}})

    broken = tmp_path / "beanloop.toml"
    broken.write_text("[agent\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Cannot parse"):
        load_config(broken, environ={})


def test_package_version_constant_matches_pyproject() -> None:
    pyproject = tomllib.loads(
        (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    )

    assert pyproject["project"]["version"] == __version__
