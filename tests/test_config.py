import tomllib
from pathlib import Path

import pytest

from warden import __version__
from warden.config import WardenConfig, dumps_toml, load_config, save_config
from warden.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "warden.toml"
    config = WardenConfig.default()
    config.project.name = "warden-test"
    config.project.context_path = "meta/context.json"
    config.backend.name = "codex"
    config.backend.model = "gpt-5-codex"
    config.orchestrate.max_replans = 4
    config.orchestrate.merge_strategy = "incremental"
    config.orchestrate.max_parallel_tasks = 2
    config.orchestrate.task_timeout_seconds = 42.5
    config.workspace.branch_prefix = "agents"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "warden-test"
    assert loaded.project.context_path == "meta/context.json"
    assert loaded.backend.name == "codex"
    assert loaded.backend.model == "gpt-5-codex"
    assert loaded.orchestrate.max_replans == 4
    assert loaded.orchestrate.merge_strategy == "incremental"
    assert loaded.orchestrate.max_parallel_tasks == 2
    assert loaded.orchestrate.task_timeout_seconds == 42.5
    assert loaded.orchestrate.planner_timeout_seconds == 120.0
    assert loaded.workspace.branch_prefix == "agents"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.orchestrate.max_replans == 2
    assert loaded.orchestrate.merge_strategy == "all-or-nothing"
    assert loaded.workspace.root == ".warden/workspaces"


def test_toml_dump_contains_orchestration_fields() -> None:
    rendered = dumps_toml(WardenConfig.default())

    assert "[orchestrate]" in rendered
    assert "max_replans = 2" in rendered
    assert 'merge_strategy = "all-or-nothing"' in rendered
    assert "task_timeout_seconds = 300.0" in rendered
    assert "[workspace]" in rendered
    assert "[logging]" in rendered


def test_invalid_merge_strategy_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "warden.toml"
    config_path.write_text('[orchestrate]\nmerge_strategy = "best-effort"\n', encoding="utf-8")

    with pytest.raises(ConfigError, match="merge strategy"):
        load_config(config_path)


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "warden.toml"
    config_path.write_text("[orchestrate]\nretries = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_malformed_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "warden.toml"
    config_path.write_text("[orchestrate\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
