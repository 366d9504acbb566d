from pathlib import Path

import pytest
import yaml

from archon_agent.config import CONFIG_FILENAME, ConfigError, load_config


def _write_config(root: Path, data: dict) -> Path:
    path = root / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path, env={})
    assert config.root == tmp_path.resolve()
    assert config.mentions == ["/archon", "/ac"]
    assert config.share is None
    assert config.use_github_token is False
    assert config.opencode.completion == "blocking"
    assert config.github.max_fetch_depth == 20
    assert config.run_id is None


def test_missing_model_is_reported(tmp_path: Path) -> None:
    config = load_config(tmp_path, env={})
    with pytest.raises(ConfigError, match="MODEL"):
        config.model_ref()


def test_model_must_have_provider(tmp_path: Path) -> None:
    config = load_config(tmp_path, env={"MODEL": "sonnet"})
    with pytest.raises(ConfigError, match="provider/model"):
        config.model_ref()


def test_env_overrides(tmp_path: Path) -> None:
    config = load_config(
        tmp_path,
        env={
            "MODEL": "anthropic/claude-sonnet",
            "SHARE": "false",
            "USE_GITHUB_TOKEN": "true",
            "MENTIONS": "/Bot, /b",
            "GITHUB_RUN_ID": "99",
            "ARCHON_COMPLETION": "poll",
        },
    )
    assert config.model_ref() == {"providerID": "anthropic", "modelID": "claude-sonnet"}
    assert config.share is False
    assert config.use_github_token is True
    assert config.mentions == ["/bot", "/b"]
    assert config.require_run_id() == "99"
    assert config.opencode.completion == "poll"


def test_share_must_be_boolean_string(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="share"):
        load_config(tmp_path, env={"SHARE": "yes"})


def test_run_id_required(tmp_path: Path) -> None:
    config = load_config(tmp_path, env={})
    with pytest.raises(ConfigError, match="GITHUB_RUN_ID"):
        config.require_run_id()


def test_config_file_found_from_subdirectory(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {"version": 1, "model": "openai/gpt", "opencode": {"completion": "poll"}},
    )
    nested = tmp_path / "src" / "pkg"
    nested.mkdir(parents=True)
    config = load_config(nested, env={})
    assert config.root == tmp_path.resolve()
    assert config.model == "openai/gpt"
    assert config.opencode.completion == "poll"
    assert config.opencode.base_url == "http://127.0.0.1:4096"


def test_invalid_completion_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, {"version": 1, "opencode": {"completion": "stream"}})
    with pytest.raises(ConfigError, match="completion"):
        load_config(tmp_path, env={})


def test_unsupported_version_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, {"version": 2})
    with pytest.raises(ConfigError, match="version"):
        load_config(tmp_path, env={})
