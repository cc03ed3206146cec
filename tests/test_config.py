import tomllib
from pathlib import Path

import pytest

from conductor import __version__
from conductor.config import ConductorConfig, ConfigError, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.agents.author_command = ["my-agent", "--print"]
    config.agents.reviewer_model = "reviewer-large"
    config.agents.timeout_seconds = 120.5
    config.quality.commands = ["make lint", 'pytest -k "not slow"']
    config.quality.timeout_seconds = 60.0
    config.limits.max_review_iterations = 7
    config.limits.max_auto_retries = 0
    config.limits.share_review_budget = False
    config.paths.reviews = "reviews"
    config.paths.plans = "plans"
    config.logging.json = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.agents.author_command == ["my-agent", "--print"]
    assert loaded.agents.reviewer_model == "reviewer-large"
    assert loaded.agents.timeout_seconds == 120.5
    assert loaded.quality.commands == ["make lint", 'pytest -k "not slow"']
    assert loaded.quality.timeout_seconds == 60.0
    assert loaded.limits.max_review_iterations == 7
    assert loaded.limits.max_auto_retries == 0
    assert loaded.limits.share_review_budget is False
    assert loaded.paths.reviews == "reviews"
    assert loaded.paths.plans == "plans"
    assert loaded.logging.json is True


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.limits.max_review_iterations == 5
    assert config.limits.max_quality_retries == 3
    assert config.limits.max_auto_retries == 3
    assert config.limits.max_auto_iterations == 10
    assert config.quality.timeout_seconds == 300.0
    assert config.paths.state_dir == ".conductor"
    assert config.paths.plans == "docs/development"


def test_toml_dump_keeps_floats_as_floats() -> None:
    rendered = dumps_toml(ConductorConfig.default())
    data = tomllib.loads(rendered)

    assert "[limits]" in rendered
    assert isinstance(data["quality"]["timeout_seconds"], float)
    assert isinstance(data["agents"]["timeout_seconds"], float)
    assert data["limits"]["share_review_budget"] is True


def test_unknown_key_is_a_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config_path.write_text("[limits]\nmax_everything = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration key"):
        load_config(config_path)


def test_out_of_range_limits_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config_path.write_text("[limits]\nmax_review_iterations = 0\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="max_review_iterations"):
        load_config(config_path)


def test_invalid_toml_is_a_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config_path.write_text("[limits\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
