import tomllib
from pathlib import Path

import pytest

from persevere import __version__
from persevere.config import PersevereConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "persevere.toml"
    config = PersevereConfig.default()
    config.limits.max_plan_iterations = 4
    config.limits.unlimited = True
    config.limits.plan_limit_action = "fail"
    config.backends.plan = "codex"
    config.backends.audit = "cursor"
    config.backends.fallback = ["copilot", "claude"]
    config.backends.retry_delay_seconds = 0.5
    config.models.execute = "gpt-5-codex"
    config.run.plan_only = True
    config.fake.hard_blockers = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.backends.for_group("audit") == "cursor"
    assert loaded.models.for_group("execute") == "gpt-5-codex"
    assert loaded.models.for_group("plan") is None


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == PersevereConfig.default()
    assert config.limits.max_plan_iterations == 10
    assert config.limits.max_exec_iterations == 5
    assert config.limits.max_follow_up_iterations == 10
    assert config.limits.plan_confidence == 85
    assert config.backends.max_retries == 2
    assert config.backends.retry_delay_seconds == 10.0


def test_toml_dump_sections_and_floats() -> None:
    rendered = dumps_toml(PersevereConfig.default())
    parsed = tomllib.loads(rendered)

    assert list(parsed) == ["limits", "backends", "models", "run", "fake"]
    assert "retry_delay_seconds = 10.0" in rendered
    assert "fallback = []" in rendered
    assert isinstance(parsed["backends"]["timeout_seconds"], float)


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown backend for execute"):
        PersevereConfig.from_dict({"backends": {"execute": "gemini"}})

    with pytest.raises(ValueError, match="Unknown fallback backend"):
        PersevereConfig.from_dict({"backends": {"fallback": ["claude", "nope"]}})


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError, match="plan_limit_action"):
        PersevereConfig.from_dict({"limits": {"plan_limit_action": "retry"}})

    with pytest.raises(ValueError, match="plan_confidence"):
        PersevereConfig.from_dict({"limits": {"plan_confidence": 150}})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
