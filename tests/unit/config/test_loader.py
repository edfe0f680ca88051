"""
Unit tests for config loader.

Precedence: overrides > env > file > defaults, plus env coercion and error paths.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from convergence_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    env_name_for,
    load_config,
)
from convergence_orchestrator.config.schema import ConfigValidationError, EngineConfig
from convergence_orchestrator.domain.models import TaskStatus


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_defaults_when_no_file_or_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={}) == EngineConfig()


def test_loader_precedence_file_env_overrides(tmp_path: Path) -> None:
    config_path = tmp_path / "engine.toml"
    _write_config(
        config_path,
        """
[engine]
max_iterations = 5
concurrency_limit = 6

[gate]
max_high = 4
""".strip(),
    )
    environ = {env_name_for("engine", "max_iterations"): "7"}

    config = load_config(
        config_path,
        overrides={"gate": {"max_high": 1}},
        environ=environ,
    )

    assert config.max_iterations == 7
    assert config.concurrency_limit == 6
    assert config.max_high == 1
    assert config.max_medium == 10


def test_default_file_in_working_directory_is_picked_up(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path / DEFAULT_CONFIG_FILE, "[findings]\nconfidence_threshold = 60\n")
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={}).confidence_threshold == 60


def test_env_values_are_coerced_by_default_type(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    environ = {
        "CONVERGE_ENGINE__FATAL_STATUSES": "failure, timeout",
        "CONVERGE_ENGINE__DEFAULT_TIMEOUT_SECONDS": "2.5",
        "CONVERGE_OBSERVABILITY__LOG_TO_STDOUT": "off",
        "CONVERGE_OBSERVABILITY__LOG_LEVEL": "debug",
        "UNRELATED": "ignored",
    }

    config = load_config(environ=environ)

    assert config.fatal_statuses == (TaskStatus.FAILURE, TaskStatus.TIMEOUT)
    assert config.default_timeout_seconds == 2.5
    assert config.log_to_stdout is False
    assert config.log_level == "debug"


def test_env_null_timeout_clears_file_value(tmp_path: Path) -> None:
    config_path = tmp_path / "engine.toml"
    _write_config(config_path, "[engine]\ndefault_timeout_seconds = 30.0\n")

    config = load_config(
        config_path,
        environ={"CONVERGE_ENGINE__DEFAULT_TIMEOUT_SECONDS": "none"},
    )

    assert config.default_timeout_seconds is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CONVERGE_ENGINE__MAX_ITERATIONS", "three"),
        ("CONVERGE_OBSERVABILITY__LOG_TO_STDOUT", "maybe"),
        ("CONVERGE_ENGINE__DEFAULT_TIMEOUT_SECONDS", "soon"),
    ],
)
def test_uncoercible_env_values_raise(
    name: str, value: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigLoadError, match=name):
        load_config(environ={name: value})


def test_missing_explicit_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_raises(tmp_path: Path) -> None:
    config_path = tmp_path / "broken.toml"
    _write_config(config_path, "[engine\nmax_iterations = 2\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_validation_errors_surface_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "engine.toml"
    _write_config(config_path, "[engine]\nmax_iterations = 0\nbogus = 1\n")

    with pytest.raises(ConfigValidationError) as error:
        load_config(config_path, environ={})

    paths = {issue.path for issue in error.value.issues}
    assert "engine.bogus" in paths


def test_env_name_mapping_is_deterministic() -> None:
    assert env_name_for("gate", "max_high") == "CONVERGE_GATE__MAX_HIGH"
