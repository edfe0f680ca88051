"""
convergence-orchestrator: runtime config loader.

Precedence: explicit overrides > env (``CONVERGE_``) > TOML file > defaults.
Environment variable names are derived from the config path, e.g.
``CONVERGE_ENGINE__MAX_ITERATIONS`` or ``CONVERGE_GATE__MAX_HIGH``.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from convergence_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    EngineConfig,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "convergence.toml"
ENV_PREFIX: Final[str] = "CONVERGE_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_NULL_VALUES: Final[frozenset[str]] = frozenset({"", "none", "null"})

# Keys whose default is None need an explicit type for env coercion.
_OPTIONAL_FLOAT_KEYS: Final[frozenset[tuple[str, str]]] = frozenset(
    {("engine", "default_timeout_seconds")}
)


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load the effective :class:`EngineConfig`.

    A missing default config file is fine; an explicitly requested one must exist.
    """

    explicit_path = config_path is not None
    resolved_path = Path(config_path) if config_path is not None else Path(DEFAULT_CONFIG_FILE)
    env_map = dict(os.environ if environ is None else environ)

    merged = merge_config(default_config(), _load_toml_file(resolved_path, required=explicit_path))
    merged = merge_config(merged, _collect_env_overrides(env_map))
    merged = merge_config(merged, dict(overrides or {}))
    return EngineConfig.from_mapping(assert_valid_config(merged))


def env_name_for(section: str, key: str) -> str:
    """Return the environment variable bound to ``section.key``."""

    return f"{ENV_PREFIX}{section.upper()}__{key.upper()}"


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for section, defaults in DEFAULT_CONFIG.items():
        if section == "meta":
            continue
        for key, default in defaults.items():
            env_name = env_name_for(section, key)
            raw = environ.get(env_name)
            if raw is None:
                continue
            value = _coerce_env(raw, default, env_name, (section, key))
            overrides.setdefault(section, {})[key] = value
    return overrides


def _coerce_env(raw: str, default: object, env_name: str, path: tuple[str, str]) -> object:
    value = raw.strip()
    dotted = ".".join(path)

    if path in _OPTIONAL_FLOAT_KEYS:
        if value.lower() in _NULL_VALUES:
            return None
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be a number") from exc

    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in _BOOLEAN_TRUE:
            return True
        if lowered in _BOOLEAN_FALSE:
            return False
        raise ConfigLoadError(
            f"{env_name} -> {dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be an integer") from exc
    if isinstance(default, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "env_name_for",
    "load_config",
]
