"""
convergence-orchestrator config package public API.

Exports the typed engine config, schema validation, and the precedence loader
(overrides > ``CONVERGE_`` env > ``convergence.toml`` > defaults).
"""

from convergence_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    env_name_for,
    load_config,
)
from convergence_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    EngineConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "EngineConfig",
    "assert_valid_config",
    "default_config",
    "env_name_for",
    "load_config",
    "merge_config",
    "validate_config",
]
