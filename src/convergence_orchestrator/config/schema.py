"""
convergence-orchestrator: configuration schema and validation.

Defines the authoritative defaults, strict validation with structured issues
(field path + message), the deterministic deep-merge used by the loader, and the
typed :class:`EngineConfig` view consumed by the engine.

Config layout::

    [meta]           schema_version
    [engine]         concurrency_limit, max_iterations, no_progress_limit,
                     default_timeout_seconds, fatal_statuses
    [findings]       confidence_threshold, reporting_threshold
    [gate]           max_critical, max_high, max_medium
    [observability]  log_level, log_dir, log_to_stdout
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from convergence_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_MAX_CRITICAL,
    DEFAULT_MAX_HIGH,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_MEDIUM,
    DEFAULT_NO_PROGRESS_LIMIT,
    DEFAULT_REPORTING_THRESHOLD,
    MAX_CONFIDENCE,
    MIN_CONFIDENCE,
)
from convergence_orchestrator.domain.models import GateThresholds, TaskStatus

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "engine": {
        "concurrency_limit": DEFAULT_CONCURRENCY_LIMIT,
        "max_iterations": DEFAULT_MAX_ITERATIONS,
        "no_progress_limit": DEFAULT_NO_PROGRESS_LIMIT,
        "default_timeout_seconds": None,
        "fatal_statuses": [],
    },
    "findings": {
        "confidence_threshold": DEFAULT_CONFIDENCE_THRESHOLD,
        "reporting_threshold": DEFAULT_REPORTING_THRESHOLD,
    },
    "gate": {
        "max_critical": DEFAULT_MAX_CRITICAL,
        "max_high": DEFAULT_MAX_HIGH,
        "max_medium": DEFAULT_MAX_MEDIUM,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": True,
    },
}

_INT_FIELDS: Final[dict[tuple[str, str], int]] = {
    ("engine", "concurrency_limit"): 1,
    ("engine", "max_iterations"): 1,
    ("engine", "no_progress_limit"): 1,
    ("gate", "max_critical"): 0,
    ("gate", "max_high"): 0,
    ("gate", "max_medium"): 0,
}
_CONFIDENCE_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("findings", "confidence_threshold"),
    ("findings", "reporting_threshold"),
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Typed, validated view of the effective configuration."""

    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    no_progress_limit: int = DEFAULT_NO_PROGRESS_LIMIT
    default_timeout_seconds: float | None = None
    fatal_statuses: tuple[TaskStatus, ...] = ()
    confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD
    reporting_threshold: int = DEFAULT_REPORTING_THRESHOLD
    max_critical: int = DEFAULT_MAX_CRITICAL
    max_high: int = DEFAULT_MAX_HIGH
    max_medium: int = DEFAULT_MAX_MEDIUM
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_stdout: bool = True

    def __post_init__(self) -> None:
        statuses: list[TaskStatus] = []
        for status in self.fatal_statuses:
            try:
                statuses.append(TaskStatus(status))
            except ValueError:
                issue = ConfigValidationIssue("engine.fatal_statuses", f"unknown status {status!r}")
                raise ConfigValidationError((issue,)) from None
        object.__setattr__(self, "fatal_statuses", tuple(statuses))
        assert_valid_config(self.to_mapping())

    @property
    def gate_thresholds(self) -> GateThresholds:
        return GateThresholds(
            max_critical=self.max_critical,
            max_high=self.max_high,
            max_medium=self.max_medium,
        )

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> EngineConfig:
        """Build from a (possibly partial) nested config mapping merged onto defaults."""
        merged = assert_valid_config(merge_config(default_config(), config))
        engine = merged["engine"]
        findings = merged["findings"]
        gate = merged["gate"]
        observability = merged["observability"]
        timeout = engine["default_timeout_seconds"]
        return cls(
            concurrency_limit=engine["concurrency_limit"],
            max_iterations=engine["max_iterations"],
            no_progress_limit=engine["no_progress_limit"],
            default_timeout_seconds=None if timeout is None else float(timeout),
            fatal_statuses=tuple(TaskStatus(status) for status in engine["fatal_statuses"]),
            confidence_threshold=findings["confidence_threshold"],
            reporting_threshold=findings["reporting_threshold"],
            max_critical=gate["max_critical"],
            max_high=gate["max_high"],
            max_medium=gate["max_medium"],
            log_level=observability["log_level"],
            log_dir=observability["log_dir"],
            log_to_stdout=observability["log_to_stdout"],
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
            "engine": {
                "concurrency_limit": self.concurrency_limit,
                "max_iterations": self.max_iterations,
                "no_progress_limit": self.no_progress_limit,
                "default_timeout_seconds": self.default_timeout_seconds,
                "fatal_statuses": [status.value for status in self.fatal_statuses],
            },
            "findings": {
                "confidence_threshold": self.confidence_threshold,
                "reporting_threshold": self.reporting_threshold,
            },
            "gate": {
                "max_critical": self.max_critical,
                "max_high": self.max_high,
                "max_medium": self.max_medium,
            },
            "observability": {
                "log_level": self.log_level,
                "log_dir": self.log_dir,
                "log_to_stdout": self.log_to_stdout,
            },
        }


def default_config() -> dict[str, Any]:
    """Return a deep copy of the default config mapping."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object]) -> tuple[ConfigValidationIssue, ...]:
    """Return every validation issue in deterministic order; empty when valid."""

    issues: list[ConfigValidationIssue] = []

    for section in sorted(config):
        if section not in DEFAULT_CONFIG:
            issues.append(ConfigValidationIssue(section, "unknown section"))

    for section, defaults in DEFAULT_CONFIG.items():
        raw_section = config.get(section)
        if not isinstance(raw_section, Mapping):
            issues.append(ConfigValidationIssue(section, "section must be a table"))
            continue
        for key in sorted(raw_section):
            if key not in defaults:
                issues.append(ConfigValidationIssue(f"{section}.{key}", "unknown key"))
        for key in defaults:
            if key not in raw_section:
                issues.append(ConfigValidationIssue(f"{section}.{key}", "missing required value"))

    if issues:
        return tuple(issues)

    schema_version = _get(config, "meta", "schema_version")
    if schema_version != CONFIG_SCHEMA_VERSION:
        issues.append(
            ConfigValidationIssue(
                "meta.schema_version",
                f"unsupported schema version {schema_version!r}; expected {CONFIG_SCHEMA_VERSION}",
            )
        )

    for (section, key), minimum in _INT_FIELDS.items():
        value = _get(config, section, key)
        if not _is_int(value):
            issues.append(ConfigValidationIssue(f"{section}.{key}", "must be an integer"))
        elif value < minimum:
            issues.append(ConfigValidationIssue(f"{section}.{key}", f"must be >= {minimum}"))

    for section, key in _CONFIDENCE_FIELDS:
        value = _get(config, section, key)
        if not _is_int(value) or not MIN_CONFIDENCE <= value <= MAX_CONFIDENCE:
            issues.append(
                ConfigValidationIssue(
                    f"{section}.{key}",
                    f"must be an integer within [{MIN_CONFIDENCE}, {MAX_CONFIDENCE}]",
                )
            )

    timeout = _get(config, "engine", "default_timeout_seconds")
    if timeout is not None and (
        isinstance(timeout, bool)
        or not isinstance(timeout, (int, float))
        or not math.isfinite(timeout)
        or timeout <= 0
    ):
        issues.append(
            ConfigValidationIssue("engine.default_timeout_seconds", "must be a number > 0 or null")
        )

    fatal_statuses = _get(config, "engine", "fatal_statuses")
    allowed_fatal = {TaskStatus.FAILURE.value, TaskStatus.TIMEOUT.value}
    if isinstance(fatal_statuses, (str, bytes)) or not isinstance(fatal_statuses, Sequence):
        issues.append(ConfigValidationIssue("engine.fatal_statuses", "must be a list of strings"))
    else:
        for index, status in enumerate(fatal_statuses):
            if status not in allowed_fatal:
                issues.append(
                    ConfigValidationIssue(
                        f"engine.fatal_statuses[{index}]",
                        f"must be one of: {', '.join(sorted(allowed_fatal))}",
                    )
                )

    log_level = _get(config, "observability", "log_level")
    if not isinstance(log_level, str) or not isinstance(
        logging.getLevelName(log_level.strip().upper()), int
    ):
        issues.append(ConfigValidationIssue("observability.log_level", "unknown logging level"))
    if not isinstance(_get(config, "observability", "log_dir"), str):
        issues.append(ConfigValidationIssue("observability.log_dir", "must be a string"))
    if not isinstance(_get(config, "observability", "log_to_stdout"), bool):
        issues.append(ConfigValidationIssue("observability.log_to_stdout", "must be a boolean"))

    return tuple(issues)


def assert_valid_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Validate ``config`` and return a deep copy, raising on any issue."""

    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    return copy.deepcopy(dict(config))


def _get(config: Mapping[str, object], section: str, key: str) -> Any:
    raw_section = config[section]
    assert isinstance(raw_section, Mapping)
    return raw_section[key]


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


__all__ = [
    "DEFAULT_CONFIG",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "EngineConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
