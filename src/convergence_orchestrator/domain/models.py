"""Frozen dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum, StrEnum
from types import MappingProxyType
from typing import TypeVar

from convergence_orchestrator.constants import (
    DEFAULT_MAX_CRITICAL,
    DEFAULT_MAX_HIGH,
    DEFAULT_MAX_MEDIUM,
    DEFAULT_REPORTING_THRESHOLD,
    MAX_CONFIDENCE,
    MIN_CONFIDENCE,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Ordering weight; higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

SEVERITIES_BY_RANK: tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
)


class TaskStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class VerdictKind(StrEnum):
    PASS = "pass"
    NEEDS_WORK = "needs_work"
    BLOCKED = "blocked"


@dataclass(frozen=True, slots=True)
class Task:
    """One schedulable unit of work.

    ``payload`` is opaque to the engine and handed to the executor untouched.
    ``track`` is a reporting label for tasks meant to run side by side; it has no
    effect on scheduling.
    """

    id: str
    dependencies: tuple[str, ...] = ()
    priority: float = 1.0
    payload: object = field(default=None, compare=False)
    track: str | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _require_non_empty_str(self.id, "Task.id"))
        object.__setattr__(
            self,
            "dependencies",
            _unique_str_tuple(self.dependencies, f"Task[{self.id}].dependencies"),
        )
        if isinstance(self.priority, bool) or not isinstance(self.priority, (int, float)):
            raise ValueError(f"Task[{self.id}].priority: must be numeric")
        if not math.isfinite(self.priority) or self.priority < 0:
            raise ValueError(f"Task[{self.id}].priority: must be a finite number >= 0")
        object.__setattr__(self, "priority", float(self.priority))
        if self.track is not None:
            object.__setattr__(
                self, "track", _require_non_empty_str(self.track, f"Task[{self.id}].track")
            )
        if self.timeout_seconds is not None:
            _require_positive_number(self.timeout_seconds, f"Task[{self.id}].timeout_seconds")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "track": self.track,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass(frozen=True, slots=True)
class Finding:
    """A single reportable issue.

    ``fingerprint`` may be left empty; the aggregator then derives one from the
    finding's content. ``location`` is carried through unmodified.
    """

    description: str
    severity: Severity
    confidence: int
    location: str = ""
    fingerprint: str = ""
    source_task_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "description", _require_non_empty_str(self.description, "Finding.description")
        )
        object.__setattr__(
            self, "severity", coerce_enum(Severity, self.severity, path="Finding.severity")
        )
        object.__setattr__(
            self, "confidence", coerce_confidence(self.confidence, path="Finding.confidence")
        )
        if not isinstance(self.location, str):
            raise ValueError("Finding.location: must be a string")
        if not isinstance(self.fingerprint, str):
            raise ValueError("Finding.fingerprint: must be a string")
        object.__setattr__(
            self,
            "source_task_ids",
            tuple(sorted(_unique_str_tuple(self.source_task_ids, "Finding.source_task_ids"))),
        )

    @property
    def is_blocking(self) -> bool:
        return self.severity in (Severity.CRITICAL, Severity.HIGH)

    def with_fingerprint(self, fingerprint: str) -> Finding:
        return replace(self, fingerprint=fingerprint)

    def with_sources(self, source_task_ids: Iterable[str]) -> Finding:
        return replace(self, source_task_ids=tuple(source_task_ids))

    def sort_key(self) -> tuple[int, int, str, str]:
        """Most important first: severity, then confidence, then stable tie-breaks."""
        return (-self.severity.rank, -self.confidence, self.fingerprint, self.location)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "fingerprint": self.fingerprint,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "description": self.description,
            "location": self.location,
            "source_task_ids": list(self.source_task_ids),
        }


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of executing one task."""

    task_id: str
    status: TaskStatus
    findings: tuple[Finding, ...] = ()
    metadata: Mapping[str, object] = field(default_factory=dict, compare=False)
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "task_id", _require_non_empty_str(self.task_id, "TaskResult.task_id")
        )
        object.__setattr__(
            self, "status", coerce_enum(TaskStatus, self.status, path="TaskResult.status")
        )
        findings = tuple(self.findings)
        for index, finding in enumerate(findings):
            if not isinstance(finding, Finding):
                raise ValueError(
                    f"TaskResult[{self.task_id}].findings[{index}]: expected Finding, "
                    f"got {type(finding).__name__}"
                )
        object.__setattr__(self, "findings", findings)
        if not isinstance(self.metadata, Mapping):
            raise ValueError(f"TaskResult[{self.task_id}].metadata: must be a mapping")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def success(
        cls,
        task_id: str,
        findings: Iterable[Finding] = (),
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> TaskResult:
        return cls(task_id, TaskStatus.SUCCESS, tuple(findings), dict(metadata or {}))

    @classmethod
    def failure(
        cls,
        task_id: str,
        error: str,
        findings: Iterable[Finding] = (),
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> TaskResult:
        return cls(task_id, TaskStatus.FAILURE, tuple(findings), dict(metadata or {}), error)

    @classmethod
    def timeout(
        cls,
        task_id: str,
        *,
        timeout_seconds: float | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> TaskResult:
        message = (
            f"timed out after {timeout_seconds} seconds"
            if timeout_seconds is not None
            else "timed out"
        )
        return cls(task_id, TaskStatus.TIMEOUT, (), dict(metadata or {}), message)

    @property
    def ok(self) -> bool:
        return self.status is TaskStatus.SUCCESS

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "findings": [finding.to_dict() for finding in self.findings],
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class GateThresholds:
    """Maximum tolerated finding counts per severity. Low findings are never gated."""

    max_critical: int = DEFAULT_MAX_CRITICAL
    max_high: int = DEFAULT_MAX_HIGH
    max_medium: int = DEFAULT_MAX_MEDIUM

    def __post_init__(self) -> None:
        for name in ("max_critical", "max_high", "max_medium"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"GateThresholds.{name}: must be an integer")
            if value < 0:
                raise ValueError(f"GateThresholds.{name}: must be >= 0")

    def limit_for(self, severity: Severity) -> int | None:
        if severity is Severity.CRITICAL:
            return self.max_critical
        if severity is Severity.HIGH:
            return self.max_high
        if severity is Severity.MEDIUM:
            return self.max_medium
        return None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_critical": self.max_critical,
            "max_high": self.max_high,
            "max_medium": self.max_medium,
        }


@dataclass(frozen=True, slots=True)
class Verdict:
    """Quality gate outcome plus the evidence that produced it."""

    kind: VerdictKind
    severity_counts: Mapping[Severity, int]
    findings: tuple[Finding, ...] = ()
    thresholds: GateThresholds = field(default_factory=GateThresholds)
    reporting_threshold: int = DEFAULT_REPORTING_THRESHOLD
    incomplete_task_ids: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", coerce_enum(VerdictKind, self.kind, path="Verdict.kind"))
        counts = {severity: 0 for severity in SEVERITIES_BY_RANK}
        for raw_severity, count in self.severity_counts.items():
            severity = coerce_enum(Severity, raw_severity, path="Verdict.severity_counts")
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValueError(f"Verdict.severity_counts[{severity.value}]: must be an int >= 0")
            counts[severity] = count
        object.__setattr__(self, "severity_counts", MappingProxyType(counts))
        object.__setattr__(self, "findings", tuple(self.findings))
        object.__setattr__(
            self,
            "reporting_threshold",
            coerce_confidence(self.reporting_threshold, path="Verdict.reporting_threshold"),
        )
        object.__setattr__(
            self, "incomplete_task_ids", tuple(sorted(set(self.incomplete_task_ids)))
        )
        object.__setattr__(self, "reasons", tuple(self.reasons))

    @property
    def passed(self) -> bool:
        return self.kind is VerdictKind.PASS

    @property
    def blocked(self) -> bool:
        return self.kind is VerdictKind.BLOCKED

    @property
    def unresolved_blocking_count(self) -> int:
        """Number of reported Critical plus High findings."""
        return self.severity_counts[Severity.CRITICAL] + self.severity_counts[Severity.HIGH]

    @property
    def unresolved_blocking_fingerprints(self) -> frozenset[str]:
        return frozenset(finding.fingerprint for finding in self.findings if finding.is_blocking)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "severity_counts": {
                severity.value: self.severity_counts[severity] for severity in SEVERITIES_BY_RANK
            },
            "findings": [finding.to_dict() for finding in self.findings],
            "thresholds": self.thresholds.to_dict(),
            "reporting_threshold": self.reporting_threshold,
            "incomplete_task_ids": list(self.incomplete_task_ids),
            "reasons": list(self.reasons),
        }


def coerce_enum(enum_type: type[TEnum], value: object, *, path: str) -> TEnum:
    """Accept an enum member or its string value."""
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type(value.strip().lower())
        except ValueError as exc:
            allowed = ", ".join(sorted(str(member.value) for member in enum_type))
            raise ValueError(f"{path}: must be one of: {allowed}") from exc
    raise ValueError(f"{path}: must be {enum_type.__name__} or str, got {type(value).__name__}")


def coerce_confidence(value: object, *, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: must be an integer, got {type(value).__name__}")
    if not MIN_CONFIDENCE <= value <= MAX_CONFIDENCE:
        raise ValueError(f"{path}: must be within [{MIN_CONFIDENCE}, {MAX_CONFIDENCE}]")
    return value


def _require_non_empty_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{path}: must not be empty")
    return normalized


def _require_positive_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path}: must be numeric")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{path}: must be > 0")
    return float(value)


def _unique_str_tuple(values: object, path: str) -> tuple[str, ...]:
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise ValueError(f"{path}: must be a sequence of strings")
    seen: dict[str, None] = {}
    for index, item in enumerate(values):
        seen[_require_non_empty_str(item, f"{path}[{index}]")] = None
    return tuple(seen)


__all__ = [
    "Finding",
    "GateThresholds",
    "JSONScalar",
    "JSONValue",
    "SEVERITIES_BY_RANK",
    "Severity",
    "Task",
    "TaskResult",
    "TaskStatus",
    "Verdict",
    "VerdictKind",
    "coerce_confidence",
    "coerce_enum",
]
