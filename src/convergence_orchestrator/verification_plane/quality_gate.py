"""
Severity-count quality gate.

Precedence is strict: Critical over its cap blocks, otherwise High or Medium over
their caps need work, otherwise the gate passes. Only findings at or above the
reporting confidence threshold are counted.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from convergence_orchestrator.constants import DEFAULT_REPORTING_THRESHOLD
from convergence_orchestrator.domain.models import (
    SEVERITIES_BY_RANK,
    Finding,
    GateThresholds,
    Severity,
    Verdict,
    VerdictKind,
    coerce_confidence,
)


class QualityGate:
    """Render a pass / needs-work / blocked verdict over a finding set."""

    __slots__ = ("_thresholds", "_reporting_threshold", "_logger")

    def __init__(
        self,
        thresholds: GateThresholds | None = None,
        *,
        reporting_threshold: int = DEFAULT_REPORTING_THRESHOLD,
        logger: Any | None = None,
    ) -> None:
        self._thresholds = thresholds if thresholds is not None else GateThresholds()
        self._reporting_threshold = coerce_confidence(
            reporting_threshold, path="reporting_threshold"
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def thresholds(self) -> GateThresholds:
        return self._thresholds

    @property
    def reporting_threshold(self) -> int:
        return self._reporting_threshold

    def evaluate(
        self,
        findings: Iterable[Finding],
        thresholds: GateThresholds | None = None,
        *,
        incomplete_task_ids: Iterable[str] = (),
    ) -> Verdict:
        limits = thresholds if thresholds is not None else self._thresholds
        reported = sorted(
            (finding for finding in findings if finding.confidence >= self._reporting_threshold),
            key=Finding.sort_key,
        )
        counts = {severity: 0 for severity in SEVERITIES_BY_RANK}
        for finding in reported:
            counts[finding.severity] += 1

        kind, reasons = _decide(counts, limits)
        verdict = Verdict(
            kind=kind,
            severity_counts=counts,
            findings=tuple(reported),
            thresholds=limits,
            reporting_threshold=self._reporting_threshold,
            incomplete_task_ids=tuple(incomplete_task_ids),
            reasons=reasons,
        )
        self._logger.info(
            "gate_evaluated",
            verdict=kind.value,
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            incomplete=len(verdict.incomplete_task_ids),
        )
        return verdict


def evaluate_findings(
    findings: Iterable[Finding],
    thresholds: GateThresholds | None = None,
    *,
    reporting_threshold: int = DEFAULT_REPORTING_THRESHOLD,
    incomplete_task_ids: Iterable[str] = (),
) -> Verdict:
    """Functional wrapper for one-shot gate evaluation."""
    gate = QualityGate(thresholds, reporting_threshold=reporting_threshold)
    return gate.evaluate(findings, incomplete_task_ids=incomplete_task_ids)


def _decide(
    counts: dict[Severity, int],
    limits: GateThresholds,
) -> tuple[VerdictKind, tuple[str, ...]]:
    reasons: list[str] = []
    for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM):
        limit = limits.limit_for(severity)
        if limit is not None and counts[severity] > limit:
            reasons.append(f"{severity.value} findings {counts[severity]} exceed limit {limit}")

    if counts[Severity.CRITICAL] > limits.max_critical:
        return VerdictKind.BLOCKED, tuple(reasons)
    if counts[Severity.HIGH] > limits.max_high or counts[Severity.MEDIUM] > limits.max_medium:
        return VerdictKind.NEEDS_WORK, tuple(reasons)
    return VerdictKind.PASS, ()


__all__ = [
    "QualityGate",
    "evaluate_findings",
]
