"""Unit tests for verification_plane.quality_gate."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import capture_logs

from convergence_orchestrator.domain.models import (
    Finding,
    GateThresholds,
    Severity,
    VerdictKind,
)
from convergence_orchestrator.verification_plane.quality_gate import (
    QualityGate,
    evaluate_findings,
)


def _findings(severity: Severity, count: int, confidence: int = 90) -> list[Finding]:
    return [
        Finding(
            description=f"{severity.value} issue {index}",
            severity=severity,
            confidence=confidence,
            location=f"file_{index}.py",
        )
        for index in range(count)
    ]


def test_single_critical_blocks_with_default_thresholds() -> None:
    verdict = QualityGate().evaluate(_findings(Severity.CRITICAL, 1))

    assert verdict.kind is VerdictKind.BLOCKED
    assert verdict.severity_counts[Severity.CRITICAL] == 1
    assert verdict.reasons == ("critical findings 1 exceed limit 0",)


def test_three_highs_need_work_with_default_thresholds() -> None:
    verdict = QualityGate().evaluate(_findings(Severity.HIGH, 3))

    assert verdict.kind is VerdictKind.NEEDS_WORK
    assert verdict.severity_counts[Severity.HIGH] == 3


def test_critical_takes_precedence_over_high_and_medium() -> None:
    findings = (
        _findings(Severity.CRITICAL, 1)
        + _findings(Severity.HIGH, 5)
        + _findings(Severity.MEDIUM, 20)
    )

    verdict = QualityGate().evaluate(findings)

    assert verdict.kind is VerdictKind.BLOCKED
    assert len(verdict.reasons) == 3


def test_counts_at_limit_pass() -> None:
    findings = (
        _findings(Severity.HIGH, 2) + _findings(Severity.MEDIUM, 10) + _findings(Severity.LOW, 50)
    )

    verdict = QualityGate().evaluate(findings)

    assert verdict.passed
    assert verdict.reasons == ()
    assert verdict.severity_counts[Severity.LOW] == 50


def test_medium_over_limit_needs_work() -> None:
    verdict = QualityGate().evaluate(_findings(Severity.MEDIUM, 11))

    assert verdict.kind is VerdictKind.NEEDS_WORK


def test_empty_findings_pass() -> None:
    verdict = QualityGate().evaluate(())

    assert verdict.passed
    assert verdict.findings == ()


def test_findings_below_reporting_threshold_are_not_counted() -> None:
    findings = _findings(Severity.CRITICAL, 1, confidence=79)

    assert QualityGate().evaluate(findings).passed
    assert QualityGate(reporting_threshold=70).evaluate(findings).blocked


def test_thresholds_can_be_overridden_per_call() -> None:
    gate = QualityGate()
    relaxed = GateThresholds(max_critical=1, max_high=5, max_medium=10)

    verdict = gate.evaluate(_findings(Severity.CRITICAL, 1), relaxed)

    assert verdict.passed
    assert verdict.thresholds == relaxed


def test_incomplete_tasks_are_carried_on_the_verdict() -> None:
    verdict = evaluate_findings((), incomplete_task_ids=("slow", "slower"))

    assert verdict.passed
    assert verdict.incomplete_task_ids == ("slow", "slower")


def test_verdict_is_logged() -> None:
    with capture_logs() as logs:
        QualityGate().evaluate(_findings(Severity.HIGH, 3))

    (entry,) = [item for item in logs if item["event"] == "gate_evaluated"]
    assert entry["verdict"] == "needs_work"
    assert entry["high"] == 3


_SEVERITY_ORDER = {VerdictKind.PASS: 0, VerdictKind.NEEDS_WORK: 1, VerdictKind.BLOCKED: 2}


@settings(max_examples=100, deadline=None)
@given(
    critical=st.integers(min_value=0, max_value=3),
    high=st.integers(min_value=0, max_value=6),
    medium=st.integers(min_value=0, max_value=15),
    extra=st.sampled_from([Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]),
)
def test_adding_a_finding_never_improves_the_verdict(
    critical: int, high: int, medium: int, extra: Severity
) -> None:
    gate = QualityGate()
    base = (
        _findings(Severity.CRITICAL, critical)
        + _findings(Severity.HIGH, high)
        + _findings(Severity.MEDIUM, medium)
    )
    more = base + [
        Finding(description="one more", severity=extra, confidence=95, location="extra.py")
    ]

    before = gate.evaluate(base).kind
    after = gate.evaluate(more).kind

    assert _SEVERITY_ORDER[after] >= _SEVERITY_ORDER[before]
