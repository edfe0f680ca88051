"""Unit tests for verification_plane.aggregator."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from convergence_orchestrator.domain.models import Finding, Severity, TaskResult
from convergence_orchestrator.verification_plane.aggregator import (
    FindingAggregator,
    aggregate_findings,
    content_fingerprint,
    location_fingerprint,
    merge_findings,
)


def _finding(
    description: str,
    severity: Severity = Severity.HIGH,
    confidence: int = 90,
    location: str = "src/app.py:10",
    **overrides: object,
) -> Finding:
    return Finding(
        description=description,
        severity=severity,
        confidence=confidence,
        location=location,
        **overrides,
    )


def test_duplicates_merge_to_max_confidence_and_union_of_sources() -> None:
    results = [
        TaskResult.success("security", (_finding("SQL built from input", confidence=85),)),
        TaskResult.success("review", (_finding("sql  BUILT from input", confidence=95),)),
        TaskResult.success("audit", (_finding("SQL built from input", confidence=82),)),
    ]

    report = FindingAggregator().aggregate(results)

    (merged,) = report.findings
    assert merged.confidence == 95
    assert merged.source_task_ids == ("audit", "review", "security")
    assert merged.fingerprint == content_fingerprint(merged)
    assert report.raw_finding_count == 3
    assert report.merged_count == 1


def test_findings_below_threshold_are_dropped_after_merging() -> None:
    results = [
        TaskResult.success("a", (_finding("weak signal", confidence=60),)),
        TaskResult.success("b", (_finding("weak signal", confidence=79),)),
        TaskResult.success("c", (_finding("strong signal", confidence=80),)),
    ]

    report = FindingAggregator(confidence_threshold=80).aggregate(results)

    assert [finding.description for finding in report.findings] == ["strong signal"]
    assert report.dropped_below_threshold == 1


def test_output_is_sorted_by_severity_then_confidence() -> None:
    results = [
        TaskResult.success(
            "t1",
            (
                _finding("medium issue", Severity.MEDIUM, 99, "a.py"),
                _finding("high issue", Severity.HIGH, 81, "b.py"),
            ),
        ),
        TaskResult.success(
            "t2",
            (
                _finding("critical issue", Severity.CRITICAL, 85, "c.py"),
                _finding("other high", Severity.HIGH, 97, "d.py"),
            ),
        ),
    ]

    findings = aggregate_findings(results)

    assert [finding.description for finding in findings] == [
        "critical issue",
        "other high",
        "high issue",
        "medium issue",
    ]


def test_arrival_order_does_not_change_output() -> None:
    results = [
        TaskResult.success("t1", (_finding("x", Severity.LOW, 90, "x.py"),)),
        TaskResult.success("t2", (_finding("y", Severity.HIGH, 90, "y.py"),)),
        TaskResult.success("t3", (_finding("x", Severity.LOW, 95, "x.py"),)),
    ]

    forward = FindingAggregator().aggregate(results).findings
    backward = FindingAggregator().aggregate(list(reversed(results))).findings

    assert forward == backward


def test_timeouts_are_incomplete_and_failures_still_contribute() -> None:
    results = [
        TaskResult.timeout("slow", timeout_seconds=1.0),
        TaskResult.failure("broken", "exit 2", (_finding("partial result", confidence=90),)),
    ]

    report = FindingAggregator().aggregate(results)

    assert report.incomplete_task_ids == ("slow",)
    assert report.failed_task_ids == ("broken",)
    assert [finding.description for finding in report.findings] == ["partial result"]


def test_explicit_fingerprint_overrides_content_fingerprint() -> None:
    results = [
        TaskResult.success("a", (_finding("one wording", fingerprint="CWE-89@db.py"),)),
        TaskResult.success("b", (_finding("another wording", fingerprint="CWE-89@db.py"),)),
    ]

    (merged,) = FindingAggregator().aggregate(results).findings

    assert merged.fingerprint == "CWE-89@db.py"
    assert merged.source_task_ids == ("a", "b")


def test_location_fingerprint_merges_same_severity_at_same_location() -> None:
    results = [
        TaskResult.success("a", (_finding("unused import", Severity.LOW, 90, "m.py:3"),)),
        TaskResult.success("b", (_finding("import never used", Severity.LOW, 92, "m.py:3"),)),
        TaskResult.success("c", (_finding("shadowed name", Severity.MEDIUM, 90, "m.py:3"),)),
    ]

    report = FindingAggregator(fingerprint=location_fingerprint).aggregate(results)

    assert len(report.findings) == 2
    assert report.findings[1].description == "import never used"


def test_per_call_threshold_override() -> None:
    results = [TaskResult.success("a", (_finding("maybe", confidence=50),))]

    assert FindingAggregator().aggregate(results, confidence_threshold=50).findings
    with pytest.raises(ValueError, match="confidence_threshold"):
        FindingAggregator().aggregate(results, confidence_threshold=101)


def test_merge_findings_requires_members() -> None:
    with pytest.raises(ValueError):
        merge_findings([])


def test_merge_tie_on_confidence_prefers_higher_severity() -> None:
    merged = merge_findings(
        [
            _finding("same", Severity.MEDIUM, 90, fingerprint="fp", source_task_ids=("a",)),
            _finding("same", Severity.HIGH, 90, fingerprint="fp", source_task_ids=("b",)),
        ]
    )

    assert merged.severity is Severity.HIGH
    assert merged.source_task_ids == ("a", "b")


_descriptions = st.sampled_from(["leak", "race", "overflow", "injection"])
_severities = st.sampled_from(list(Severity))
_finding_strategy = st.builds(
    _finding,
    description=_descriptions,
    severity=_severities,
    confidence=st.integers(min_value=0, max_value=100),
    location=st.sampled_from(["a.py", "b.py"]),
)


@settings(max_examples=60, deadline=None)
@given(batches=st.lists(st.lists(_finding_strategy, max_size=5), max_size=5))
def test_aggregation_is_idempotent(batches: list[list[Finding]]) -> None:
    results = [TaskResult.success(f"t{index}", batch) for index, batch in enumerate(batches)]
    aggregator = FindingAggregator(confidence_threshold=0)

    first = aggregator.aggregate(results).findings
    second = aggregator.aggregate([TaskResult.success("again", first)]).findings

    assert [(item.fingerprint, item.confidence) for item in second] == [
        (item.fingerprint, item.confidence) for item in first
    ]
    assert len({item.fingerprint for item in first}) == len(first)
