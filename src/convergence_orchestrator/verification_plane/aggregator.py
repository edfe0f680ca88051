"""
Finding aggregation: flatten, deduplicate by fingerprint, filter by confidence.

Output ordering is a hard contract: severity descending, then confidence
descending, independent of the order results arrived in.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from convergence_orchestrator.constants import DEFAULT_CONFIDENCE_THRESHOLD
from convergence_orchestrator.domain.models import (
    Finding,
    JSONValue,
    TaskResult,
    TaskStatus,
    coerce_confidence,
)
from convergence_orchestrator.utils.hashing import normalize_text, sha256_parts

FingerprintFn = Callable[[Finding], str]


def content_fingerprint(finding: Finding) -> str:
    """Fingerprint on normalized location plus description."""
    parts = ("content", normalize_text(finding.location), normalize_text(finding.description))
    return sha256_parts(parts)


def location_fingerprint(finding: Finding) -> str:
    """Fingerprint on severity plus location; one finding per severity per location."""
    return sha256_parts(("location", finding.severity.value, normalize_text(finding.location)))


@dataclass(frozen=True, slots=True)
class AggregationReport:
    """Merged findings plus the bookkeeping needed to tell "clean" from "didn't finish"."""

    findings: tuple[Finding, ...]
    incomplete_task_ids: tuple[str, ...] = ()
    failed_task_ids: tuple[str, ...] = ()
    raw_finding_count: int = 0
    dropped_below_threshold: int = 0
    confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD

    @property
    def merged_count(self) -> int:
        return len(self.findings) + self.dropped_below_threshold

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "findings": [finding.to_dict() for finding in self.findings],
            "incomplete_task_ids": list(self.incomplete_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "raw_finding_count": self.raw_finding_count,
            "dropped_below_threshold": self.dropped_below_threshold,
            "confidence_threshold": self.confidence_threshold,
        }


class FindingAggregator:
    """Consolidate findings reported by many tasks into one ranked list."""

    __slots__ = ("_fingerprint", "_confidence_threshold")

    def __init__(
        self,
        *,
        confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
        fingerprint: FingerprintFn = content_fingerprint,
    ) -> None:
        self._confidence_threshold = coerce_confidence(
            confidence_threshold, path="confidence_threshold"
        )
        self._fingerprint = fingerprint

    @property
    def confidence_threshold(self) -> int:
        return self._confidence_threshold

    def aggregate(
        self,
        results: Iterable[TaskResult],
        confidence_threshold: int | None = None,
    ) -> AggregationReport:
        threshold = (
            self._confidence_threshold
            if confidence_threshold is None
            else coerce_confidence(confidence_threshold, path="confidence_threshold")
        )

        groups: dict[str, list[Finding]] = {}
        incomplete: set[str] = set()
        failed: set[str] = set()
        raw_count = 0

        for result in results:
            if result.status is TaskStatus.TIMEOUT:
                incomplete.add(result.task_id)
                continue
            if result.status is TaskStatus.FAILURE:
                failed.add(result.task_id)
            for finding in result.findings:
                raw_count += 1
                fingerprint = finding.fingerprint or self._fingerprint(finding)
                stamped = finding.with_fingerprint(fingerprint).with_sources(
                    (*finding.source_task_ids, result.task_id)
                )
                groups.setdefault(fingerprint, []).append(stamped)

        merged = [merge_findings(group) for group in groups.values()]
        kept = [finding for finding in merged if finding.confidence >= threshold]
        kept.sort(key=Finding.sort_key)

        return AggregationReport(
            findings=tuple(kept),
            incomplete_task_ids=tuple(sorted(incomplete)),
            failed_task_ids=tuple(sorted(failed)),
            raw_finding_count=raw_count,
            dropped_below_threshold=len(merged) - len(kept),
            confidence_threshold=threshold,
        )


def merge_findings(group: Iterable[Finding]) -> Finding:
    """
    Merge findings that share a fingerprint.

    The representative is the most confident member (ties: higher severity, then
    location and description order). Its confidence is the group maximum and its
    sources are the union of all members' sources.
    """
    members = list(group)
    if not members:
        raise ValueError("cannot merge an empty finding group")

    representative = min(
        members,
        key=lambda item: (-item.confidence, -item.severity.rank, item.location, item.description),
    )
    sources = {task_id for item in members for task_id in item.source_task_ids}
    return representative.with_sources(sources)


def aggregate_findings(
    results: Iterable[TaskResult],
    confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
    *,
    fingerprint: FingerprintFn = content_fingerprint,
) -> tuple[Finding, ...]:
    """Functional wrapper returning only the ranked findings."""
    aggregator = FindingAggregator(
        confidence_threshold=confidence_threshold,
        fingerprint=fingerprint,
    )
    return aggregator.aggregate(results).findings


__all__ = [
    "AggregationReport",
    "FindingAggregator",
    "FingerprintFn",
    "aggregate_findings",
    "content_fingerprint",
    "location_fingerprint",
    "merge_findings",
]
