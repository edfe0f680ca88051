"""Verification plane: finding aggregation and quality-gate evaluation."""

from convergence_orchestrator.verification_plane.aggregator import (
    AggregationReport,
    FindingAggregator,
    FingerprintFn,
    aggregate_findings,
    content_fingerprint,
    location_fingerprint,
    merge_findings,
)
from convergence_orchestrator.verification_plane.quality_gate import (
    QualityGate,
    evaluate_findings,
)

__all__ = [
    "AggregationReport",
    "FindingAggregator",
    "FingerprintFn",
    "QualityGate",
    "aggregate_findings",
    "content_fingerprint",
    "evaluate_findings",
    "location_fingerprint",
    "merge_findings",
]
