"""Domain models shared by every orchestration plane."""

from convergence_orchestrator.domain.models import (
    SEVERITIES_BY_RANK,
    Finding,
    GateThresholds,
    Severity,
    Task,
    TaskResult,
    TaskStatus,
    Verdict,
    VerdictKind,
)

__all__ = [
    "SEVERITIES_BY_RANK",
    "Finding",
    "GateThresholds",
    "Severity",
    "Task",
    "TaskResult",
    "TaskStatus",
    "Verdict",
    "VerdictKind",
]
