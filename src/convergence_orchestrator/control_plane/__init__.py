"""Control-plane public API: executors, the dispatcher, and the convergence loop."""

from convergence_orchestrator.control_plane.convergence import (
    ConvergenceLoop,
    ConvergenceOutcome,
    ConvergenceResult,
    ConvergenceSession,
    EscalationReason,
    IterationRecord,
    LoopState,
    RemediationError,
)
from convergence_orchestrator.control_plane.dispatcher import (
    DispatchReport,
    Dispatcher,
    incomplete_analysis_finding,
)
from convergence_orchestrator.control_plane.executor import (
    CallableExecutor,
    Executor,
    FatalTaskError,
    coerce_task_output,
)

__all__ = [
    "CallableExecutor",
    "ConvergenceLoop",
    "ConvergenceOutcome",
    "ConvergenceResult",
    "ConvergenceSession",
    "DispatchReport",
    "Dispatcher",
    "EscalationReason",
    "Executor",
    "FatalTaskError",
    "IterationRecord",
    "LoopState",
    "RemediationError",
    "coerce_task_output",
    "incomplete_analysis_finding",
]
