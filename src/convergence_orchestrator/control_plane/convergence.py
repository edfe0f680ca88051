"""
Bounded convergence loop: schedule, evaluate, remediate, repeat.

One run moves through ``SCHEDULING -> EVALUATING -> {DONE, REMEDIATING, ESCALATED}``
and back to ``SCHEDULING`` after each remediation. The loop always ends with a
:class:`ConvergenceResult` carrying the last verdict and findings; escalation is a
designed terminal outcome, not an engine failure.

Progress is measured on the unresolved Critical plus High count of consecutive
verdicts. The first pass has nothing to improve on and counts as no progress, so a
remediation step that fixes nothing escalates after ``no_progress_limit`` passes.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeAlias

import structlog

from convergence_orchestrator.constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_NO_PROGRESS_LIMIT,
    RESULT_SCHEMA_VERSION,
)
from convergence_orchestrator.control_plane.dispatcher import DispatchReport, Dispatcher
from convergence_orchestrator.control_plane.executor import FatalTaskError
from convergence_orchestrator.domain.models import Finding, GateThresholds, JSONValue, Verdict
from convergence_orchestrator.observability.logging import correlation_scope
from convergence_orchestrator.planning.task_graph import TaskGraph
from convergence_orchestrator.utils.concurrency import CancellationToken
from convergence_orchestrator.verification_plane.aggregator import (
    AggregationReport,
    FindingAggregator,
    FingerprintFn,
    content_fingerprint,
)
from convergence_orchestrator.verification_plane.quality_gate import QualityGate

if TYPE_CHECKING:
    from convergence_orchestrator.config.schema import EngineConfig
    from convergence_orchestrator.control_plane.executor import Executor

GraphSource: TypeAlias = TaskGraph | Callable[[], TaskGraph]
RemediateFn: TypeAlias = Callable[[tuple[Finding, ...]], Awaitable[object] | object]
IterationCallback: TypeAlias = Callable[["IterationRecord"], None]


class LoopState(StrEnum):
    SCHEDULING = "scheduling"
    EVALUATING = "evaluating"
    REMEDIATING = "remediating"
    DONE = "done"
    ESCALATED = "escalated"


class ConvergenceOutcome(StrEnum):
    DONE = "done"
    ESCALATED = "escalated"


class EscalationReason(StrEnum):
    MAX_ITERATIONS = "max_iterations"
    NO_PROGRESS = "no_progress"
    REMEDIATION_FAILED = "remediation_failed"
    CANCELLED = "cancelled"


class RemediationError(RuntimeError):
    """Remediation could not be attempted; the loop escalates instead of retrying."""

    def __init__(self, iteration: int, cause: BaseException) -> None:
        self.iteration = iteration
        self.cause = cause
        super().__init__(
            f"remediation failed after iteration {iteration}: {type(cause).__name__}: {cause}"
        )


@dataclass(frozen=True, slots=True)
class IterationRecord:
    """What a single scheduling pass produced and how the loop judged it."""

    iteration: int
    verdict: Verdict
    dispatch: DispatchReport
    aggregation: AggregationReport
    progress: bool
    no_progress_streak: int
    fatal_error: str | None = None

    @property
    def findings(self) -> tuple[Finding, ...]:
        return self.aggregation.findings

    @property
    def unresolved_blocking_count(self) -> int:
        return self.verdict.unresolved_blocking_count

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "iteration": self.iteration,
            "verdict": self.verdict.to_dict(),
            "progress": self.progress,
            "no_progress_streak": self.no_progress_streak,
            "unresolved_blocking_count": self.unresolved_blocking_count,
            "fatal_error": self.fatal_error,
            "dispatch": {
                "total_tasks": self.dispatch.total_tasks,
                "completion_order": list(self.dispatch.completion_order),
                "incomplete_task_ids": list(self.dispatch.incomplete_task_ids),
                "failed_task_ids": list(self.dispatch.failed_task_ids),
                "interrupted_task_ids": list(self.dispatch.interrupted_task_ids),
                "cancelled": self.dispatch.cancelled,
                "fatal_task_id": self.dispatch.fatal_task_id,
                "elapsed_seconds": self.dispatch.elapsed_seconds,
            },
            "aggregation": {
                "raw_finding_count": self.aggregation.raw_finding_count,
                "merged_count": self.aggregation.merged_count,
                "dropped_below_threshold": self.aggregation.dropped_below_threshold,
                "confidence_threshold": self.aggregation.confidence_threshold,
            },
        }


@dataclass(slots=True)
class ConvergenceSession:
    """Mutable per-run state; created at loop start and discarded at loop end."""

    max_iterations: int
    no_progress_limit: int
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    iteration: int = 0
    state: LoopState = LoopState.SCHEDULING
    no_progress_streak: int = 0
    history: list[IterationRecord] = field(default_factory=list)

    @property
    def last(self) -> IterationRecord | None:
        return self.history[-1] if self.history else None

    @property
    def verdicts(self) -> tuple[Verdict, ...]:
        return tuple(record.verdict for record in self.history)

    def begin_iteration(self) -> int:
        self.iteration += 1
        self.state = LoopState.SCHEDULING
        return self.iteration

    def record(
        self,
        *,
        verdict: Verdict,
        dispatch: DispatchReport,
        aggregation: AggregationReport,
        fatal_error: str | None,
    ) -> IterationRecord:
        previous = self.last
        progress = (
            fatal_error is None
            and previous is not None
            and verdict.unresolved_blocking_count < previous.unresolved_blocking_count
        )
        self.no_progress_streak = 0 if progress else self.no_progress_streak + 1
        record = IterationRecord(
            iteration=self.iteration,
            verdict=verdict,
            dispatch=dispatch,
            aggregation=aggregation,
            progress=progress,
            no_progress_streak=self.no_progress_streak,
            fatal_error=fatal_error,
        )
        self.history.append(record)
        return record

    @property
    def iteration_budget_spent(self) -> bool:
        return self.iteration >= self.max_iterations

    @property
    def stalled(self) -> bool:
        return self.no_progress_streak >= self.no_progress_limit


@dataclass(frozen=True, slots=True)
class ConvergenceResult:
    """Terminal outcome of one convergence run with its full iteration history."""

    outcome: ConvergenceOutcome
    verdict: Verdict
    findings: tuple[Finding, ...]
    iterations_used: int
    history: tuple[IterationRecord, ...]
    run_id: str
    escalation_reason: EscalationReason | None = None
    remediation_error: RemediationError | None = None

    @property
    def done(self) -> bool:
        return self.outcome is ConvergenceOutcome.DONE

    @property
    def escalated(self) -> bool:
        return self.outcome is ConvergenceOutcome.ESCALATED

    @property
    def verdicts(self) -> tuple[Verdict, ...]:
        return tuple(record.verdict for record in self.history)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": RESULT_SCHEMA_VERSION,
            "run_id": self.run_id,
            "outcome": self.outcome.value,
            "escalation_reason": (
                None if self.escalation_reason is None else self.escalation_reason.value
            ),
            "remediation_error": (
                None if self.remediation_error is None else str(self.remediation_error)
            ),
            "iterations_used": self.iterations_used,
            "verdict": self.verdict.to_dict(),
            "findings": [finding.to_dict() for finding in self.findings],
            "history": [record.to_dict() for record in self.history],
        }


class ConvergenceLoop:
    """Drive dispatcher, aggregator and gate until the gate passes or the run escalates."""

    __slots__ = (
        "_dispatcher",
        "_aggregator",
        "_gate",
        "_max_iterations",
        "_no_progress_limit",
        "_logger",
    )

    def __init__(
        self,
        *,
        dispatcher: Dispatcher | None = None,
        aggregator: FindingAggregator | None = None,
        gate: QualityGate | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        no_progress_limit: int = DEFAULT_NO_PROGRESS_LIMIT,
        logger: Any | None = None,
    ) -> None:
        self._dispatcher = dispatcher if dispatcher is not None else Dispatcher()
        self._aggregator = aggregator if aggregator is not None else FindingAggregator()
        self._gate = gate if gate is not None else QualityGate()
        self._max_iterations = _validate_positive_int(max_iterations, "max_iterations")
        self._no_progress_limit = _validate_positive_int(no_progress_limit, "no_progress_limit")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        fingerprint: FingerprintFn = content_fingerprint,
        logger: Any | None = None,
    ) -> ConvergenceLoop:
        """Build a loop whose components all follow ``config``."""
        return cls(
            dispatcher=Dispatcher(
                concurrency_limit=config.concurrency_limit,
                default_timeout_seconds=config.default_timeout_seconds,
                fatal_statuses=config.fatal_statuses,
                logger=logger,
            ),
            aggregator=FindingAggregator(
                confidence_threshold=config.confidence_threshold,
                fingerprint=fingerprint,
            ),
            gate=QualityGate(
                config.gate_thresholds,
                reporting_threshold=config.reporting_threshold,
                logger=logger,
            ),
            max_iterations=config.max_iterations,
            no_progress_limit=config.no_progress_limit,
            logger=logger,
        )

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @property
    def no_progress_limit(self) -> int:
        return self._no_progress_limit

    async def run(
        self,
        graph: GraphSource,
        executor: Executor,
        remediate: RemediateFn,
        *,
        gate_thresholds: GateThresholds | None = None,
        max_iterations: int | None = None,
        cancel_token: CancellationToken | None = None,
        on_iteration: IterationCallback | None = None,
        run_id: str | None = None,
    ) -> ConvergenceResult:
        """
        Run the loop to a terminal state.

        ``graph`` is either a finalized-or-finalizable :class:`TaskGraph` reused on
        every pass, or a zero-argument factory called once per pass so remediation
        can change the work. Graph construction errors propagate to the caller.
        ``remediate`` receives the current aggregated findings and may be a plain or
        coroutine function; any exception it raises escalates the run.
        """
        session = ConvergenceSession(
            max_iterations=(
                self._max_iterations
                if max_iterations is None
                else _validate_positive_int(max_iterations, "max_iterations")
            ),
            no_progress_limit=self._no_progress_limit,
        )
        if run_id is not None:
            session.run_id = run_id
        token = cancel_token or CancellationToken()

        with correlation_scope(run_id=session.run_id):
            self._logger.info(
                "convergence_started",
                run_id=session.run_id,
                max_iterations=session.max_iterations,
                no_progress_limit=session.no_progress_limit,
            )
            while True:
                iteration = session.begin_iteration()
                with correlation_scope(iteration=iteration):
                    record = await self._schedule_and_evaluate(
                        session, graph, executor, token, gate_thresholds
                    )
                    if on_iteration is not None:
                        on_iteration(record)

                    if record.dispatch.cancelled:
                        return self._escalate(session, EscalationReason.CANCELLED)
                    if record.verdict.passed and record.fatal_error is None:
                        return self._finish(session)
                    if session.iteration_budget_spent:
                        return self._escalate(session, EscalationReason.MAX_ITERATIONS)
                    if session.stalled:
                        return self._escalate(session, EscalationReason.NO_PROGRESS)
                    if token.is_cancelled:
                        return self._escalate(session, EscalationReason.CANCELLED)

                    session.state = LoopState.REMEDIATING
                    try:
                        await _invoke_remediation(remediate, record.findings)
                    except asyncio.CancelledError:
                        if token.is_cancelled:
                            return self._escalate(session, EscalationReason.CANCELLED)
                        raise
                    except Exception as exc:
                        error = RemediationError(iteration, exc)
                        self._logger.warning(
                            "remediation_failed", iteration=iteration, error=str(error)
                        )
                        return self._escalate(
                            session,
                            EscalationReason.REMEDIATION_FAILED,
                            remediation_error=error,
                        )

                if token.is_cancelled:
                    return self._escalate(session, EscalationReason.CANCELLED)

    def run_sync(
        self,
        graph: GraphSource,
        executor: Executor,
        remediate: RemediateFn,
        *,
        gate_thresholds: GateThresholds | None = None,
        max_iterations: int | None = None,
        cancel_token: CancellationToken | None = None,
        on_iteration: IterationCallback | None = None,
        run_id: str | None = None,
    ) -> ConvergenceResult:
        """Blocking wrapper around :meth:`run` for callers without an event loop."""
        return asyncio.run(
            self.run(
                graph,
                executor,
                remediate,
                gate_thresholds=gate_thresholds,
                max_iterations=max_iterations,
                cancel_token=cancel_token,
                on_iteration=on_iteration,
                run_id=run_id,
            )
        )

    async def _schedule_and_evaluate(
        self,
        session: ConvergenceSession,
        graph_source: GraphSource,
        executor: Executor,
        token: CancellationToken,
        gate_thresholds: GateThresholds | None,
    ) -> IterationRecord:
        graph = graph_source if isinstance(graph_source, TaskGraph) else graph_source()
        graph.finalize()
        self._logger.info("iteration_started", iteration=session.iteration, tasks=len(graph))

        fatal_error: str | None = None
        try:
            dispatch = await self._dispatcher.run(graph, executor, cancel_token=token)
        except FatalTaskError as exc:
            fatal_error = str(exc)
            dispatch = exc.partial or DispatchReport(
                results={},
                launch_order=(),
                completion_order=(),
                total_tasks=len(graph),
                fatal_task_id=exc.task_id,
            )

        session.state = LoopState.EVALUATING
        aggregation = self._aggregator.aggregate(dispatch.ordered_results())
        verdict = self._gate.evaluate(
            aggregation.findings,
            gate_thresholds,
            incomplete_task_ids=(*aggregation.incomplete_task_ids, *dispatch.interrupted_task_ids),
        )
        record = session.record(
            verdict=verdict,
            dispatch=dispatch,
            aggregation=aggregation,
            fatal_error=fatal_error,
        )
        self._logger.info(
            "iteration_evaluated",
            iteration=record.iteration,
            verdict=verdict.kind.value,
            unresolved_blocking=record.unresolved_blocking_count,
            progress=record.progress,
            no_progress_streak=record.no_progress_streak,
            fatal=fatal_error is not None,
        )
        return record

    def _finish(self, session: ConvergenceSession) -> ConvergenceResult:
        session.state = LoopState.DONE
        self._logger.info(
            "convergence_done", run_id=session.run_id, iterations_used=session.iteration
        )
        return _build_result(session, ConvergenceOutcome.DONE)

    def _escalate(
        self,
        session: ConvergenceSession,
        reason: EscalationReason,
        *,
        remediation_error: RemediationError | None = None,
    ) -> ConvergenceResult:
        session.state = LoopState.ESCALATED
        self._logger.warning(
            "convergence_escalated",
            run_id=session.run_id,
            reason=reason.value,
            iterations_used=session.iteration,
        )
        return _build_result(
            session,
            ConvergenceOutcome.ESCALATED,
            escalation_reason=reason,
            remediation_error=remediation_error,
        )


def _build_result(
    session: ConvergenceSession,
    outcome: ConvergenceOutcome,
    *,
    escalation_reason: EscalationReason | None = None,
    remediation_error: RemediationError | None = None,
) -> ConvergenceResult:
    last = session.last
    if last is None:
        raise RuntimeError("convergence session ended before any iteration was evaluated")
    return ConvergenceResult(
        outcome=outcome,
        verdict=last.verdict,
        findings=last.findings,
        iterations_used=session.iteration,
        history=tuple(session.history),
        run_id=session.run_id,
        escalation_reason=escalation_reason,
        remediation_error=remediation_error,
    )


async def _invoke_remediation(remediate: RemediateFn, findings: Iterable[Finding]) -> None:
    outcome = remediate(tuple(findings))
    if inspect.isawaitable(outcome):
        await outcome


def _validate_positive_int(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


__all__ = [
    "ConvergenceLoop",
    "ConvergenceOutcome",
    "ConvergenceResult",
    "ConvergenceSession",
    "EscalationReason",
    "GraphSource",
    "IterationCallback",
    "IterationRecord",
    "LoopState",
    "RemediateFn",
    "RemediationError",
]
