"""Unit tests for control_plane.convergence."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import capture_logs

from convergence_orchestrator.config.schema import EngineConfig
from convergence_orchestrator.control_plane.convergence import (
    ConvergenceLoop,
    ConvergenceOutcome,
    EscalationReason,
    IterationRecord,
    RemediationError,
)
from convergence_orchestrator.control_plane.executor import CallableExecutor, FatalTaskError
from convergence_orchestrator.domain.models import (
    Finding,
    GateThresholds,
    Severity,
    Task,
    VerdictKind,
)
from convergence_orchestrator.planning.task_graph import CycleError, TaskGraph
from convergence_orchestrator.utils.concurrency import CancellationToken

STRICT = GateThresholds(max_critical=0, max_high=0, max_medium=0)


class FakeProject:
    """Mutable issue set scanned by every task and shrunk by remediation."""

    def __init__(self, issues: dict[str, Severity]) -> None:
        self.issues = dict(issues)
        self.remediation_calls: list[tuple[Finding, ...]] = []

    def scan(self, task: Task) -> list[Finding]:
        return [
            Finding(
                description=f"{severity.value} problem",
                severity=severity,
                confidence=90,
                location=location,
            )
            for location, severity in sorted(self.issues.items())
        ]

    def fixer(self, per_call: int) -> Callable[[tuple[Finding, ...]], None]:
        def remediate(findings: tuple[Finding, ...]) -> None:
            self.remediation_calls.append(findings)
            for finding in findings[:per_call]:
                self.issues.pop(finding.location, None)

        return remediate


def _highs(count: int) -> dict[str, Severity]:
    return {f"src/module_{index:02d}.py": Severity.HIGH for index in range(count)}


def _graph() -> TaskGraph:
    return TaskGraph.from_tasks(
        (Task("scan-security"), Task("scan-style"), Task("summarize", dependencies=("scan-style",)))
    )


@pytest.mark.asyncio
async def test_clean_first_pass_is_done_after_one_iteration() -> None:
    project = FakeProject({})

    result = await ConvergenceLoop().run(_graph, CallableExecutor(project.scan), project.fixer(1))

    assert result.outcome is ConvergenceOutcome.DONE
    assert result.done
    assert result.iterations_used == 1
    assert result.escalation_reason is None
    assert result.verdict.kind is VerdictKind.PASS
    assert project.remediation_calls == []


@pytest.mark.asyncio
async def test_noop_remediation_escalates_after_two_iterations() -> None:
    project = FakeProject(_highs(3))
    loop = ConvergenceLoop(max_iterations=10)

    result = await loop.run(_graph, CallableExecutor(project.scan), project.fixer(0))

    assert result.outcome is ConvergenceOutcome.ESCALATED
    assert result.escalation_reason is EscalationReason.NO_PROGRESS
    assert result.iterations_used == 2
    assert len(project.remediation_calls) == 1
    assert [record.progress for record in result.history] == [False, False]
    assert result.verdict.kind is VerdictKind.NEEDS_WORK
    assert len(result.findings) == 3


@pytest.mark.asyncio
async def test_progressive_remediation_converges_to_pass() -> None:
    project = FakeProject(_highs(5))
    loop = ConvergenceLoop(max_iterations=5)

    result = await loop.run(
        _graph,
        CallableExecutor(project.scan),
        project.fixer(2),
        gate_thresholds=STRICT,
    )

    assert result.outcome is ConvergenceOutcome.DONE
    assert result.iterations_used == 4
    assert [record.unresolved_blocking_count for record in result.history] == [5, 3, 1, 0]
    assert [record.progress for record in result.history] == [False, True, True, True]
    assert [len(call) for call in project.remediation_calls] == [5, 3, 1]


@pytest.mark.asyncio
async def test_iteration_budget_exhaustion_escalates_with_last_verdict() -> None:
    project = FakeProject(_highs(10))

    result = await ConvergenceLoop().run(
        _graph,
        CallableExecutor(project.scan),
        project.fixer(1),
        gate_thresholds=STRICT,
        max_iterations=3,
    )

    assert result.escalation_reason is EscalationReason.MAX_ITERATIONS
    assert result.iterations_used == 3
    assert result.verdict is result.history[-1].verdict
    assert result.verdict.unresolved_blocking_count == 8


@settings(max_examples=25, deadline=None)
@given(
    max_iterations=st.integers(min_value=1, max_value=6),
    issue_count=st.integers(min_value=0, max_value=8),
    per_call=st.integers(min_value=0, max_value=3),
)
def test_loop_never_exceeds_max_iterations(
    max_iterations: int, issue_count: int, per_call: int
) -> None:
    project = FakeProject(_highs(issue_count))
    loop = ConvergenceLoop(max_iterations=max_iterations)

    result = loop.run_sync(
        _graph,
        CallableExecutor(project.scan),
        project.fixer(per_call),
        gate_thresholds=STRICT,
    )

    assert 1 <= result.iterations_used <= max_iterations
    assert len(result.history) == result.iterations_used
    if result.outcome is ConvergenceOutcome.ESCALATED:
        assert not result.verdict.passed
    if per_call == 0 and issue_count > 0:
        assert result.iterations_used <= 2


@pytest.mark.asyncio
async def test_blocked_verdict_is_remediated_like_needs_work() -> None:
    project = FakeProject({"db.py": Severity.CRITICAL})

    result = await ConvergenceLoop().run(
        _graph, CallableExecutor(project.scan), project.fixer(1)
    )

    assert result.history[0].verdict.kind is VerdictKind.BLOCKED
    assert result.done
    assert result.iterations_used == 2


@pytest.mark.asyncio
async def test_remediation_error_escalates_and_keeps_cause() -> None:
    project = FakeProject(_highs(4))
    cause = OSError("patch tool unavailable")

    def remediate(findings: tuple[Finding, ...]) -> None:
        raise cause

    result = await ConvergenceLoop().run(_graph, CallableExecutor(project.scan), remediate)

    assert result.escalation_reason is EscalationReason.REMEDIATION_FAILED
    assert result.iterations_used == 1
    assert isinstance(result.remediation_error, RemediationError)
    assert result.remediation_error.cause is cause
    assert result.remediation_error.iteration == 1
    assert "patch tool unavailable" in json.dumps(result.to_dict())


@pytest.mark.asyncio
async def test_async_remediation_is_awaited() -> None:
    project = FakeProject(_highs(3))

    async def remediate(findings: tuple[Finding, ...]) -> None:
        await asyncio.sleep(0)
        project.issues.clear()

    result = await ConvergenceLoop().run(_graph, CallableExecutor(project.scan), remediate)

    assert result.done
    assert result.iterations_used == 2


@pytest.mark.asyncio
async def test_fatal_task_error_counts_as_no_progress() -> None:
    calls: list[int] = []

    async def work(task: Task) -> None:
        if task.id == "scan-security":
            raise FatalTaskError(task.id, "scanner license expired")

    def remediate(findings: tuple[Finding, ...]) -> None:
        calls.append(len(findings))

    result = await ConvergenceLoop(max_iterations=5).run(_graph, CallableExecutor(work), remediate)

    assert result.escalation_reason is EscalationReason.NO_PROGRESS
    assert result.iterations_used == 2
    assert calls == [0]
    first = result.history[0]
    assert first.fatal_error is not None and "scanner license expired" in first.fatal_error
    assert first.dispatch.fatal_task_id == "scan-security"
    assert first.verdict.passed


@pytest.mark.asyncio
async def test_executor_cancelling_itself_still_produces_a_result() -> None:
    async def work(task: Task) -> None:
        if task.id == "scan-style":
            raise asyncio.CancelledError()

    result = await ConvergenceLoop().run(_graph, CallableExecutor(work), lambda findings: None)

    assert result.done
    assert result.iterations_used == 1
    first = result.history[0]
    assert first.aggregation.failed_task_ids == ("scan-style",)
    assert first.dispatch.results["summarize"].ok
    assert not first.dispatch.cancelled


@pytest.mark.asyncio
async def test_cancellation_during_remediation_escalates_as_cancelled() -> None:
    project = FakeProject(_highs(5))
    token = CancellationToken()

    def remediate(findings: tuple[Finding, ...]) -> None:
        token.cancel("operator stop")

    result = await ConvergenceLoop().run(
        _graph, CallableExecutor(project.scan), remediate, cancel_token=token
    )

    assert result.escalation_reason is EscalationReason.CANCELLED
    assert result.iterations_used == 1


@pytest.mark.asyncio
async def test_cancellation_during_dispatch_escalates_even_without_findings() -> None:
    token = CancellationToken()

    async def work(task: Task) -> None:
        if task.id == "scan-style":
            token.cancel()
            await asyncio.sleep(5.0)

    result = await ConvergenceLoop().run(
        _graph, CallableExecutor(work), lambda findings: None, cancel_token=token
    )

    assert result.escalation_reason is EscalationReason.CANCELLED
    assert result.history[0].dispatch.cancelled
    assert "summarize" not in result.history[0].dispatch.launch_order


@pytest.mark.asyncio
async def test_graph_factory_is_called_each_iteration_and_errors_propagate() -> None:
    builds: list[int] = []

    def factory() -> TaskGraph:
        builds.append(len(builds))
        if len(builds) == 2:
            return TaskGraph((Task("a", dependencies=("b",)), Task("b", dependencies=("a",))))
        return _graph()

    project = FakeProject(_highs(3))

    with pytest.raises(CycleError):
        await ConvergenceLoop().run(factory, CallableExecutor(project.scan), project.fixer(1))

    assert builds == [0, 1]


@pytest.mark.asyncio
async def test_prebuilt_graph_is_reused() -> None:
    graph = _graph()
    project = FakeProject(_highs(1))

    result = await ConvergenceLoop().run(
        graph, CallableExecutor(project.scan), project.fixer(1), gate_thresholds=STRICT
    )

    assert result.done
    assert result.history[0].dispatch.total_tasks == len(graph)


@pytest.mark.asyncio
async def test_on_iteration_receives_each_record_in_order() -> None:
    project = FakeProject(_highs(3))
    seen: list[IterationRecord] = []

    result = await ConvergenceLoop().run(
        _graph,
        CallableExecutor(project.scan),
        project.fixer(1),
        gate_thresholds=STRICT,
        on_iteration=seen.append,
    )

    assert tuple(seen) == result.history
    assert [record.iteration for record in seen] == list(range(1, result.iterations_used + 1))


@pytest.mark.asyncio
async def test_from_config_applies_engine_settings() -> None:
    config = EngineConfig(max_iterations=1, max_high=0, reporting_threshold=95)
    project = FakeProject(_highs(2))

    result = await ConvergenceLoop.from_config(config).run(
        _graph, CallableExecutor(project.scan), project.fixer(1)
    )

    # confidence 90 findings are below the reporting threshold, so the gate passes
    assert result.done
    assert result.verdict.findings == ()
    assert len(result.findings) == 2


@pytest.mark.asyncio
async def test_escalation_is_logged_with_reason() -> None:
    project = FakeProject(_highs(3))

    with capture_logs() as logs:
        await ConvergenceLoop(max_iterations=1).run(
            _graph, CallableExecutor(project.scan), project.fixer(0), run_id="run-log"
        )

    escalations = [entry for entry in logs if entry["event"] == "convergence_escalated"]
    assert escalations == [
        {
            "event": "convergence_escalated",
            "log_level": "warning",
            "run_id": "run-log",
            "reason": "max_iterations",
            "iterations_used": 1,
        }
    ]


def test_result_serializes_to_json() -> None:
    project = FakeProject(_highs(3))

    result = ConvergenceLoop().run_sync(
        _graph, CallableExecutor(project.scan), project.fixer(0), run_id="run-json"
    )
    payload = json.loads(json.dumps(result.to_dict()))

    assert payload["run_id"] == "run-json"
    assert payload["outcome"] == "escalated"
    assert payload["escalation_reason"] == "no_progress"
    assert [entry["iteration"] for entry in payload["history"]] == [1, 2]


@pytest.mark.parametrize("value", [0, -2, True])
def test_invalid_iteration_budget_is_rejected(value: object) -> None:
    with pytest.raises(ValueError, match="max_iterations"):
        ConvergenceLoop(max_iterations=value)  # type: ignore[arg-type]
