"""
Dependency-aware fan-out/fan-in dispatcher.

The dispatcher walks a finalized :class:`TaskGraph`, launches every ready task via
an :class:`Executor` while keeping at most ``concurrency_limit`` tasks in flight,
and records results as they complete (first finished, first consumed).

The ``completed``/``pending`` bookkeeping is owned by the dispatching coroutine
alone; worker coroutines only return values, so no lock is needed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from convergence_orchestrator.constants import (
    DEFAULT_CONCURRENCY_LIMIT,
    INCOMPLETE_ANALYSIS_CONFIDENCE,
    INCOMPLETE_ANALYSIS_PREFIX,
)
from convergence_orchestrator.control_plane.executor import FatalTaskError, coerce_task_output
from convergence_orchestrator.domain.models import (
    Finding,
    JSONValue,
    Severity,
    Task,
    TaskResult,
    TaskStatus,
    coerce_enum,
)
from convergence_orchestrator.observability.logging import correlation_scope
from convergence_orchestrator.utils.concurrency import CancellationToken, run_with_timeout

if TYPE_CHECKING:
    from convergence_orchestrator.control_plane.executor import Executor
    from convergence_orchestrator.planning.task_graph import TaskGraph

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class DispatchReport:
    """Everything one dispatcher run produced, including partial runs."""

    results: Mapping[str, TaskResult]
    launch_order: tuple[str, ...]
    completion_order: tuple[str, ...]
    total_tasks: int
    interrupted_task_ids: tuple[str, ...] = ()
    cancelled: bool = False
    cancel_reason: str | None = None
    fatal_task_id: str | None = None
    elapsed_seconds: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "results", MappingProxyType(dict(self.results)))

    @property
    def completed_task_ids(self) -> frozenset[str]:
        return frozenset(self.results)

    @property
    def is_complete(self) -> bool:
        return len(self.results) == self.total_tasks

    @property
    def aborted(self) -> bool:
        return self.fatal_task_id is not None

    @property
    def incomplete_task_ids(self) -> tuple[str, ...]:
        """Tasks that timed out."""
        return tuple(
            sorted(
                task_id
                for task_id, result in self.results.items()
                if result.status is TaskStatus.TIMEOUT
            )
        )

    @property
    def failed_task_ids(self) -> tuple[str, ...]:
        return tuple(
            sorted(
                task_id
                for task_id, result in self.results.items()
                if result.status is TaskStatus.FAILURE
            )
        )

    def ordered_results(self) -> tuple[TaskResult, ...]:
        """Results in completion order."""
        return tuple(self.results[task_id] for task_id in self.completion_order)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total_tasks": self.total_tasks,
            "launch_order": list(self.launch_order),
            "completion_order": list(self.completion_order),
            "interrupted_task_ids": list(self.interrupted_task_ids),
            "incomplete_task_ids": list(self.incomplete_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "fatal_task_id": self.fatal_task_id,
            "elapsed_seconds": self.elapsed_seconds,
            "results": [self.results[task_id].to_dict() for task_id in self.completion_order],
        }


class Dispatcher:
    """Launch ready tasks with bounded concurrency and collect their results."""

    __slots__ = (
        "_concurrency_limit",
        "_default_timeout_seconds",
        "_fatal_statuses",
        "_logger",
        "_clock",
    )

    def __init__(
        self,
        *,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        default_timeout_seconds: float | None = None,
        fatal_statuses: Iterable[TaskStatus | str] = (),
        logger: Any | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._concurrency_limit = _validate_concurrency_limit(concurrency_limit)
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self._default_timeout_seconds = default_timeout_seconds
        self._fatal_statuses = frozenset(
            coerce_enum(TaskStatus, status, path="fatal_statuses") for status in fatal_statuses
        )
        if TaskStatus.SUCCESS in self._fatal_statuses:
            raise ValueError("fatal_statuses must not include 'success'")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._clock = clock

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    @property
    def fatal_statuses(self) -> frozenset[TaskStatus]:
        return self._fatal_statuses

    async def run(
        self,
        graph: TaskGraph,
        executor: Executor,
        *,
        concurrency_limit: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DispatchReport:
        """
        Execute every task of ``graph`` respecting dependencies.

        Raises :class:`FatalTaskError` (with ``partial`` set to the report collected
        so far) when a task fails non-recoverably. Cancellation via ``cancel_token``
        stops new launches and returns a report with ``cancelled=True``.
        """
        limit = (
            self._concurrency_limit
            if concurrency_limit is None
            else _validate_concurrency_limit(concurrency_limit)
        )
        token = cancel_token or CancellationToken()
        graph.finalize()
        on_critical_path = frozenset(graph.critical_path())

        started_at = self._clock()
        completed: set[str] = set()
        pending: dict[asyncio.Task[TaskResult | None], str] = {}
        results: dict[str, TaskResult] = {}
        launch_order: list[str] = []
        completion_order: list[str] = []
        interrupted: list[str] = []
        cancel_waiter = asyncio.create_task(token.wait())

        def build_report(*, fatal_task_id: str | None = None) -> DispatchReport:
            return DispatchReport(
                results=results,
                launch_order=tuple(launch_order),
                completion_order=tuple(completion_order),
                total_tasks=len(graph),
                interrupted_task_ids=tuple(sorted(interrupted)),
                cancelled=token.is_cancelled,
                cancel_reason=token.reason,
                fatal_task_id=fatal_task_id,
                elapsed_seconds=max(0.0, self._clock() - started_at),
            )

        try:
            while True:
                if not token.is_cancelled:
                    in_flight = set(pending.values())
                    ready = [
                        task for task in graph.ready_tasks(completed) if task.id not in in_flight
                    ]
                    ready.sort(key=lambda task: _launch_key(task, on_critical_path))
                    budget = limit - len(pending)
                    for task in ready[: max(0, budget)]:
                        worker = asyncio.create_task(self._run_one(task, executor, token))
                        pending[worker] = task.id
                        launch_order.append(task.id)
                        self._logger.debug(
                            "task_launched",
                            task_id=task.id,
                            in_flight=len(pending),
                            concurrency_limit=limit,
                        )

                if not pending:
                    break

                wait_set: set[asyncio.Future[Any]] = set(pending)
                if not token.is_cancelled:
                    wait_set.add(cancel_waiter)
                done, _ = await asyncio.wait(wait_set, return_when=asyncio.FIRST_COMPLETED)

                finished = sorted(
                    (worker for worker in done if worker in pending),
                    key=lambda worker: pending[worker],
                )
                # Every worker that finished in this wakeup is recorded before an
                # abort, so siblings of a fatal task keep their results.
                fatal: tuple[str, FatalTaskError] | None = None
                for worker in finished:
                    task_id = pending.pop(worker)
                    try:
                        result = worker.result()
                    except FatalTaskError as exc:
                        results[task_id] = TaskResult.failure(task_id, str(exc))
                        completion_order.append(task_id)
                        fatal = fatal or (task_id, exc)
                        continue

                    if result is None:
                        interrupted.append(task_id)
                        continue

                    completed.add(task_id)
                    results[task_id] = result
                    completion_order.append(task_id)
                    self._logger.debug(
                        "task_completed",
                        task_id=task_id,
                        status=result.status.value,
                        finding_count=len(result.findings),
                    )
                    if result.status in self._fatal_statuses and fatal is None:
                        fatal = (
                            task_id,
                            FatalTaskError(task_id, result.error or "", status=result.status),
                        )

                if fatal is not None:
                    fatal_task_id, error = fatal
                    await self._abort(pending)
                    error.partial = build_report(fatal_task_id=fatal_task_id)
                    self._logger.warning(
                        "dispatch_aborted",
                        task_id=fatal_task_id,
                        status=error.status.value,
                        reason=str(error),
                    )
                    raise error
        finally:
            cancel_waiter.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_waiter
            if pending:
                await self._abort(pending)

        report = build_report()
        if report.cancelled:
            self._logger.info(
                "dispatch_cancelled",
                reason=report.cancel_reason,
                completed=len(report.results),
                total=report.total_tasks,
            )
        else:
            self._logger.info(
                "dispatch_finished",
                completed=len(report.results),
                total=report.total_tasks,
                timeouts=len(report.incomplete_task_ids),
                failures=len(report.failed_task_ids),
            )
        return report

    def run_sync(
        self,
        graph: TaskGraph,
        executor: Executor,
        *,
        concurrency_limit: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DispatchReport:
        """Blocking wrapper around :meth:`run` for callers without an event loop."""
        return asyncio.run(
            self.run(
                graph,
                executor,
                concurrency_limit=concurrency_limit,
                cancel_token=cancel_token,
            )
        )

    async def _run_one(
        self,
        task: Task,
        executor: Executor,
        token: CancellationToken,
    ) -> TaskResult | None:
        timeout = (
            task.timeout_seconds
            if task.timeout_seconds is not None
            else self._default_timeout_seconds
        )
        started_at = self._clock()
        try:
            with correlation_scope(task_id=task.id):
                output = await run_with_timeout(executor.execute(task, token), timeout, token)
            result = coerce_task_output(task, output)
        except FatalTaskError:
            raise
        except TimeoutError:
            result = TaskResult.timeout(task.id, timeout_seconds=timeout)
        except asyncio.CancelledError as exc:
            if token.is_cancelled:
                return None
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The executor cancelled itself; the dispatcher was not asked to stop.
            result = self._recovered_failure(task, exc)
        except Exception as exc:
            result = self._recovered_failure(task, exc)

        elapsed = max(0.0, self._clock() - started_at)
        return replace(result, metadata={**result.metadata, "elapsed_seconds": elapsed})

    def _recovered_failure(self, task: Task, exc: BaseException) -> TaskResult:
        result = TaskResult.failure(
            task.id,
            f"{type(exc).__name__}: {exc}",
            (incomplete_analysis_finding(task.id, exc),),
        )
        self._logger.warning("task_failed", task_id=task.id, error=result.error)
        return result

    async def _abort(self, pending: dict[asyncio.Task[TaskResult | None], str]) -> None:
        for worker in pending:
            worker.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        pending.clear()


def incomplete_analysis_finding(task_id: str, error: BaseException | str) -> Finding:
    """Low-confidence finding recording that ``task_id`` could not finish its analysis."""
    detail = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
    return Finding(
        description=f"{INCOMPLETE_ANALYSIS_PREFIX}: {detail}",
        severity=Severity.LOW,
        confidence=INCOMPLETE_ANALYSIS_CONFIDENCE,
        location=f"task:{task_id}",
        fingerprint=f"incomplete:{task_id}",
    )


def _launch_key(task: Task, on_critical_path: frozenset[str]) -> tuple[float, int, str]:
    return (-task.priority, 0 if task.id in on_critical_path else 1, task.id)


def _validate_concurrency_limit(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("concurrency_limit must be an integer")
    if value <= 0:
        raise ValueError("concurrency_limit must be > 0")
    return value


__all__ = [
    "DispatchReport",
    "Dispatcher",
    "FatalTaskError",
    "incomplete_analysis_finding",
]
