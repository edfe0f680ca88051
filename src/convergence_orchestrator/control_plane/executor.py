"""
Executor contract for opaque units of work.

An executor receives one :class:`Task` and returns a :class:`TaskResult`. It must be
safe to call concurrently with different tasks, must return promptly once the
cancellation token fires, and must not outlive any timeout the task declares
(the dispatcher enforces the timeout regardless).

Raising :class:`FatalTaskError` marks the failure as non-recoverable and aborts the
current dispatch. Any other exception is recovered into a ``FAILURE`` result.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

from convergence_orchestrator.domain.models import Finding, Task, TaskResult, TaskStatus

if TYPE_CHECKING:
    from convergence_orchestrator.control_plane.dispatcher import DispatchReport
    from convergence_orchestrator.utils.concurrency import CancellationToken

TaskOutput: TypeAlias = TaskResult | Iterable[Finding] | None
TaskFunction: TypeAlias = Callable[[Task], TaskOutput | Awaitable[TaskOutput]]


class FatalTaskError(RuntimeError):
    """A task failure that aborts the remaining schedule of the current dispatch."""

    def __init__(
        self,
        task_id: str,
        message: str = "",
        *,
        status: TaskStatus = TaskStatus.FAILURE,
    ) -> None:
        self.task_id = task_id
        self.status = status
        self.partial: DispatchReport | None = None
        detail = message or f"task ended with non-recoverable status '{status.value}'"
        super().__init__(f"Fatal failure in task '{task_id}': {detail}")


@runtime_checkable
class Executor(Protocol):
    """Protocol implemented by concrete task executors."""

    async def execute(self, task: Task, cancel_token: CancellationToken) -> TaskResult:
        """Perform ``task`` and return its result."""


class CallableExecutor:
    """
    Adapt a plain function into an :class:`Executor`.

    The function receives the task and may return a ``TaskResult``, an iterable of
    findings (wrapped into a success result), or ``None`` (success, no findings).
    Coroutine functions are awaited on the event loop; plain functions run in a
    worker thread so they never block the dispatcher.
    """

    __slots__ = ("_function",)

    def __init__(self, function: TaskFunction) -> None:
        if not callable(function):
            raise TypeError("function must be callable")
        self._function = function

    async def execute(self, task: Task, cancel_token: CancellationToken) -> TaskResult:
        cancel_token.raise_if_cancelled()
        if inspect.iscoroutinefunction(self._function):
            output = await self._function(task)
        else:
            output = await asyncio.to_thread(self._function, task)
            if inspect.isawaitable(output):
                output = await output
        return coerce_task_output(task, output)


def coerce_task_output(task: Task, output: object) -> TaskResult:
    """Normalize the supported executor return shapes into a ``TaskResult``."""
    if output is None:
        return TaskResult.success(task.id)
    if isinstance(output, TaskResult):
        if output.task_id != task.id:
            raise ValueError(
                f"executor returned a result for '{output.task_id}' while running '{task.id}'"
            )
        return output
    if isinstance(output, Finding):
        return TaskResult.success(task.id, (output,))
    if isinstance(output, Iterable) and not isinstance(output, (str, bytes)):
        return TaskResult.success(task.id, tuple(output))
    raise TypeError(
        f"executor output for '{task.id}' must be TaskResult, findings, or None; "
        f"got {type(output).__name__}"
    )


__all__ = [
    "CallableExecutor",
    "Executor",
    "FatalTaskError",
    "TaskFunction",
    "TaskOutput",
    "coerce_task_output",
]
