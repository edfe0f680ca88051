"""Async concurrency primitives shared by the dispatcher and convergence loop."""

from __future__ import annotations

import asyncio
import inspect
import threading
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")

DEFAULT_CANCEL_REASON = "cancelled"


class RunCancelledError(asyncio.CancelledError):
    """Raised when a :class:`CancellationToken` has been triggered."""

    def __init__(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    """
    Cooperative cancellation token.

    ``cancel()`` may be called from any thread; coroutines blocked in ``wait()``
    are woken on their own event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            waiters = list(self._waiters)

        try:
            current_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        for loop, event in waiters:
            if loop.is_closed():
                continue
            if loop is current_loop:
                event.set()
            else:
                loop.call_soon_threadsafe(event.set)

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        entry = (loop, event)
        with self._lock:
            if self._cancelled:
                return
            self._waiters.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    def raise_if_cancelled(self) -> None:
        with self._lock:
            cancelled = self._cancelled
            reason = self._reason or DEFAULT_CANCEL_REASON
        if cancelled:
            raise RunCancelledError(reason)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> T:
    """
    Await ``coroutine`` bounded by ``timeout_seconds`` and ``cancel_token``.

    ``None`` disables the timeout. Raises ``TimeoutError`` on expiry and
    :class:`RunCancelledError` when the token fires first; in both cases the
    underlying task is cancelled and awaited before returning.
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        token.raise_if_cancelled()

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return await task

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

        if cancel_wait_task in done and token.is_cancelled:
            token.raise_if_cancelled()
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects rejected before scheduling are closed so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "RunCancelledError",
    "run_with_timeout",
]
