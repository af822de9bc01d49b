"""Asyncio helpers for the hub's long-running background work."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def add_task_exception_logger(
    task: asyncio.Task[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Make sure a fire-and-forget task never loses its exception."""
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")
    label = context or task.get_name()

    def _done(done_task: asyncio.Task[Any]) -> None:
        if done_task.cancelled():
            return
        exc = done_task.exception()
        if exc is not None:
            task_logger.error("Unhandled exception in %s", label, exc_info=exc)

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    pending: Optional[set[asyncio.Task[Any]]] = None,
) -> asyncio.Task[Any]:
    """Create a task that won't lose exceptions, optionally tracking it."""
    task = asyncio.get_running_loop().create_task(coro)
    if context:
        task.set_name(context)

    add_task_exception_logger(task, logger=logger, context=context)

    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)

    return task


def create_periodic_task(
    interval: float,
    callback: Callable[[], Awaitable[Any]],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    pending: Optional[set[asyncio.Task[Any]]] = None,
) -> asyncio.Task[Any]:
    """Run ``callback`` every ``interval`` seconds until cancelled.

    A failing iteration is logged and the loop keeps going; only
    cancellation stops it.
    """
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")
    label = context or getattr(callback, "__name__", "periodic task")

    async def _runner() -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                task_logger.exception("Periodic task %s failed", label)

    return create_logged_task(_runner(), logger=task_logger, context=label, pending=pending)


async def cancel_tasks(tasks: set[asyncio.Task[Any]]) -> None:
    """Cancel every task in ``tasks`` and wait for them to unwind."""
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
