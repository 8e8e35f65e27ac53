"""Detached background work whose failures are logged, never propagated."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            f"Detached task {task.get_name()} failed: {exc}",
            extra={"task": task.get_name(), "error": repr(exc)},
        )


def spawn_detached(coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
    """
    Schedule a coroutine without joining it into the caller's outcome.

    The caller never awaits the returned task; an exception raised by the
    coroutine is logged at WARNING and otherwise dropped.

    Args:
        coro: Coroutine to run
        name: Task name used in log records

    Returns:
        The scheduled task (for tests and shutdown hooks)
    """
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_detached() -> int:
    """Number of detached tasks still running."""
    return len(_background_tasks)


async def drain_detached(timeout: float = 5.0) -> None:
    """Wait for outstanding detached tasks, used at shutdown and in tests."""
    if not _background_tasks:
        return
    await asyncio.wait(list(_background_tasks), timeout=timeout)
