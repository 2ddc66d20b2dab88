"""Fire-and-forget helpers for observability side effects.

Tracking and metrics must never block or fail the generation flow.  Calls
are scheduled as background tasks whose exceptions are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_pending: Set[asyncio.Task] = set()


def _log_task_outcome(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Best-effort task %s failed: %s", task.get_name(), exc)


def fire_and_forget(coro: Coroutine[Any, Any, Any], name: str) -> Optional[asyncio.Task]:
    """Schedule ``coro`` without awaiting it.

    Returns the task, or None when no event loop is running (the coroutine
    is closed and the call is skipped).
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        logger.debug("No running loop; skipped best-effort task %s", name)
        return None
    task = loop.create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_log_task_outcome)
    return task


async def drain_pending(timeout: Optional[float] = None) -> None:
    """Wait for outstanding best-effort tasks (used on shutdown and in tests)."""
    if not _pending:
        return
    await asyncio.wait(set(_pending), timeout=timeout)
