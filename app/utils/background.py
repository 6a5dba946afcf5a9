"""Detached side-effect tasks.

Notifications and audit records run after the request's transaction commits.
They are never awaited by the caller and their failures are logged only.
"""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


async def _guarded(coro: Coroutine[Any, Any, Any], name: str) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Background task %s failed", name)


def spawn_detached(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    task = asyncio.create_task(_guarded(coro, name), name=name)
    # Keep a strong reference until the task finishes
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding detached tasks (shutdown, tests)."""
    if not _pending:
        return
    done, not_done = await asyncio.wait(set(_pending), timeout=timeout)
    for task in not_done:
        logger.warning("Background task %s still running after %.1fs", task.get_name(), timeout)
