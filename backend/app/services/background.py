"""
Fire-and-forget side effects (key touch, usage writes).

Tasks are kept in a set so they are not garbage-collected mid-flight and
so shutdown can wait for them. A task that fails is logged here; it never
reaches the request that spawned it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; cancel whatever is left after `timeout`."""
        while self._tasks:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                await asyncio.sleep(0)  # let done-callbacks run
                continue
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                for task in not_done:
                    task.cancel()
                logger.warning("Cancelled %d background tasks on shutdown", len(not_done))
                return
