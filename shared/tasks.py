"""
Best-effort background tasks.

Side effects that must never delay or fail a response (usage records,
last-used touches, cache writes, violation logging) are spawned through a
``TaskSupervisor``. Failures are logged and counted, never re-raised.
"""

import asyncio
from typing import Awaitable, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class TaskSupervisor:
    """Tracks detached tasks so failures stay observable."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("api.tasks")
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return

        exc = task.exception()
        if exc is None:
            return

        self.failures += 1
        self.logger.warning(
            "Background task failed",
            task=task.get_name(),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if self.metrics:
            self.metrics.increment_counter("background_task_failures_total", task=task.get_name())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks (shutdown and tests)."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                self.logger.warning("Background tasks still running after drain timeout", count=len(not_done))
                for task in not_done:
                    task.cancel()
                return
