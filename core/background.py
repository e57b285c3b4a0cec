"""
Supervised background work for a single invocation.

Stages submit follow-up work (sitemap regeneration, search engine pings)
that must not delay the stage result. Whoever invoked the stage drains the
supervisor once the result has been returned, so every task still runs to
completion and its failure is logged.
"""

import asyncio
import logging
from typing import Any, Coroutine, List, Tuple

logger = logging.getLogger(__name__)


class BackgroundTaskSupervisor:
    """Tracks detached tasks submitted during one stage invocation."""

    def __init__(self):
        self._tasks: List[Tuple[str, asyncio.Task]] = []

    def submit(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
        """Schedule `coro` immediately without awaiting it."""
        task = asyncio.ensure_future(coro)
        self._tasks.append((description, task))
        logger.debug(f"Background task submitted: {description}")
        return task

    @property
    def pending(self) -> int:
        return sum(1 for _, task in self._tasks if not task.done())

    async def drain(self, timeout: float = None) -> dict:
        """
        Wait for all submitted tasks and log each outcome.

        Returns counts of succeeded and failed tasks. Tasks still running
        after `timeout` are cancelled and counted as failed.
        """
        if not self._tasks:
            return {"succeeded": 0, "failed": 0}

        tasks = [task for _, task in self._tasks]
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()

        succeeded = 0
        failed = 0
        for description, task in self._tasks:
            if task in not_done or task.cancelled():
                failed += 1
                logger.error(f"Background task '{description}' did not finish in time and was cancelled")
                continue
            error = task.exception()
            if error is not None:
                failed += 1
                logger.error(
                    f"Background task '{description}' failed: {error}",
                    extra={"error_type": type(error).__name__}
                )
            else:
                succeeded += 1
                logger.info(f"Background task '{description}' completed")

        self._tasks.clear()
        return {"succeeded": succeeded, "failed": failed}
