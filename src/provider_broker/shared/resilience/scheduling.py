"""Fixed-cadence background task owned by a component's lifecycle.

Used for memory reclamation sweeps (idle pool connections, expired
sessions).  The sweep is started explicitly and stopped by the owner's
``close()``; a sweep that raises is logged and the loop keeps running.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval_s`` seconds on the running event loop."""

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any] | Any],
        *,
        interval_s: float,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._name = name
        self._fn = fn
        self._interval = interval_s
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Schedule the loop; returns ``False`` when no event loop is running."""
        if self.running:
            return True
        try:
            self._task = asyncio.get_running_loop().create_task(
                self._loop(), name=f"periodic:{self._name}"
            )
        except RuntimeError:
            # No running loop (sync construction); the owner starts us later.
            return False
        logger.debug("periodic_task_started", task=self._name, interval_s=self._interval)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("periodic_task_stopped", task=self._name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                result = self._fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("periodic_task_failed", task=self._name, error=str(exc))
