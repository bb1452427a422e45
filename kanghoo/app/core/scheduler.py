"""
Periodic background tasks.

Runs a maintenance callback on a fixed interval inside the event loop.
Used by the cache manager (expired entry cleanup) and the tracking
service (stale location / finished trip sweep).
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Interval runner backed by an asyncio task.

    Failures of the callback are logged and the loop keeps going; a sweep
    is best effort and must never take the process down.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Union[Any, Awaitable[Any]]],
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Periodic task %s started (every %ss)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Periodic task %s stopped after %d runs", self.name, self.runs)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            finally:
                self.runs += 1
