"""
PeriodicTask — a cancellable asyncio loop that runs a coroutine on a fixed
interval.

Replaces bare timers for the watcher and the cache sync.  Exceptions raised
by a run are logged and the loop keeps its schedule; ``stop()`` cancels the
sleep between runs but lets an in-flight run finish.  Tests call
``run_once()`` to drive a tick without waiting on the clock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        initial_delay: float = 0.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.initial_delay = initial_delay
        self._func = func
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop.  No-op if already running."""
        if self.is_running:
            logger.warning("Periodic task %s is already running", self.name)
            return
        stopping = asyncio.Event()
        self._stopping = stopping
        self._task = asyncio.create_task(self._loop(stopping), name=f"periodic:{self.name}")
        logger.info(
            "Started periodic task %s (interval: %.1fs, first run in %.1fs)",
            self.name,
            self.interval,
            self.initial_delay,
        )

    async def stop(self) -> None:
        task, stopping = self._task, self._stopping
        if task is None or task.done():
            return
        if stopping is not None:
            stopping.set()
        try:
            await task
        finally:
            self._task = None
        logger.info("Stopped periodic task %s", self.name)

    async def run_once(self) -> Any:
        """Run the wrapped coroutine now.  Errors are logged, not raised."""
        self.runs += 1
        try:
            return await self._func()
        except Exception:
            logger.exception("Periodic task %s failed; next run stays scheduled", self.name)
            return None

    @staticmethod
    async def _sleep(stopping: asyncio.Event, seconds: float) -> bool:
        """Sleep unless stopped first.  Returns True when a stop was requested."""
        if seconds <= 0:
            return stopping.is_set()
        try:
            await asyncio.wait_for(stopping.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self, stopping: asyncio.Event) -> None:
        if await self._sleep(stopping, self.initial_delay):
            return
        while True:
            await self.run_once()
            if await self._sleep(stopping, self.interval):
                return
