from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callable now and then every *interval* seconds until stopped.

    A failing run is logged and the loop keeps going.
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], Awaitable[object]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        log.info("Started periodic task %s (every %ss)", self.name, self.interval)

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Stopped periodic task %s", self.name)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self._fn()
            except Exception:
                log.exception("Periodic task %s failed", self.name)
            await asyncio.sleep(self.interval)
