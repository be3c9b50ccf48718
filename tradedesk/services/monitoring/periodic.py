from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from tradedesk.infrastructure.logging.logging import get_logger

log = get_logger("periodic")


class PeriodicTask:
    """Runs `fn` immediately and then every `interval_sec` until stopped.

    A failing tick is logged and the loop keeps going.
    """

    def __init__(self, name: str, interval_sec: float, fn: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self._fn = fn
        self._task: Optional[asyncio.Task[None]] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            try:
                await self._fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("periodic_tick_failed", task=self.name, error=str(e))
            self.ticks += 1
            await asyncio.sleep(self.interval_sec)
