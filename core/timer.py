"""
Countdown — a single repeating tick driving the practice phases.

At most one ticking task exists at a time. start() always cancels the
previous task first, and every start/cancel bumps a generation counter so a
loop that was superseded while its tick callback was running exits on its
own instead of being cancelled from inside itself.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

logger = structlog.get_logger()


class Countdown:

    def __init__(self, on_tick: Callable[[], Awaitable[None]], interval: float = 1.0):
        self._on_tick = on_tick
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def generation(self) -> int:
        return self._generation

    def start(self) -> None:
        self.cancel()
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(self._run(generation))
        logger.debug("countdown_started", generation=generation)

    def cancel(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.interval)
            if generation != self._generation:
                return
            try:
                await self._on_tick()
            except Exception as e:
                logger.error("countdown_tick_failed", error=str(e))
