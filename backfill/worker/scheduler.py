"""Two-state poll scheduler.

  IDLE      the last cycle claimed nothing → sleep ``idle_interval`` before
            polling again, so an empty backlog never busy-spins the database.
  DRAINING  the last cycle claimed rows → poll again immediately.

A cycle that raises puts the scheduler in ERROR_BACKOFF for
``error_interval`` seconds; the loop itself never exits on an error, only
when ``stop_event`` is set or the task is cancelled.

``sleep`` is injectable so tests can drive the cadence with a fake clock.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("backfill.worker.scheduler")


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"
    ERROR_BACKOFF = "error_backoff"


class PollScheduler:
    def __init__(
        self,
        idle_interval: float,
        error_interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_error: Callable[[], None] | None = None,
    ):
        self.idle_interval = idle_interval
        self.error_interval = error_interval
        self._sleep = sleep
        self._on_error = on_error
        self.state = SchedulerState.IDLE
        self.cycles = 0

    async def run(
        self,
        cycle: Callable[[], Awaitable[int]],
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Call ``cycle()`` until *stop_event* is set; it returns rows claimed."""
        stop = stop_event or asyncio.Event()
        while not stop.is_set():
            self.cycles += 1
            try:
                claimed = await cycle()
            except Exception:
                logger.exception("Unexpected error in worker loop; will retry")
                if self._on_error:
                    self._on_error()
                self.state = SchedulerState.ERROR_BACKOFF
                await self._sleep(self.error_interval)
                continue

            if claimed:
                self.state = SchedulerState.DRAINING
                # yield so signal handlers and other tasks get a turn
                await asyncio.sleep(0)
            else:
                self.state = SchedulerState.IDLE
                await self._sleep(self.idle_interval)
