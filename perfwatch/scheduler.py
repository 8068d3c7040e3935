"""
Periodic asyncio task used for collection, analysis and cleanup ticks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run an async callback at a fixed interval.

    The loop awaits each run before scheduling the next one, so a tick never
    overlaps itself. When a run overshoots one or more deadlines those ticks
    are skipped (and counted) instead of being queued.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.run_immediately = run_immediately

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.running:
            logger.warning(f"Periodic task '{self.name}' already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug(f"Periodic task '{self.name}' started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to unwind."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(
            f"Periodic task '{self.name}' stopped after {self.runs} runs "
            f"({self.failures} failed, {self.skipped} skipped)"
        )

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time() if self.run_immediately else loop.time() + self.interval_seconds

        while True:
            delay = next_run - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

            try:
                self.runs += 1
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.error(f"Periodic task '{self.name}' failed: {e}", exc_info=True)

            next_run += self.interval_seconds
            now = loop.time()
            if now > next_run:
                missed = int((now - next_run) // self.interval_seconds) + 1
                self.skipped += missed
                next_run += missed * self.interval_seconds
                logger.warning(
                    f"Periodic task '{self.name}' behind schedule, skipped {missed} tick(s)"
                )
