"""Periodic background sweeps for guard state.

Each guard that keeps expiring records gets its own sweeper with its own
cadence; there is no shared scheduler.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union

from xpoll.app.core.logging import get_logger

logger = get_logger(__name__)

SweepFunction = Callable[[], Union[int, Awaitable[int]]]


class PeriodicSweeper:
    """Runs a sweep function on a fixed interval in a background task.

    Usage:
        sweeper = PeriodicSweeper("csrf", 3600, csrf_guard.sweep)
        await sweeper.start()
        ...
        await sweeper.stop()

    A failing sweep is logged and the loop carries on; sweeps are best
    effort and never block request handling.
    """

    def __init__(self, name: str, interval_seconds: float, sweep_fn: SweepFunction):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._sweep_fn = sweep_fn
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.runs = 0
        self.last_removed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run a single sweep now.

        Returns:
            Number of records removed, or 0 if the sweep failed.
        """
        try:
            result = self._sweep_fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Sweep '{self.name}' failed: {e}")
            return 0

        removed = int(result or 0)
        self.runs += 1
        self.last_removed = removed
        if removed:
            logger.info(f"Sweep '{self.name}' removed {removed} expired records")
        else:
            logger.debug(f"Sweep '{self.name}' found nothing to remove")
        return removed

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug(f"Sweeper '{self.name}' already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started sweeper '{self.name}' (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the background sweep task, waiting briefly for it to exit."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"Sweeper '{self.name}' did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped sweeper '{self.name}'")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            # Wait first: the stores are empty at startup.
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.run_once()
