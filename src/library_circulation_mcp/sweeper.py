"""
Background overdue sweep.

Listings refresh loan status on their own, so the sweep is optional. It keeps
stored statuses and fines current for readers that go straight to the
database, and runs on the server's event loop with each sweep pushed to a
worker thread.
"""

import asyncio
import contextlib
import logging

from .circulation import CirculationService

logger = logging.getLogger(__name__)


class OverdueSweeper:
    """Periodically refreshes every open loan that is past due."""

    def __init__(self, service: CirculationService, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("Sweep interval must be positive")
        self.service = service
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="overdue-sweeper")
        logger.info("Overdue sweeper started (every %s seconds)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Overdue sweeper stopped after %d sweep(s)", self.sweeps)

    async def sweep_once(self) -> int:
        changed = await asyncio.to_thread(self.service.sweep_overdue)
        self.sweeps += 1
        return changed

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                # One bad sweep must not stop the next one
                logger.exception("Overdue sweep failed")
            await asyncio.sleep(self.interval_seconds)
