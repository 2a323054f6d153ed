"""
Background Tasks
Periodic storage stats refresh
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class StatsRefreshTask:
    """
    Background stats refresher

    Calls `refresh` once per interval until stopped. A failed round is
    logged and the loop keeps going.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[object]],
        interval_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.refresh = refresh
        self.interval_seconds = interval_seconds
        self.sleep = sleep
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start background refresh"""
        if self.running:
            logger.warning("Stats refresh already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run_refresh_loop())
        logger.info("Stats refresh started")

    async def stop(self):
        """Stop background refresh"""
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

        logger.info("Stats refresh stopped")

    async def _run_refresh_loop(self):
        while self.running:
            await self.sleep(self.interval_seconds)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Error in stats refresh loop: {e}")
