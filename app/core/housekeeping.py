"""
Periodic cleanup of rate-limit and suspicious-activity state.

Usage in FastAPI lifespan:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = RateLimitSweeper(store, tracker, interval_seconds=300)
        sweeper.start()

        yield

        await sweeper.stop()
"""

import asyncio
import logging
import time
from typing import Callable

from app.core.rate_limit_store import RateLimitStore
from app.core.suspicious_activity import SuspiciousActivityTracker

logger = logging.getLogger(__name__)


class RateLimitSweeper:
    """Background task that bounds the size of in-process limiter state."""

    def __init__(
        self,
        store: RateLimitStore,
        tracker: SuspiciousActivityTracker | None = None,
        interval_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run(), name="rate-limit-sweeper")
        logger.debug("Rate limit sweeper started (every %ss)", self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("Rate limit sweeper cancelled")
        self._task = None

    async def sweep_once(self) -> tuple[int, int]:
        """Run one pass. Returns (store entries removed, tracker entries removed)."""
        removed = await self.store.sweep(self.clock())
        purged = self.tracker.purge() if self.tracker is not None else 0
        if removed or purged:
            logger.info("Housekeeping removed %d rate limit entries, %d activity entries", removed, purged)
        return removed, purged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Rate limit sweep failed: %s", e, exc_info=True)
