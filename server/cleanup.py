"""
Background sweeper that deletes expired messages from the store.

Deletion is best effort: a message can still be returned by history for up
to one interval after it expires.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .database import Database
from .expiry import utcnow


logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


class CleanupSweeper:
    """Periodically prunes messages whose expires_at has passed"""

    def __init__(self, db: Database, interval: float = DEFAULT_SWEEP_INTERVAL,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """
        Run a single sweep.

        Returns:
            Number of pruned messages (0 if the cycle failed)
        """
        try:
            count = await self.db.delete_expired_messages(now or self.clock())
        except Exception:
            logger.exception("Error during cleanup cycle")
            return 0

        if count > 0:
            logger.info("Pruned %d expired records", count)
        return count

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self):
        """Start the periodic task on the running event loop"""
        if self.running:
            return
        logger.info("Cleanup task active (interval %ss)", self.interval)
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
