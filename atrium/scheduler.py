"""Periodic background bucket-size refresh.

The scheduler is owned by the application lifespan: ``start()`` on
startup, ``stop()`` on shutdown. Tests drive ``run_once()`` directly.
"""

from __future__ import annotations

import asyncio
import logging

from .bucket_size import BucketSizeAggregator, ComputeStatus
from .flags import BACKGROUND_BUCKET_SIZE_FLAG, FlagResolver
from .session import SessionStore
from .store import StoreError

logger = logging.getLogger(__name__)


class BucketSizeScheduler:
    def __init__(
        self,
        sessions: SessionStore,
        aggregator: BucketSizeAggregator,
        flags: FlagResolver,
        interval_seconds: float = 3600,
    ) -> None:
        self._sessions = sessions
        self._aggregator = aggregator
        self._flags = flags
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Register the periodic task if the feature flag is on.

        Returns whether the task was started. With the flag off nothing is
        scheduled at all.
        """
        if self.running:
            return True
        if not await self._flags.is_enabled(BACKGROUND_BUCKET_SIZE_FLAG):
            logger.info("Background bucket size calculation is disabled")
            return False
        self._task = asyncio.create_task(self._loop(), name="bucket-size-calculation")
        logger.info(
            "Background bucket size scheduler registered (every %.0fs)",
            self.interval_seconds,
        )
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Bucket size scheduler task failed")

    async def run_once(self) -> dict[str, list[ComputeStatus]]:
        """One pass over every live session's tracked buckets.

        A failure for one bucket is logged and the pass continues.
        Returns the statuses collected per bucket.
        """
        statuses: dict[str, list[ComputeStatus]] = {}
        if not await self._flags.is_enabled(BACKGROUND_BUCKET_SIZE_FLAG):
            return statuses

        for token in await self._sessions.tokens():
            try:
                credentials = await self._sessions.peek(token)
                buckets = await self._sessions.tracked_buckets(token) if credentials else set()
            except StoreError as e:
                logger.warning("Skipping a session in bucket size pass: %s", e)
                continue
            for bucket in sorted(buckets):
                try:
                    status = await self._aggregator.compute_with_lock(bucket, credentials)
                except Exception:
                    logger.exception("Bucket size calculation for %s failed", bucket)
                    continue
                statuses.setdefault(bucket, []).append(status)
        return statuses
