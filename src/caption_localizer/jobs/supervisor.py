from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress

from caption_localizer.jobs.store import JobStore
from caption_localizer.utils.log import logger


class TimeoutSupervisor:
    """
    Periodically fails jobs past their deadline, whatever step they are in.

    `on_expired(job_id)` lets the owner cancel the in-flight pipeline task.
    `purge()` runs on the same tick to drop expired cache entries; it returns
    how many it removed.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        interval_s: float = 1.0,
        on_expired: Callable[[str], None] | None = None,
        purge: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.interval_s = max(0.01, float(interval_s))
        self.on_expired = on_expired
        self.purge = purge
        self._task: asyncio.Task[None] | None = None

    def sweep(self) -> list[str]:
        expired = self.store.expire()
        for jid in expired:
            if self.on_expired is None:
                continue
            try:
                self.on_expired(jid)
            except Exception as ex:
                logger.warning("timeout_callback_failed", job_id=jid, error=str(ex))
        if self.purge is not None:
            dropped = self.purge()
            if dropped:
                logger.debug("cache_purged", entries=dropped)
        return expired

    async def _loop(self) -> None:
        while True:
            self.sweep()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="job-timeout-supervisor")
            logger.info("timeout_supervisor_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("timeout_supervisor_stopped")
