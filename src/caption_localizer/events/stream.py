"""
Streaming view of a job: a producer task re-projects the job on a fixed tick and
puts frames on a bounded queue. HTTP framing happens in the web layer.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from caption_localizer.config import get_settings
from caption_localizer.events.projector import Event, EventQuery, filter_events, project
from caption_localizer.jobs.models import Job, JobStatus, now_utc, parse_ts
from caption_localizer.jobs.store import JobStore
from caption_localizer.utils.log import logger

QUEUE_SIZE = 64


@dataclass(frozen=True, slots=True)
class StreamFrame:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> dict[str, str]:
        return {"event": self.event, "data": json.dumps(self.data, default=str)}


@dataclass(frozen=True, slots=True)
class StreamConfig:
    poll_s: float = 2.0
    idle_timeout_s: float = 300.0
    close_grace_s: float = 2.0

    @classmethod
    def from_settings(cls) -> StreamConfig:
        s = get_settings()
        return cls(
            poll_s=max(0.01, float(s.events_poll_sec)),
            idle_timeout_s=max(0.0, float(s.events_stream_timeout_sec)),
            close_grace_s=max(0.0, float(s.events_close_grace_sec)),
        )


def _snapshot(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "phase": job.phase.value,
        "percentage": job.progress.percentage,
        "message": job.progress.message,
        "timestamp": now_utc(),
    }


def terminal_frame(job: Job) -> StreamFrame:
    base = {"job_id": job.id, "status": job.status.value, "completed_at": job.completed_at}
    if job.status == JobStatus.done:
        return StreamFrame(
            "job_completed",
            {**base, "url": job.output.url, "download_url": job.output.download_url},
        )
    if job.status == JobStatus.cancelled:
        return StreamFrame("job_cancelled", {**base, "reason": job.failure_reason})
    if job.failure_reason == "timeout":
        return StreamFrame(
            "timeout",
            {**base, "scope": "job", "reason": "timeout", "error": job.error},
        )
    return StreamFrame(
        "job_failed",
        {
            **base,
            "error": job.error,
            "reason": job.failure_reason,
            "error_detail": dict(job.error_detail or {}),
        },
    )


class JobEventStream:
    """
    One independent reader of one job. Several streams on the same job never
    share state and only ever read snapshots from the store.
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        query: EventQuery | None = None,
        *,
        config: StreamConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.job_id = job_id
        self.query = query or EventQuery()
        self.config = config or StreamConfig.from_settings()
        self._clock = clock
        self._sleep = sleep
        self.queue: asyncio.Queue[StreamFrame | None] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._task: asyncio.Task[None] | None = None

    def _new_events(self, job: Job, last_ts: datetime | None) -> list[Event]:
        events = filter_events(project(job), self.query)
        if last_ts is not None:
            events = [e for e in events if parse_ts(e.timestamp) > last_ts]
        events.sort(key=Event.sort_key)
        return events

    async def _put(self, frame: StreamFrame) -> None:
        await self.queue.put(frame)

    async def produce(self) -> None:
        try:
            await self._produce()
        except asyncio.CancelledError:
            with suppress(asyncio.QueueFull):
                self.queue.put_nowait(None)
            raise
        except Exception as ex:
            logger.error("event_stream_failed", job_id=self.job_id, error=str(ex), exc_info=True)
            await self._put(StreamFrame("error", {"job_id": self.job_id, "error": str(ex)}))
        await self.queue.put(None)

    async def _produce(self) -> None:
        job = self.store.find(self.job_id)
        if job is None:
            await self._put(StreamFrame("job_deleted", {"job_id": self.job_id}))
            return
        await self._put(StreamFrame("connected", _snapshot(job)))
        started = self._clock()
        last_status, last_phase = job.status, job.phase
        last_pct = job.progress.percentage
        last_ts: datetime | None = None
        first = True

        while True:
            job = self.store.find(self.job_id)
            if job is None:
                await self._put(StreamFrame("job_deleted", {"job_id": self.job_id}))
                return

            if (job.status, job.phase) != (last_status, last_phase):
                await self._put(
                    StreamFrame(
                        "status_changed",
                        {
                            "from": last_status.value,
                            "to": job.status.value,
                            "phase": job.phase.value,
                            "message": job.progress.message,
                        },
                    )
                )
                last_status, last_phase = job.status, job.phase
            if job.progress.percentage != last_pct:
                await self._put(
                    StreamFrame(
                        "job_progress",
                        {
                            "percentage": job.progress.percentage,
                            "phase_progress": job.progress.phase_progress,
                            "message": job.progress.message,
                        },
                    )
                )
                last_pct = job.progress.percentage

            new = self._new_events(job, last_ts)
            if first and len(new) > self.query.limit:
                new = new[-self.query.limit :]
            if new:
                await self._put(
                    StreamFrame(
                        "events_update",
                        {"events": [e.to_dict() for e in new], "count": len(new)},
                    )
                )
                last_ts = max(parse_ts(e.timestamp) for e in new)
            elif first:
                stamps = [parse_ts(e.timestamp) for e in project(job)]
                last_ts = max(stamps) if stamps else None

            if not first:
                await self._put(StreamFrame("heartbeat", _snapshot(job)))
            first = False

            if job.is_terminal:
                await self._put(terminal_frame(job))
                await self._sleep(self.config.close_grace_s)
                logger.info("event_stream_closed", job_id=self.job_id, status=job.status.value)
                return

            if self.config.idle_timeout_s and self._clock() - started >= self.config.idle_timeout_s:
                await self._put(
                    StreamFrame(
                        "timeout",
                        {
                            "job_id": self.job_id,
                            "scope": "stream",
                            "status": job.status.value,
                            "timeout_s": self.config.idle_timeout_s,
                        },
                    )
                )
                logger.info("event_stream_idle_timeout", job_id=self.job_id)
                return

            await self._sleep(self.config.poll_s)

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.produce(), name=f"events-{self.job_id}")
        return self._task

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def frames(self) -> AsyncIterator[StreamFrame]:
        self.start()
        try:
            while True:
                frame = await self.queue.get()
                if frame is None:
                    return
                yield frame
        finally:
            await self.close()
