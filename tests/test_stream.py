from __future__ import annotations

import asyncio
from datetime import timedelta

from caption_localizer.errors import ProviderTimeout
from caption_localizer.events.projector import EventQuery
from caption_localizer.events.stream import JobEventStream, StreamConfig, StreamFrame, terminal_frame
from caption_localizer.jobs.models import JobInput, JobStatus
from caption_localizer.jobs.store import JobStore

FAST = StreamConfig(poll_s=0.01, idle_timeout_s=30.0, close_grace_s=0.0)


def _store_and_job() -> tuple[JobStore, str]:
    store = JobStore(default_timeout_s=600.0)
    jid = store.create(JobInput(target_language="vi", source_ref="/tmp/a.mp4")).id
    return store, jid


async def _collect(stream: JobEventStream) -> list[StreamFrame]:
    return [f async for f in stream.frames()]


def _names(frames: list[StreamFrame]) -> list[str]:
    return [f.event for f in frames]


def test_finished_job_streams_backlog_then_terminal_frame() -> None:
    store, jid = _store_and_job()
    for status in (JobStatus.downloading, JobStatus.probing, JobStatus.transcribing,
                   JobStatus.rendering, JobStatus.uploading):
        store.advance(jid, status)
    store.set_output(jid, url="https://cdn.test/out.mp4")
    store.advance(jid, JobStatus.done)

    frames = asyncio.run(_collect(JobEventStream(store, jid, EventQuery.build(), config=FAST)))
    assert _names(frames) == ["connected", "events_update", "job_completed"]
    assert frames[0].data["status"] == "done"
    backlog = frames[1].data["events"]
    assert backlog[0]["type"] == "job_created"
    assert frames[-1].data["url"] == "https://cdn.test/out.mp4"


def test_live_updates_until_completion() -> None:
    store, jid = _store_and_job()

    async def _drive() -> None:
        await asyncio.sleep(0.05)
        store.advance(jid, JobStatus.downloading)
        store.record_progress(jid, 7.0, "Fetching")
        await asyncio.sleep(0.05)
        store.cancel(jid, reason="cancelled_by_client")

    async def _go() -> list[StreamFrame]:
        stream = JobEventStream(store, jid, EventQuery.build(), config=FAST)
        frames, _ = await asyncio.gather(_collect(stream), _drive())
        return frames

    frames = asyncio.run(_go())
    names = _names(frames)
    assert names[0] == "connected"
    assert "status_changed" in names
    assert "job_progress" in names
    assert "heartbeat" in names
    assert names[-1] == "job_cancelled"
    assert frames[-1].data["reason"] == "cancelled_by_client"

    # each event id is delivered once across updates
    ids = [e["id"] for f in frames if f.event == "events_update" for e in f.data["events"]]
    assert len(ids) == len(set(ids))


def test_job_timeout_is_reported_as_timeout_frame() -> None:
    store, jid = _store_and_job()
    store.advance(jid, JobStatus.downloading)
    assert store.expire(store.now() + timedelta(hours=1)) == [jid]

    frames = asyncio.run(_collect(JobEventStream(store, jid, config=FAST)))
    assert frames[-1].event == "timeout"
    assert frames[-1].data["scope"] == "job"
    assert frames[-1].data["status"] == "failed"


def test_missing_job_yields_job_deleted() -> None:
    store, _ = _store_and_job()
    frames = asyncio.run(_collect(JobEventStream(store, "nope", config=FAST)))
    assert _names(frames) == ["job_deleted"]


def test_job_deleted_mid_stream() -> None:
    store, jid = _store_and_job()

    async def _drive() -> None:
        await asyncio.sleep(0.05)
        store.delete(jid)

    async def _go() -> list[StreamFrame]:
        frames, _ = await asyncio.gather(_collect(JobEventStream(store, jid, config=FAST)), _drive())
        return frames

    frames = asyncio.run(_go())
    assert frames[0].event == "connected"
    assert frames[-1].event == "job_deleted"


def test_idle_stream_times_out() -> None:
    store, jid = _store_and_job()
    ticks = iter(range(0, 1000, 10))
    cfg = StreamConfig(poll_s=0.0, idle_timeout_s=15.0, close_grace_s=0.0)

    frames = asyncio.run(_collect(JobEventStream(store, jid, config=cfg, clock=lambda: next(ticks))))
    assert frames[-1].event == "timeout"
    assert frames[-1].data["scope"] == "stream"
    assert frames[-1].data["status"] == "queued"
    assert store.get(jid).status == JobStatus.queued


def test_streams_are_independent() -> None:
    store, jid = _store_and_job()
    store.advance(jid, JobStatus.downloading)
    store.fail(jid, ProviderTimeout("slow"))

    async def _go():
        a = JobEventStream(store, jid, config=FAST)
        b = JobEventStream(store, jid, EventQuery.build(type="status_changed"), config=FAST)
        return await asyncio.gather(_collect(a), _collect(b))

    fa, fb = asyncio.run(_go())
    assert fa[-1].event == fb[-1].event == "job_failed"
    b_types = {e["type"] for f in fb if f.event == "events_update" for e in f.data["events"]}
    assert b_types == {"status_changed"}
    a_types = {e["type"] for f in fa if f.event == "events_update" for e in f.data["events"]}
    assert {"job_created", "job_failed"} <= a_types


def test_terminal_frame_mapping() -> None:
    store, jid = _store_and_job()
    store.fail(jid, "boom", reason="provider_down")
    frame = terminal_frame(store.get(jid))
    assert frame.event == "job_failed"
    assert frame.data["reason"] == "provider_down"
    sse = frame.to_sse()
    assert sse["event"] == "job_failed"
    assert '"reason": "provider_down"' in sse["data"]
