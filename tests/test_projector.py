from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from caption_localizer.errors import InvalidRequest
from caption_localizer.events.projector import (
    MAX_LIMIT,
    EventQuery,
    filter_events,
    paginate,
    project,
    query_events,
)
from caption_localizer.jobs.models import EventType, JobInput, JobStatus, Phase, parse_ts
from caption_localizer.jobs.store import JobStore

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _busy_job(*, finish: str = "done"):
    clock = {"t": T0}
    store = JobStore(clock=lambda: clock["t"], default_timeout_s=600.0)
    jid = store.create(JobInput(target_language="vi", source_ref="/tmp/a.mp4", source_language="en")).id

    def tick(seconds: float = 1.0) -> None:
        clock["t"] = clock["t"] + timedelta(seconds=seconds)

    for status in (JobStatus.downloading, JobStatus.probing, JobStatus.transcribing):
        tick()
        store.advance(jid, status)
    tick()
    store.record_progress(jid, 30.0, "Transcribing")
    tick()
    store.add_event(jid, "transcription_attempt_failed", {"attempt": 1, "will_retry": True, "error": "slow"},
                    severity="warning", tags=["transcription", "retry"])
    tick()
    store.record_language_detection(jid, "en", 0.97)
    tick()
    store.advance(jid, JobStatus.translating)
    store.add_translation_samples(
        jid, "vi", [{"segment_id": "seg_1", "original": "Hello", "translated": "Xin chào"}]
    )
    tick()
    store.advance(jid, JobStatus.rendering, Phase.caption_burn)
    store.record_render_progress(jid, attempt=1, max_attempts=3, cues=2, language="vi", percentage=0.0)
    tick()
    store.advance(jid, JobStatus.uploading)
    store.record_upload_progress(jid, bytes_uploaded=10, total_bytes=10)
    tick()
    if finish == "done":
        store.set_validation(jid, passed=True, metrics={"quality_score": 0.95})
        store.set_output(jid, url="https://cdn.test/x.mp4")
        store.advance(jid, JobStatus.done)
    else:
        store.cancel(jid, reason="cancelled_by_client")
    return store.get(jid)


def test_projection_is_deterministic() -> None:
    job = _busy_job()
    first = project(job)
    again = project(job)
    assert [e.id for e in first] == [e.id for e in again]
    assert [e.to_dict() for e in first] == [e.to_dict() for e in again]
    assert len({e.id for e in first}) == len(first)


def test_projection_ascends_and_filtering_descends() -> None:
    events = project(_busy_job())
    stamps = [parse_ts(e.timestamp) for e in events]
    assert stamps == sorted(stamps)
    assert events[0].type == EventType.job_created.value
    assert events[-1].type == EventType.job_completed.value

    newest_first = filter_events(events, EventQuery.build(include_progress=True, include_samples=True))
    assert [e.id for e in newest_first] == [e.id for e in reversed(events)]


def test_projection_covers_every_recorded_fact() -> None:
    types = {e.type for e in project(_busy_job())}
    assert {
        "job_created",
        "status_changed",
        "validation_started",
        "job_progress",
        "processing_step",
        "language_detected",
        "translation_sample",
        "render_progress",
        "upload_progress",
        "validation_completed",
        "job_completed",
    } <= types


def test_unknown_audit_types_project_as_processing_steps() -> None:
    ev = next(e for e in project(_busy_job()) if e.type == "processing_step")
    assert ev.data["attempt"] == 1
    assert ev.metadata.severity == "warning"
    assert "retry" in ev.metadata.tags


def test_cancelled_job_ends_with_cancel_event() -> None:
    events = project(_busy_job(finish="cancel"))
    assert events[-1].type == EventType.job_cancelled.value
    assert events[-1].data["reason"] == "cancelled_by_client"
    assert not any(e.type == "job_completed" for e in events)


def test_progress_and_samples_are_opt_in() -> None:
    events = project(_busy_job())
    default = filter_events(events, EventQuery.build())
    assert not {e.type for e in default} & {"job_progress", "translation_sample"}
    with_progress = filter_events(events, EventQuery.build(include_progress=True))
    assert any(e.type == "job_progress" for e in with_progress)
    with_samples = filter_events(events, EventQuery.build(include_samples=True))
    assert any(e.type == "translation_sample" for e in with_samples)


def test_filters() -> None:
    events = project(_busy_job())
    by_type = filter_events(events, EventQuery.build(type="status_changed"))
    assert len(by_type) == 7
    assert all(e.type == "status_changed" for e in by_type)

    warnings = filter_events(events, EventQuery.build(severity="warning"))
    assert [e.type for e in warnings] == ["processing_step"]

    tagged = filter_events(events, EventQuery.build(tags="validation, upload"))
    assert {e.type for e in tagged} == {"validation_started", "validation_completed", "upload_progress"}

    vi = filter_events(events, EventQuery.build(language="vi", include_samples=True))
    assert vi and all(e.language == "vi" for e in vi)

    window = filter_events(
        events,
        EventQuery.build(since=(T0 + timedelta(seconds=4)).isoformat(), until=T0 + timedelta(seconds=6)),
    )
    for e in window:
        assert T0 + timedelta(seconds=4) <= parse_ts(e.timestamp) <= T0 + timedelta(seconds=6)
    assert window


def test_pagination_walks_the_whole_list() -> None:
    job = _busy_job()
    full = filter_events(project(job), EventQuery.build(include_progress=True, include_samples=True))
    seen = []
    offset = 0
    while True:
        page = query_events(job, EventQuery.build(limit=4, offset=offset, include_progress=True, include_samples=True))
        assert page.total == len(full)
        seen.extend(page.events)
        if not page.has_more:
            break
        offset += 4
    assert [e.id for e in seen] == [e.id for e in full]


def test_query_bounds() -> None:
    assert EventQuery.build(limit=10_000).limit == MAX_LIMIT
    assert EventQuery.build(limit=0).limit == 50
    assert EventQuery.build(offset=-5).offset == 0
    with pytest.raises(InvalidRequest):
        EventQuery.build(since="yesterday-ish")


def test_page_payload_shape() -> None:
    page = paginate(project(_busy_job()), EventQuery.build(limit=2, type="status_changed"))
    body = page.to_dict()
    assert body["pagination"] == {"limit": 2, "offset": 0, "total": 7, "has_more": True}
    assert body["filters"]["type"] == "status_changed"
    assert set(body["events"][0]) == {"id", "type", "timestamp", "status", "phase", "data", "metadata"}
