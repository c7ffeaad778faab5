"""
Read-only projection of a Job snapshot into a normalized event list.

Events are never stored; they are rebuilt from the job on every read, so the
same snapshot always projects to the same ordered list with the same ids.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from caption_localizer.errors import InvalidRequest
from caption_localizer.jobs.models import (
    Category,
    EventType,
    Job,
    JobStatus,
    Phase,
    Severity,
    parse_ts,
)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100

_EVENT_TYPES = frozenset(e.value for e in EventType)


@dataclass(frozen=True, slots=True)
class EventMetadata:
    severity: str = Severity.info.value
    category: str = Category.system.value
    tags: tuple[str, ...] = ()
    language: str | None = None
    processing_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "tags": list(self.tags),
        }
        if self.language is not None:
            d["language"] = self.language
        if self.processing_time_ms is not None:
            d["processing_time_ms"] = self.processing_time_ms
        return d


@dataclass(frozen=True, slots=True)
class Event:
    id: str
    type: str
    timestamp: str
    status: str
    phase: str
    data: dict[str, Any]
    metadata: EventMetadata
    seq: int = 0

    @property
    def language(self) -> str | None:
        return self.metadata.language

    def sort_key(self) -> tuple[datetime, int]:
        return (parse_ts(self.timestamp), self.seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "status": self.status,
            "phase": self.phase,
            "data": dict(self.data),
            "metadata": self.metadata.to_dict(),
        }


def _event_id(job_id: str, kind: str, subject: str, ts: str) -> str:
    raw = f"{job_id}|{kind}|{subject}|{ts}"
    return "evt_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


class _Builder:
    def __init__(self, job: Job) -> None:
        self.job = job
        self.events: list[Event] = []
        self._seen: set[tuple[str, str, str]] = set()

    def add(
        self,
        kind: EventType | str,
        ts: str | None,
        *,
        subject: str = "",
        status: str | None = None,
        phase: str | None = None,
        data: dict[str, Any] | None = None,
        severity: str = Severity.info.value,
        category: str = Category.system.value,
        tags: list[str] | tuple[str, ...] = (),
        language: str | None = None,
        processing_ms: float | None = None,
    ) -> None:
        if not ts:
            return
        kind_s = kind.value if isinstance(kind, EventType) else str(kind)
        # one upstream signal recorded twice projects to one event
        key = (kind_s, subject, ts)
        if key in self._seen:
            return
        self._seen.add(key)
        self.events.append(
            Event(
                id=_event_id(self.job.id, kind_s, subject, ts),
                type=kind_s,
                timestamp=ts,
                status=status or self.job.status.value,
                phase=phase or self.job.phase.value,
                data=dict(data or {}),
                metadata=EventMetadata(
                    severity=str(severity),
                    category=str(category),
                    tags=tuple(tags),
                    language=language,
                    processing_time_ms=processing_ms,
                ),
                seq=len(self.events),
            )
        )


def project(job: Job) -> list[Event]:
    """
    One event per notable fact of the job, ascending by timestamp.
    """
    b = _Builder(job)
    target = job.input.target_language
    b.add(
        EventType.job_created,
        job.created_at,
        subject=job.id,
        status=JobStatus.queued.value,
        phase=Phase.queued.value,
        data={
            "target_language": target,
            "source_language": job.input.source_language,
            "filename": job.input.filename,
            "quality": job.input.quality,
            "estimated_duration_s": job.metadata.estimated_duration_s,
        },
        category=Category.user.value,
        tags=("lifecycle",),
        language=target,
    )

    for h in job.metadata.status_history:
        b.add(
            EventType.status_changed,
            h.timestamp,
            subject=f"{h.from_status}->{h.to_status}",
            status=h.to_status,
            phase=h.phase,
            data={"from": h.from_status, "to": h.to_status, "reason": h.reason},
            severity=h.severity,
            category=Category.system.value,
            tags=("status", h.to_status),
            processing_ms=h.processing_ms or None,
        )
        if h.to_status == JobStatus.probing.value:
            b.add(
                EventType.validation_started,
                h.timestamp,
                subject="media",
                status=h.to_status,
                phase=h.phase,
                data={"checks": ["duration", "video_codec", "audio_track"]},
                category=Category.validation.value,
                tags=("validation",),
            )

    for step in job.progress.steps:
        b.add(
            EventType.job_progress,
            step.timestamp,
            subject=f"{step.name}:{step.progress:.3f}",
            phase=step.phase,
            data={"percentage": step.progress, "message": step.message, "step": step.name},
            category=Category.processing.value,
            tags=("progress",),
            processing_ms=step.processing_ms or None,
        )

    for ev in job.metadata.events:
        kind = ev.type if ev.type in _EVENT_TYPES else EventType.processing_step.value
        data = dict(ev.data)
        b.add(
            kind,
            ev.timestamp,
            subject=str(data.get("event") or data.get("step") or ev.type),
            phase=ev.phase,
            data=data,
            severity=ev.severity,
            category=ev.category,
            tags=tuple(ev.tags),
            language=ev.language,
        )

    det = job.metadata.language_detection
    if det is not None:
        b.add(
            EventType.language_detected,
            det.detected_at,
            subject=det.language,
            phase=Phase.quality_gate.value,
            data={
                "language": det.language,
                "confidence": det.confidence,
                "alternatives": list(det.alternatives),
            },
            category=Category.language.value,
            tags=("language", det.language),
            language=det.language,
            processing_ms=det.processing_ms or None,
        )

    for lang, samples in job.output.translation_samples.items():
        for s in samples:
            b.add(
                EventType.translation_sample,
                s.timestamp,
                subject=f"{lang}:{s.segment_id}",
                phase=Phase.translate.value,
                data={
                    "segment_id": s.segment_id,
                    "original": s.original,
                    "translated": s.translated,
                    "confidence": s.confidence,
                },
                category=Category.language.value,
                tags=("translation", lang),
                language=lang,
                processing_ms=s.processing_ms or None,
            )

    for tick in job.metadata.render_progress:
        b.add(
            EventType.render_progress,
            tick.timestamp,
            subject=f"{tick.attempt}:{tick.percentage:.1f}",
            phase=Phase.caption_burn.value,
            data={
                "attempt": tick.attempt,
                "max_attempts": tick.max_attempts,
                "cues": tick.cues,
                "percentage": tick.percentage,
            },
            category=Category.render.value,
            tags=("render", tick.language),
            language=tick.language,
            processing_ms=tick.processing_ms or None,
        )

    up = job.metadata.upload_progress
    if up is not None:
        b.add(
            EventType.upload_progress,
            up.timestamp,
            subject=str(up.bytes_uploaded),
            phase=Phase.upload.value,
            data={
                "bytes_uploaded": up.bytes_uploaded,
                "total_bytes": up.total_bytes,
                "percentage": up.percentage,
            },
            category=Category.upload.value,
            tags=("upload",),
            processing_ms=up.processing_ms or None,
        )

    val = job.output.validation
    if val is not None:
        passed = val.status == "passed"
        b.add(
            EventType.validation_completed if passed else EventType.validation_failed,
            val.timestamp,
            subject=val.status,
            data={
                "status": val.status,
                "errors": list(val.errors),
                "warnings": list(val.warnings),
                "metrics": dict(val.metrics),
            },
            severity=Severity.success.value if passed else Severity.error.value,
            category=Category.validation.value,
            tags=("validation",),
            processing_ms=val.processing_ms or None,
        )

    _terminal(b, job)
    return sorted(b.events, key=Event.sort_key)


def _terminal(b: _Builder, job: Job) -> None:
    if job.status == JobStatus.done:
        b.add(
            EventType.job_completed,
            job.completed_at,
            subject=job.id,
            data={
                "url": job.output.url,
                "download_url": job.output.download_url,
                "subtitles_url": job.output.subtitles_url,
                "actual_duration_s": job.metadata.actual_duration_s,
            },
            severity=Severity.success.value,
            category=Category.system.value,
            tags=("lifecycle", "completed"),
            language=job.input.target_language,
        )
    elif job.status == JobStatus.failed:
        b.add(
            EventType.job_failed,
            job.completed_at,
            subject=job.id,
            data={
                "error": job.error,
                "reason": job.failure_reason,
                "error_detail": dict(job.error_detail or {}),
            },
            severity=Severity.error.value,
            category=Category.system.value,
            tags=("lifecycle", "failed"),
            language=job.input.target_language,
        )
    elif job.status == JobStatus.cancelled:
        b.add(
            EventType.job_cancelled,
            job.completed_at,
            subject=job.id,
            data={"reason": job.failure_reason},
            severity=Severity.warning.value,
            category=Category.user.value,
            tags=("lifecycle", "cancelled"),
            language=job.input.target_language,
        )


@dataclass(frozen=True, slots=True)
class EventQuery:
    type: str | None = None
    severity: str | None = None
    category: str | None = None
    language: str | None = None
    phase: str | None = None
    tags: tuple[str, ...] = ()
    since: datetime | None = None
    until: datetime | None = None
    include_progress: bool = False
    include_samples: bool = False
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def build(
        cls,
        *,
        type: str | None = None,
        severity: str | None = None,
        category: str | None = None,
        language: str | None = None,
        phase: str | None = None,
        tags: str | list[str] | tuple[str, ...] | None = None,
        since: str | datetime | None = None,
        until: str | datetime | None = None,
        include_progress: bool = False,
        include_samples: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> EventQuery:
        if isinstance(tags, str):
            tag_list = tuple(t.strip() for t in tags.split(",") if t.strip())
        else:
            tag_list = tuple(str(t).strip() for t in (tags or ()) if str(t).strip())
        try:
            since_dt = parse_ts(since)
            until_dt = parse_ts(until)
        except ValueError as ex:
            raise InvalidRequest(f"Invalid timestamp filter: {ex}") from ex
        lim = DEFAULT_LIMIT if not limit or int(limit) <= 0 else min(int(limit), MAX_LIMIT)
        return cls(
            type=type or None,
            severity=severity or None,
            category=category or None,
            language=language or None,
            phase=phase or None,
            tags=tag_list,
            since=since_dt,
            until=until_dt,
            include_progress=bool(include_progress),
            include_samples=bool(include_samples),
            limit=lim,
            offset=max(0, int(offset or 0)),
        )


def filter_events(events: list[Event], query: EventQuery) -> list[Event]:
    """
    Apply the query's filters, newest first. Pagination is separate.
    """
    out = list(events)
    if query.type:
        out = [e for e in out if e.type == query.type]
    if query.severity:
        out = [e for e in out if e.metadata.severity == query.severity]
    if query.category:
        out = [e for e in out if e.metadata.category == query.category]
    if query.language:
        out = [e for e in out if e.metadata.language == query.language]
    if query.phase:
        out = [e for e in out if e.phase == query.phase]
    if query.tags:
        wanted = set(query.tags)
        out = [e for e in out if wanted.intersection(e.metadata.tags)]
    if query.since is not None:
        out = [e for e in out if parse_ts(e.timestamp) >= query.since]
    if query.until is not None:
        out = [e for e in out if parse_ts(e.timestamp) <= query.until]
    if not query.include_progress:
        out = [e for e in out if e.type != EventType.job_progress.value]
    if not query.include_samples:
        out = [e for e in out if e.type != EventType.translation_sample.value]
    out.sort(key=Event.sort_key, reverse=True)
    return out


@dataclass(slots=True)
class EventPage:
    events: list[Event]
    limit: int
    offset: int
    total: int
    has_more: bool = False
    filters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "pagination": {
                "limit": self.limit,
                "offset": self.offset,
                "total": self.total,
                "has_more": self.has_more,
            },
            "filters": dict(self.filters),
        }


def paginate(events: list[Event], query: EventQuery) -> EventPage:
    filtered = filter_events(events, query)
    start = query.offset
    end = start + query.limit
    return EventPage(
        events=filtered[start:end],
        limit=query.limit,
        offset=query.offset,
        total=len(filtered),
        has_more=end < len(filtered),
        filters={
            "type": query.type,
            "severity": query.severity,
            "category": query.category,
            "language": query.language,
            "phase": query.phase,
            "tags": list(query.tags),
            "since": query.since.isoformat() if query.since else None,
            "until": query.until.isoformat() if query.until else None,
            "include_progress": query.include_progress,
            "include_samples": query.include_samples,
        },
    )


def query_events(job: Job, query: EventQuery) -> EventPage:
    return paginate(project(job), query)
