from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    queued = "queued"
    downloading = "downloading"
    probing = "probing"
    transcribing = "transcribing"
    translating = "translating"
    rendering = "rendering"
    uploading = "uploading"
    done = "done"
    failed = "failed"
    cancelled = "cancelled"


class Phase(str, Enum):
    """
    Sub-stage within a status. Every phase belongs to exactly one status.
    """

    queued = "queued"
    download = "download"
    probe = "probe"
    audio_extract = "audio_extract"
    transcribe = "transcribe"
    quality_gate = "quality_gate"
    translate = "translate"
    font_select = "font_select"
    caption_compile = "caption_compile"
    caption_burn = "caption_burn"
    upload = "upload"
    done = "done"
    failed = "failed"
    cancelled = "cancelled"


class Severity(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"
    success = "success"


class Category(str, Enum):
    system = "system"
    user = "user"
    processing = "processing"
    validation = "validation"
    language = "language"
    render = "render"
    upload = "upload"


class EventType(str, Enum):
    job_created = "job_created"
    status_changed = "status_changed"
    job_progress = "job_progress"
    job_completed = "job_completed"
    job_failed = "job_failed"
    job_cancelled = "job_cancelled"
    validation_started = "validation_started"
    validation_completed = "validation_completed"
    validation_failed = "validation_failed"
    processing_started = "processing_started"
    processing_step = "processing_step"
    language_detected = "language_detected"
    translation_sample = "translation_sample"
    render_progress = "render_progress"
    upload_progress = "upload_progress"


TERMINAL_STATUSES = frozenset({JobStatus.done, JobStatus.failed, JobStatus.cancelled})

PHASE_STATUS: dict[Phase, JobStatus] = {
    Phase.queued: JobStatus.queued,
    Phase.download: JobStatus.downloading,
    Phase.probe: JobStatus.probing,
    Phase.audio_extract: JobStatus.transcribing,
    Phase.transcribe: JobStatus.transcribing,
    Phase.quality_gate: JobStatus.transcribing,
    Phase.translate: JobStatus.translating,
    Phase.font_select: JobStatus.rendering,
    Phase.caption_compile: JobStatus.rendering,
    Phase.caption_burn: JobStatus.rendering,
    Phase.upload: JobStatus.uploading,
    Phase.done: JobStatus.done,
    Phase.failed: JobStatus.failed,
    Phase.cancelled: JobStatus.cancelled,
}

DEFAULT_PHASE: dict[JobStatus, Phase] = {
    JobStatus.queued: Phase.queued,
    JobStatus.downloading: Phase.download,
    JobStatus.probing: Phase.probe,
    JobStatus.transcribing: Phase.transcribe,
    JobStatus.translating: Phase.translate,
    JobStatus.rendering: Phase.caption_compile,
    JobStatus.uploading: Phase.upload,
    JobStatus.done: Phase.done,
    JobStatus.failed: Phase.failed,
    JobStatus.cancelled: Phase.cancelled,
}

# Forward edges only; failed/cancelled are reachable from every non-terminal status.
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.queued: frozenset({JobStatus.downloading}),
    JobStatus.downloading: frozenset({JobStatus.probing}),
    JobStatus.probing: frozenset({JobStatus.transcribing}),
    JobStatus.transcribing: frozenset({JobStatus.translating, JobStatus.rendering}),
    JobStatus.translating: frozenset({JobStatus.rendering}),
    JobStatus.rendering: frozenset({JobStatus.uploading}),
    JobStatus.uploading: frozenset({JobStatus.done}),
    JobStatus.done: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.cancelled: frozenset(),
}

# Overall percentage a job reaches when it enters each status.
STATUS_BASELINE: dict[JobStatus, float] = {
    JobStatus.queued: 0.0,
    JobStatus.downloading: 5.0,
    JobStatus.probing: 10.0,
    JobStatus.transcribing: 25.0,
    JobStatus.translating: 50.0,
    JobStatus.rendering: 75.0,
    JobStatus.uploading: 90.0,
    JobStatus.done: 100.0,
}

_ACTIVE_ORDER = (
    JobStatus.queued,
    JobStatus.downloading,
    JobStatus.probing,
    JobStatus.transcribing,
    JobStatus.translating,
    JobStatus.rendering,
    JobStatus.uploading,
    JobStatus.done,
)


def status_percentage(status: JobStatus, fraction: float) -> float:
    """
    Overall percentage for `fraction` (0..1) of the way through `status`.
    """
    if status not in STATUS_BASELINE:
        return 0.0
    lo = STATUS_BASELINE[status]
    idx = _ACTIVE_ORDER.index(status)
    hi = STATUS_BASELINE[_ACTIVE_ORDER[idx + 1]] if idx + 1 < len(_ACTIVE_ORDER) else lo
    f = max(0.0, min(1.0, float(fraction)))
    return lo + (hi - lo) * f


_UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


def is_valid_job_id(value: str) -> bool:
    return bool(_UUID4_RE.match(str(value or "")))


def can_transition(current: JobStatus, nxt: JobStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if nxt in (JobStatus.failed, JobStatus.cancelled):
        return True
    return nxt in TRANSITIONS[current]


def now_utc() -> str:
    # fixed width so ISO strings sort chronologically
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class JobInput:
    target_language: str
    source_ref: str
    source_language: str = "en"
    filename: str = ""
    quality: str = "medium"
    size_bytes: int = 0
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepDetail:
    current_step: int
    total_steps: int
    step_name: str


@dataclass(slots=True)
class ProgressStep:
    timestamp: str
    name: str
    phase: str
    progress: float
    message: str = ""
    processing_ms: float = 0.0


@dataclass(slots=True)
class JobProgress:
    percentage: float = 0.0
    current_phase: str = Phase.queued.value
    phase_progress: float = 0.0
    message: str = ""
    step_detail: StepDetail | None = None
    steps: list[ProgressStep] = field(default_factory=list)


@dataclass(slots=True)
class StatusHistoryEntry:
    timestamp: str
    from_status: str | None
    to_status: str
    phase: str
    reason: str | None = None
    severity: str = Severity.info.value
    processing_ms: float = 0.0


@dataclass(slots=True)
class ProcessingStep:
    id: str
    name: str
    phase: str
    estimated_duration_s: float
    status: str = "pending"  # pending|running|done|failed|skipped
    actual_duration_s: float | None = None
    started_at: str | None = None
    ended_at: str | None = None
    attempts: int = 0
    error: str | None = None


@dataclass(slots=True)
class AuditEvent:
    """
    An event recorded by a pipeline step (retry attempts, step transitions).
    """

    timestamp: str
    type: str
    phase: str
    data: dict[str, Any] = field(default_factory=dict)
    severity: str = Severity.info.value
    category: str = Category.processing.value
    tags: list[str] = field(default_factory=list)
    language: str | None = None


@dataclass(slots=True)
class LanguageDetection:
    language: str
    confidence: float
    detected_at: str
    alternatives: list[dict[str, Any]] = field(default_factory=list)
    processing_ms: float = 0.0


@dataclass(slots=True)
class TranslationSample:
    timestamp: str
    segment_id: str
    original: str
    translated: str
    confidence: float = 1.0
    processing_ms: float = 0.0


@dataclass(slots=True)
class RenderTick:
    timestamp: str
    attempt: int
    max_attempts: int
    cues: int
    language: str
    percentage: float
    processing_ms: float = 0.0


@dataclass(slots=True)
class UploadTick:
    timestamp: str
    bytes_uploaded: int
    total_bytes: int
    percentage: float
    processing_ms: float = 0.0


@dataclass(slots=True)
class Validation:
    status: str  # passed|failed
    timestamp: str
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    processing_ms: float = 0.0


@dataclass(slots=True)
class JobOutput:
    url: str | None = None
    file_url: str | None = None
    download_url: str | None = None
    preview_url: str | None = None
    subtitles_url: str | None = None
    processing_stats: dict[str, Any] = field(default_factory=dict)
    validation: Validation | None = None
    translation_samples: dict[str, list[TranslationSample]] = field(default_factory=dict)
    font: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobMetadata:
    processing_languages: list[str] = field(default_factory=list)
    source_language: str = "en"
    processing_steps: list[ProcessingStep] = field(default_factory=list)
    estimated_duration_s: float = 0.0
    actual_duration_s: float = 0.0
    retry_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    render_progress: list[RenderTick] = field(default_factory=list)
    upload_progress: UploadTick | None = None
    language_detection: LanguageDetection | None = None
    events: list[AuditEvent] = field(default_factory=list)
    timeout_at: str = ""


@dataclass(slots=True)
class Job:
    id: str
    client_id: str
    status: JobStatus
    phase: Phase
    created_at: str
    updated_at: str
    input: JobInput
    started_at: str | None = None
    completed_at: str | None = None
    output: JobOutput = field(default_factory=JobOutput)
    error: str | None = None
    error_detail: dict[str, Any] | None = None
    failure_reason: str | None = None
    progress: JobProgress = field(default_factory=JobProgress)
    metadata: JobMetadata = field(default_factory=JobMetadata)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["phase"] = self.phase.value
        return d
