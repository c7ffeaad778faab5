"""
In-process job store and the job state machine.

Writers are serialized per job id; readers always get a deep copy, so a snapshot
can be projected while the pipeline keeps mutating the live record.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from caption_localizer.config import get_settings
from caption_localizer.errors import (
    InvalidTransition,
    JobCancelled,
    JobNotFound,
    JobTimeout,
    RegressionError,
    error_payload,
)
from caption_localizer.jobs.messages import processing_plan, status_message
from caption_localizer.jobs.models import (
    DEFAULT_PHASE,
    PHASE_STATUS,
    STATUS_BASELINE,
    TERMINAL_STATUSES,
    AuditEvent,
    Category,
    Job,
    JobInput,
    JobMetadata,
    JobOutput,
    JobProgress,
    JobStatus,
    LanguageDetection,
    Phase,
    ProcessingStep,
    ProgressStep,
    RenderTick,
    Severity,
    StatusHistoryEntry,
    StepDetail,
    TranslationSample,
    UploadTick,
    Validation,
    can_transition,
    new_id,
    parse_ts,
    to_iso,
)
from caption_localizer.utils.log import logger

_TICK = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class JobStore:
    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        default_timeout_s: float | None = None,
    ) -> None:
        self._clock = clock or _utcnow
        if default_timeout_s is None:
            default_timeout_s = float(get_settings().job_timeout_sec)
        self.default_timeout_s = float(default_timeout_s)
        self._map_lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._last_stamp: dict[str, datetime] = {}

    # --- bookkeeping ---
    def now(self) -> datetime:
        return self._clock()

    def _stamp(self, job_id: str) -> str:
        # strictly increasing per job, so "newer than" comparisons never tie
        now = self._clock()
        last = self._last_stamp.get(job_id)
        if last is not None and now <= last:
            now = last + _TICK
        self._last_stamp[job_id] = now
        return to_iso(now)

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[Job]:
        with self._map_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFound(f"Job not found: {job_id}", details={"job_id": job_id})
        with lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(f"Job not found: {job_id}", details={"job_id": job_id})
            yield job

    @staticmethod
    def _require_active(job: Job, action: str) -> None:
        if job.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Job {job.id} is {job.status.value}; cannot {action}",
                details={"job_id": job.id, "status": job.status.value},
            )

    # --- create / read ---
    def create(
        self,
        inp: JobInput,
        *,
        client_id: str = "anonymous",
        timeout_s: float | None = None,
        job_id: str | None = None,
    ) -> Job:
        jid = job_id or new_id()
        timeout = self.default_timeout_s if timeout_s is None else float(timeout_s)
        plan = processing_plan(
            source_language=inp.source_language, target_language=inp.target_language
        )
        with self._map_lock:
            if jid in self._jobs:
                raise InvalidTransition(f"Job already exists: {jid}")
            created = self._stamp(jid)
            deadline = parse_ts(created) + timedelta(seconds=timeout)
            job = Job(
                id=jid,
                client_id=str(client_id or "anonymous"),
                status=JobStatus.queued,
                phase=Phase.queued,
                created_at=created,
                updated_at=created,
                input=inp,
                output=JobOutput(),
                progress=JobProgress(
                    message=status_message(JobStatus.queued, inp.target_language)
                ),
                metadata=JobMetadata(
                    processing_languages=[inp.target_language],
                    source_language=inp.source_language,
                    processing_steps=plan,
                    estimated_duration_s=sum(s.estimated_duration_s for s in plan),
                    timeout_at=to_iso(deadline),
                ),
            )
            self._jobs[jid] = job
            self._locks[jid] = threading.RLock()
        logger.info(
            "job_created",
            job_id=jid,
            client_id=job.client_id,
            target_language=inp.target_language,
            timeout_s=timeout,
        )
        return copy.deepcopy(job)

    def get(self, job_id: str) -> Job:
        with self._locked(job_id) as job:
            return copy.deepcopy(job)

    def find(self, job_id: str) -> Job | None:
        try:
            return self.get(job_id)
        except JobNotFound:
            return None

    def list(self, *, client_id: str | None = None, active_only: bool = False) -> list[Job]:
        with self._map_lock:
            ids = list(self._jobs.keys())
        out: list[Job] = []
        for jid in ids:
            job = self.find(jid)
            if job is None:
                continue
            if client_id is not None and job.client_id != client_id:
                continue
            if active_only and job.is_terminal:
                continue
            out.append(job)
        out.sort(key=lambda j: j.created_at, reverse=True)
        return out

    def active_count(self, client_id: str) -> int:
        return len(self.list(client_id=client_id, active_only=True))

    def delete(self, job_id: str) -> bool:
        with self._map_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            return False
        with lock, self._map_lock:
            existed = self._jobs.pop(job_id, None) is not None
            self._locks.pop(job_id, None)
            self._last_stamp.pop(job_id, None)
        if existed:
            logger.info("job_deleted", job_id=job_id)
        return existed

    # --- state machine ---
    def advance(
        self,
        job_id: str,
        next_status: JobStatus | str,
        phase: Phase | str | None = None,
        *,
        reason: str | None = None,
        message: str | None = None,
    ) -> Job:
        nxt = JobStatus(next_status)
        ph = Phase(phase) if phase is not None else DEFAULT_PHASE[nxt]
        if PHASE_STATUS[ph] != nxt:
            raise InvalidTransition(
                f"Phase {ph.value} does not belong to status {nxt.value}",
                details={"status": nxt.value, "phase": ph.value},
            )
        with self._locked(job_id) as job:
            if not can_transition(job.status, nxt):
                raise InvalidTransition(
                    f"Cannot move job {job_id} from {job.status.value} to {nxt.value}",
                    details={"from": job.status.value, "to": nxt.value},
                )
            if nxt in (JobStatus.failed, JobStatus.cancelled):
                raise InvalidTransition(
                    f"Use fail()/cancel() to move job {job_id} to {nxt.value}",
                    details={"from": job.status.value, "to": nxt.value},
                )
            ts = self._stamp(job_id)
            prev = job.status
            job.status = nxt
            job.phase = ph
            if job.started_at is None and prev == JobStatus.queued:
                job.started_at = ts
            job.progress.percentage = max(job.progress.percentage, STATUS_BASELINE[nxt])
            job.progress.current_phase = ph.value
            job.progress.phase_progress = 100.0 if nxt == JobStatus.done else 0.0
            job.progress.message = message or status_message(nxt, job.input.target_language)
            if nxt == JobStatus.done:
                job.completed_at = ts
                job.metadata.actual_duration_s = self._elapsed_s(job, ts)
            self._history(job, ts, prev, nxt, ph, reason=reason, severity=Severity.info)
            job.updated_at = ts
            logger.info(
                "job_status_changed",
                job_id=job_id,
                from_status=prev.value,
                to_status=nxt.value,
                phase=ph.value,
            )
            return copy.deepcopy(job)

    def set_phase(
        self,
        job_id: str,
        phase: Phase | str,
        *,
        message: str | None = None,
    ) -> Job:
        ph = Phase(phase)
        with self._locked(job_id) as job:
            self._require_active(job, "change phase")
            if PHASE_STATUS[ph] != job.status:
                raise InvalidTransition(
                    f"Phase {ph.value} does not belong to status {job.status.value}",
                    details={"status": job.status.value, "phase": ph.value},
                )
            job.phase = ph
            job.progress.current_phase = ph.value
            job.progress.phase_progress = 0.0
            if message:
                job.progress.message = message
            job.updated_at = self._stamp(job_id)
            return copy.deepcopy(job)

    def record_progress(
        self,
        job_id: str,
        percentage: float,
        message: str | None = None,
        step_detail: StepDetail | None = None,
        *,
        phase_progress: float | None = None,
    ) -> Job:
        pct = max(0.0, min(100.0, float(percentage)))
        with self._locked(job_id) as job:
            self._require_active(job, "record progress")
            if pct < job.progress.percentage:
                raise RegressionError(
                    f"Progress {pct:.1f} is below {job.progress.percentage:.1f}",
                    details={"current": job.progress.percentage, "requested": pct},
                )
            ts = self._stamp(job_id)
            job.progress.percentage = pct
            if message:
                job.progress.message = message
            if phase_progress is not None:
                job.progress.phase_progress = max(0.0, min(100.0, float(phase_progress)))
            if step_detail is not None:
                job.progress.step_detail = step_detail
            job.progress.steps.append(
                ProgressStep(
                    timestamp=ts,
                    name=step_detail.step_name if step_detail else job.phase.value,
                    phase=job.phase.value,
                    progress=pct,
                    message=message or job.progress.message,
                )
            )
            job.updated_at = ts
            return copy.deepcopy(job)

    def fail(
        self,
        job_id: str,
        error: BaseException | str,
        *,
        reason: str | None = None,
    ) -> Job:
        """
        Move a job to failed. A job that is already terminal is returned unchanged.
        """
        with self._locked(job_id) as job:
            if job.is_terminal:
                logger.info("job_fail_ignored", job_id=job_id, status=job.status.value)
                return copy.deepcopy(job)
            detail = (
                error_payload(error)
                if isinstance(error, BaseException)
                else {"code": "FAILED", "kind": "fatal", "message": str(error), "retryable": False}
            )
            self._terminate(job, JobStatus.failed, detail, reason=reason or detail.get("code"))
            logger.error(
                "job_failed",
                job_id=job_id,
                code=detail.get("code"),
                reason=job.failure_reason,
                error=detail.get("message"),
            )
            return copy.deepcopy(job)

    def cancel(self, job_id: str, *, reason: str = "cancelled", if_active: bool = False) -> Job:
        with self._locked(job_id) as job:
            if job.is_terminal:
                if if_active:
                    return copy.deepcopy(job)
                self._require_active(job, "cancel")
            detail = JobCancelled(f"Job cancelled: {reason}").to_dict()
            self._terminate(job, JobStatus.cancelled, detail, reason=reason)
            logger.info("job_cancelled", job_id=job_id, reason=reason)
            return copy.deepcopy(job)

    def expire(self, now: datetime | None = None) -> list[str]:
        """
        Fail every active job whose deadline has passed; returns the expired ids.
        """
        ts_now = now or self._clock()
        with self._map_lock:
            ids = list(self._jobs.keys())
        expired: list[str] = []
        for jid in ids:
            try:
                with self._locked(jid) as job:
                    if job.is_terminal:
                        continue
                    deadline = parse_ts(job.metadata.timeout_at)
                    if deadline is None or ts_now < deadline:
                        continue
                    prev = job.status
                    err = JobTimeout(
                        f"Job exceeded its deadline while {job.status.value}",
                        details={"status": job.status.value, "phase": job.phase.value},
                    )
                    self._terminate(job, JobStatus.failed, err.to_dict(), reason="timeout")
                    expired.append(jid)
                    logger.warning("job_timeout", job_id=jid, status=prev.value)
            except JobNotFound:
                continue
        return expired

    def _terminate(
        self, job: Job, status: JobStatus, detail: dict[str, Any], *, reason: str | None
    ) -> None:
        ts = self._stamp(job.id)
        prev = job.status
        job.status = status
        job.phase = DEFAULT_PHASE[status]
        job.completed_at = ts
        job.error = str(detail.get("message") or detail.get("code") or status.value)
        job.error_detail = dict(detail)
        job.failure_reason = reason
        job.progress.current_phase = job.phase.value
        job.progress.message = status_message(status, job.input.target_language)
        job.metadata.last_error = job.error
        job.metadata.actual_duration_s = self._elapsed_s(job, ts)
        for step in job.metadata.processing_steps:
            if step.status == "running":
                step.status = "failed" if status == JobStatus.failed else "skipped"
                step.ended_at = ts
                step.error = job.error
        self._history(
            job,
            ts,
            prev,
            status,
            job.phase,
            reason=reason,
            severity=Severity.error if status == JobStatus.failed else Severity.warning,
        )
        job.updated_at = ts

    @staticmethod
    def _elapsed_s(job: Job, ts: str) -> float:
        start = parse_ts(job.started_at or job.created_at)
        end = parse_ts(ts)
        if start is None or end is None:
            return 0.0
        return max(0.0, (end - start).total_seconds())

    def _history(
        self,
        job: Job,
        ts: str,
        prev: JobStatus | None,
        nxt: JobStatus,
        phase: Phase,
        *,
        reason: str | None,
        severity: Severity,
    ) -> None:
        entry = StatusHistoryEntry(
            timestamp=ts,
            from_status=prev.value if prev is not None else None,
            to_status=nxt.value,
            phase=phase.value,
            reason=reason,
            severity=severity.value,
        )
        try:
            self._append_history(job, entry)
        except Exception as ex:
            logger.warning("status_history_write_failed", job_id=job.id, error=str(ex))

    @staticmethod
    def _append_history(job: Job, entry: StatusHistoryEntry) -> None:
        hist = job.metadata.status_history
        if hist and (hist[-1].from_status, hist[-1].to_status) == (entry.from_status, entry.to_status):
            return
        hist.append(entry)

    # --- steps ---
    def start_step(self, job_id: str, step_id: str) -> Job:
        with self._locked(job_id) as job:
            self._require_active(job, f"start step {step_id}")
            ts = self._stamp(job_id)
            step = self._step(job, step_id)
            step.status = "running"
            step.started_at = step.started_at or ts
            step.attempts += 1
            job.updated_at = ts
            return copy.deepcopy(job)

    def finish_step(
        self, job_id: str, step_id: str, *, status: str = "done", error: str | None = None
    ) -> Job:
        with self._locked(job_id) as job:
            self._require_active(job, f"finish step {step_id}")
            ts = self._stamp(job_id)
            step = self._step(job, step_id)
            step.status = status
            step.ended_at = ts
            step.error = error
            start = parse_ts(step.started_at)
            if start is not None:
                step.actual_duration_s = max(0.0, (parse_ts(ts) - start).total_seconds())
            job.updated_at = ts
            return copy.deepcopy(job)

    @staticmethod
    def _step(job: Job, step_id: str) -> ProcessingStep:
        for step in job.metadata.processing_steps:
            if step.id == step_id:
                return step
        step = ProcessingStep(id=step_id, name=step_id.title(), phase=job.phase.value, estimated_duration_s=0.0)
        job.metadata.processing_steps.append(step)
        return step

    # --- best-effort audit writes: log and continue, never raise ---
    def append_status_history(self, job_id: str, entry: StatusHistoryEntry) -> None:
        try:
            with self._locked(job_id) as job:
                self._append_history(job, entry)
                job.updated_at = self._stamp(job_id)
        except Exception as ex:
            logger.warning("status_history_write_failed", job_id=job_id, error=str(ex))

    def add_event(
        self,
        job_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        *,
        severity: Severity | str = Severity.info,
        category: Category | str = Category.processing,
        tags: list[str] | None = None,
        language: str | None = None,
    ) -> None:
        try:
            with self._locked(job_id) as job:
                if job.is_terminal:
                    logger.debug("audit_event_after_terminal", job_id=job_id, type=event_type)
                    return
                payload = dict(data or {})
                ts = self._stamp(job_id)
                job.metadata.events.append(
                    AuditEvent(
                        timestamp=ts,
                        type=str(event_type),
                        phase=job.phase.value,
                        data=payload,
                        severity=Severity(severity).value,
                        category=Category(category).value,
                        tags=list(tags or []),
                        language=language,
                    )
                )
                if payload.get("will_retry"):
                    job.metadata.retry_count += 1
                if payload.get("error"):
                    job.metadata.error_count += 1
                    job.metadata.last_error = str(payload["error"])
                job.updated_at = ts
        except Exception as ex:
            logger.warning("audit_event_write_failed", job_id=job_id, type=str(event_type), error=str(ex))

    def record_language_detection(
        self,
        job_id: str,
        language: str,
        confidence: float,
        *,
        alternatives: list[dict[str, Any]] | None = None,
        processing_ms: float = 0.0,
    ) -> None:
        try:
            with self._locked(job_id) as job:
                if job.is_terminal:
                    return
                ts = self._stamp(job_id)
                job.metadata.language_detection = LanguageDetection(
                    language=language,
                    confidence=float(confidence),
                    detected_at=ts,
                    alternatives=list(alternatives or []),
                    processing_ms=float(processing_ms),
                )
                job.updated_at = ts
        except Exception as ex:
            logger.warning("language_detection_write_failed", job_id=job_id, error=str(ex))

    def add_translation_samples(
        self, job_id: str, language: str, samples: list[dict[str, Any]]
    ) -> None:
        try:
            with self._locked(job_id) as job:
                if job.is_terminal:
                    return
                bucket = job.output.translation_samples.setdefault(language, [])
                for s in samples:
                    bucket.append(
                        TranslationSample(
                            timestamp=self._stamp(job_id),
                            segment_id=str(s.get("segment_id") or ""),
                            original=str(s.get("original") or ""),
                            translated=str(s.get("translated") or ""),
                            confidence=float(s.get("confidence", 1.0)),
                            processing_ms=float(s.get("processing_ms", 0.0)),
                        )
                    )
                job.updated_at = self._stamp(job_id)
        except Exception as ex:
            logger.warning("translation_sample_write_failed", job_id=job_id, error=str(ex))

    def record_render_progress(
        self,
        job_id: str,
        *,
        attempt: int,
        max_attempts: int,
        cues: int,
        language: str,
        percentage: float,
        processing_ms: float = 0.0,
    ) -> None:
        try:
            with self._locked(job_id) as job:
                if job.is_terminal:
                    return
                ts = self._stamp(job_id)
                job.metadata.render_progress.append(
                    RenderTick(
                        timestamp=ts,
                        attempt=int(attempt),
                        max_attempts=int(max_attempts),
                        cues=int(cues),
                        language=language,
                        percentage=float(percentage),
                        processing_ms=float(processing_ms),
                    )
                )
                job.updated_at = ts
        except Exception as ex:
            logger.warning("render_progress_write_failed", job_id=job_id, error=str(ex))

    def record_upload_progress(
        self, job_id: str, *, bytes_uploaded: int, total_bytes: int, processing_ms: float = 0.0
    ) -> None:
        try:
            with self._locked(job_id) as job:
                if job.is_terminal:
                    return
                ts = self._stamp(job_id)
                total = max(0, int(total_bytes))
                done = max(0, int(bytes_uploaded))
                job.metadata.upload_progress = UploadTick(
                    timestamp=ts,
                    bytes_uploaded=done,
                    total_bytes=total,
                    percentage=(100.0 * done / total) if total else 100.0,
                    processing_ms=float(processing_ms),
                )
                job.updated_at = ts
        except Exception as ex:
            logger.warning("upload_progress_write_failed", job_id=job_id, error=str(ex))

    # --- output ---
    def set_validation(
        self,
        job_id: str,
        *,
        passed: bool,
        errors: list[dict[str, Any]] | None = None,
        warnings: list[str] | None = None,
        metrics: dict[str, Any] | None = None,
        processing_ms: float = 0.0,
    ) -> Job:
        with self._locked(job_id) as job:
            self._require_active(job, "record validation")
            ts = self._stamp(job_id)
            job.output.validation = Validation(
                status="passed" if passed else "failed",
                timestamp=ts,
                errors=list(errors or []),
                warnings=list(warnings or []),
                metrics=dict(metrics or {}),
                processing_ms=float(processing_ms),
            )
            job.updated_at = ts
            return copy.deepcopy(job)

    def set_output(self, job_id: str, **fields: Any) -> Job:
        with self._locked(job_id) as job:
            self._require_active(job, "set output")
            for k, v in fields.items():
                if not hasattr(job.output, k) or k in ("validation", "translation_samples"):
                    raise ValueError(f"Unknown output field: {k}")
                setattr(job.output, k, v)
            job.updated_at = self._stamp(job_id)
            return copy.deepcopy(job)
