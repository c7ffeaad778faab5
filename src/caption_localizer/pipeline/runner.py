"""
Sequences a job through download, probe, transcribe, translate, render and upload.

The runner performs the I/O; the JobStore only records outcomes. Every step is
dispatched through the StepExecutor so it is retried and idempotent per
(job id, step name).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from pathlib import Path
from typing import Any, TypeVar

from caption_localizer.captions.compiler import compile_captions
from caption_localizer.captions.models import CaptionSegment, StyleConfig
from caption_localizer.captions.subtitles import render_vtt
from caption_localizer.config import get_settings
from caption_localizer.errors import (
    InvalidRequest,
    JobNotFound,
    LocalizerError,
    QualityError,
    QualityValidationFailed,
)
from caption_localizer.fonts.engine import FontSelectionEngine
from caption_localizer.jobs.limits import AdmissionController
from caption_localizer.jobs.models import (
    Category,
    EventType,
    Job,
    JobInput,
    JobStatus,
    Phase,
    Severity,
    StepDetail,
    status_percentage,
)
from caption_localizer.jobs.store import JobStore
from caption_localizer.pipeline.collaborators import (
    AttemptHook,
    LocalStepExecutor,
    MediaFetcher,
    ObjectStorage,
    StepExecutor,
    Translator,
)
from caption_localizer.render.executor import RenderExecutor, RenderResult
from caption_localizer.render.probe import MediaInfo, ProbePolicy, check_media, probe_media
from caption_localizer.transcription.controller import EventHook, TranscriptionController
from caption_localizer.transcription.models import TranscriptionOptions, TranscriptionRecord
from caption_localizer.utils.io import ensure_dir
from caption_localizer.utils.log import logger, set_job_id

T = TypeVar("T")

TRANSLATION_SAMPLE_COUNT = 3


def captions_from_transcript(record: TranscriptionRecord, *, language: str) -> list[CaptionSegment]:
    """
    Timed caption segments from a transcription; one whole-clip cue when the
    provider returned text without usable segments.
    """
    out: list[CaptionSegment] = []
    last_end = 0.0
    for seg in sorted(record.segments, key=lambda s: (s.start, s.end)):
        text = seg.text.strip()
        start = max(float(seg.start), last_end)
        end = float(seg.end)
        if not text or end <= start:
            continue
        out.append(
            CaptionSegment(
                id=f"seg_{len(out) + 1}",
                start=start,
                end=end,
                text=text,
                language=language,
            )
        )
        last_end = end
    if out or not record.text.strip():
        return out
    return [
        CaptionSegment(
            id="seg_1",
            start=0.0,
            end=max(float(record.duration_s), 0.5),
            text=record.text.strip(),
            language=language,
            confidence=max(0.0, min(1.0, float(record.confidence))),
        )
    ]


class PipelineRunner:
    def __init__(
        self,
        store: JobStore,
        *,
        controller: TranscriptionController,
        font_engine: FontSelectionEngine,
        executor: RenderExecutor,
        storage: ObjectStorage,
        fetcher: MediaFetcher,
        translator: Translator,
        step_executor: StepExecutor | None = None,
        admission: AdmissionController | None = None,
        prober: Callable[[Path], MediaInfo] = probe_media,
        probe_policy: ProbePolicy | None = None,
        work_dir: Path | None = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.controller = controller
        self.font_engine = font_engine
        self.executor = executor
        self.storage = storage
        self.fetcher = fetcher
        self.translator = translator
        self.step_executor = step_executor or LocalStepExecutor()
        self.admission = admission or AdmissionController()
        self.prober = prober
        self.probe_policy = probe_policy or ProbePolicy.from_settings()
        self.work_dir = Path(work_dir) if work_dir else s.public.resolved_work_dir()
        self.watermark_text = str(s.watermark_text or "").strip() or None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # --- submission / control ---
    def submit(
        self,
        inp: JobInput,
        *,
        client_id: str = "anonymous",
        timeout_s: float | None = None,
        job_id: str | None = None,
    ) -> Job:
        """
        Admit and start a job. Must be called with a running event loop.

        Admission runs before the job exists, so a rejected submission never
        reaches any collaborator.
        """
        if not str(inp.target_language or "").strip():
            raise InvalidRequest("target_language is required")
        self.font_engine.language_config(inp.target_language)
        self.admission.reserve(client_id, size_bytes=int(inp.size_bytes or 0))
        try:
            job = self.store.create(inp, client_id=client_id, timeout_s=timeout_s, job_id=job_id)
        except Exception:
            self.admission.release(client_id)
            raise
        task = asyncio.create_task(self._run_guarded(job.id), name=f"job-{job.id}")
        task.add_done_callback(lambda t, jid=job.id, cid=job.client_id: self._task_done(jid, cid, t))
        self._tasks[job.id] = task
        return job

    def cancel(self, job_id: str, *, reason: str = "cancelled") -> Job:
        job = self.store.cancel(job_id, reason=reason)
        self._cancel_task(job_id)
        return job

    def on_expired(self, job_id: str) -> None:
        """
        TimeoutSupervisor callback: the store already failed the job.
        """
        self._cancel_task(job_id)

    def _cancel_task(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()

    async def wait(self, job_id: str) -> Job:
        task = self._tasks.get(job_id)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        return self.store.get(job_id)

    def active_tasks(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with suppress(asyncio.CancelledError):
                await t

    async def _run_guarded(self, job_id: str) -> None:
        set_job_id(job_id)
        try:
            await self.run_job(job_id)
        except Exception as ex:
            self._record_failure(job_id, ex)
        finally:
            set_job_id(None)

    def _task_done(self, job_id: str, client_id: str, task: asyncio.Task[None]) -> None:
        # also runs for tasks cancelled before their first step
        if task.cancelled():
            with suppress(JobNotFound):
                self.store.cancel(job_id, reason="cancelled", if_active=True)
        self.admission.release(client_id)
        self._forget_steps(job_id)
        self._tasks.pop(job_id, None)

    def _forget_steps(self, job_id: str) -> None:
        forget = getattr(self.step_executor, "forget", None)
        if forget is not None:
            forget(job_id)

    def _discard_object(self, job_id: str, url: str) -> None:
        try:
            self.storage.delete(url)
        except Exception as ex:
            logger.warning("orphan_object_delete_failed", job_id=job_id, url=url, error=str(ex))
        else:
            logger.info("orphan_object_deleted", job_id=job_id, url=url)

    def _record_failure(self, job_id: str, ex: Exception) -> None:
        if not isinstance(ex, LocalizerError):
            logger.error("pipeline_unexpected_error", job_id=job_id, error=str(ex), exc_info=True)
        try:
            job = self.store.get(job_id)
        except JobNotFound:
            logger.warning("pipeline_job_vanished", job_id=job_id, error=str(ex))
            return
        if job.is_terminal:
            return
        payload = ex.to_dict() if isinstance(ex, LocalizerError) else {"message": str(ex)}
        self.store.add_event(
            job_id,
            EventType.processing_step,
            {"step": job.phase.value, "event": "step_failed", "error": str(ex), **payload},
            severity=Severity.error,
            category=Category.validation if isinstance(ex, QualityError) else Category.processing,
            tags=["error", job.phase.value],
        )
        if isinstance(ex, QualityError):
            with suppress(LocalizerError):
                self.store.set_validation(job_id, passed=False, errors=[ex.to_dict()])
        self.store.fail(job_id, ex)

    # --- hooks ---
    def _attempt_hook(self, job_id: str, step: str) -> AttemptHook:
        def _hook(attempt: int, delay: float | None, ex: BaseException) -> None:
            self.store.add_event(
                job_id,
                EventType.processing_step,
                {
                    "step": step,
                    "event": "step_attempt_failed",
                    "attempt": attempt,
                    "retry_delay_s": delay,
                    "will_retry": delay is not None,
                    "error": str(ex),
                },
                severity=Severity.warning,
                tags=["retry", step],
            )

        return _hook

    def _event_hook(self, job_id: str, step: str, *, language: str | None = None) -> EventHook:
        def _hook(kind: str, data: dict[str, Any], severity: str) -> None:
            tags = ["retry", step] if kind.endswith("attempt_failed") else [step]
            self.store.add_event(
                job_id,
                EventType.processing_step,
                {"step": step, "event": kind, **data},
                severity=severity,
                tags=tags,
                language=language,
            )

        return _hook

    async def _step(
        self, job_id: str, step: str, fn: Callable[[], Awaitable[T]]
    ) -> T:
        return await self.step_executor.run(
            job_id, step, fn, on_attempt_failed=self._attempt_hook(job_id, step)
        )

    def _progress(self, job_id: str, status: JobStatus, fraction: float, step: int, total: int, name: str) -> None:
        self.store.record_progress(
            job_id,
            status_percentage(status, fraction),
            step_detail=StepDetail(current_step=step, total_steps=total, step_name=name),
            phase_progress=fraction * 100.0,
        )

    # --- the pipeline ---
    async def run_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        inp = job.input
        target = inp.target_language
        work = ensure_dir(self.work_dir / job_id)
        total = 6 if inp.source_language.lower() != target.lower() else 5
        t_start = time.perf_counter()

        # download
        self.store.advance(job_id, JobStatus.downloading)
        self.store.add_event(
            job_id,
            EventType.processing_started,
            {"target_language": target, "source_language": inp.source_language, "quality": inp.quality},
            category=Category.system,
            language=target,
        )
        src = await self._step(
            job_id, "download", lambda: asyncio.to_thread(self.fetcher.fetch, inp.source_ref, work)
        )
        self._progress(job_id, JobStatus.downloading, 1.0, 1, total, "download")

        # probe
        self.store.advance(job_id, JobStatus.probing)

        async def _probe() -> MediaInfo:
            info = await asyncio.to_thread(self.prober, src)
            check_media(info, self.probe_policy)
            return info

        info = await self._step(job_id, "probe", _probe)
        self._progress(job_id, JobStatus.probing, 1.0, 2, total, "probe")

        # transcribe
        self.store.advance(
            job_id,
            JobStatus.transcribing,
            Phase.audio_extract if self.controller.extract_audio else Phase.transcribe,
        )
        self.store.start_step(job_id, "transcribe")
        opts = TranscriptionOptions(
            language=inp.source_language,
            expected_language=inp.options.get("expected_language"),
        )
        record = await self._step(
            job_id,
            "transcribe",
            lambda: self.controller.transcribe(
                src,
                opts,
                on_event=self._event_hook(job_id, "transcribe", language=inp.source_language),
                duration_s=info.duration_s,
            ),
        )
        self.store.set_phase(job_id, Phase.quality_gate)
        self.store.record_language_detection(
            job_id,
            record.language,
            record.language_confidence,
            processing_ms=record.processing_ms,
        )
        segments = captions_from_transcript(record, language=inp.source_language)
        if not segments:
            raise QualityValidationFailed("Transcription produced no captions")
        self.store.finish_step(job_id, "transcribe")
        self._progress(job_id, JobStatus.transcribing, 1.0, 3, total, "transcribe")

        # translate
        captions = segments
        if inp.source_language.lower() != target.lower():
            self.store.advance(job_id, JobStatus.translating)
            self.store.start_step(job_id, "translate")
            t0 = time.perf_counter()
            captions = await self._step(
                job_id,
                "translate",
                lambda: asyncio.to_thread(
                    self.translator.translate,
                    segments,
                    source_language=inp.source_language,
                    target_language=target,
                ),
            )
            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            self.store.add_translation_samples(
                job_id,
                target,
                [
                    {
                        "segment_id": tr.id,
                        "original": orig.text,
                        "translated": tr.text,
                        "confidence": tr.confidence if tr.confidence is not None else 1.0,
                        "processing_ms": elapsed_ms,
                    }
                    for orig, tr in list(zip(segments, captions))[:TRANSLATION_SAMPLE_COUNT]
                ],
            )
            self.store.finish_step(job_id, "translate")
            self._progress(job_id, JobStatus.translating, 1.0, 4, total, "translate")

        # render
        self.store.advance(job_id, JobStatus.rendering, Phase.font_select)
        self.store.start_step(job_id, "render")
        sample_text = " ".join(c.text for c in captions)
        decision, loaded = await self._step(
            job_id, "font_select", lambda: self.font_engine.decide(sample_text, target)
        )
        self.store.set_output(
            job_id, font={**decision.to_dict(), "path": loaded.path, "cache_status": loaded.cache_status}
        )

        self.store.set_phase(job_id, Phase.caption_compile)
        style = StyleConfig(
            vertical=inp.options.get("vertical"),
            watermark_text=self.watermark_text,
            font_file=loaded.path,
        )
        description = compile_captions(captions, decision, style)

        self.store.set_phase(job_id, Phase.caption_burn)
        output_path = work / f"{job_id}_{target}.mp4"
        render_hook = self._event_hook(job_id, "render", language=target)

        def _on_render(kind: str, data: dict[str, Any], severity: str) -> None:
            if kind == "render_attempt":
                attempt = int(data.get("attempt") or 1)
                max_attempts = int(data.get("max_attempts") or 1)
                self.store.record_render_progress(
                    job_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    cues=len(description.cues),
                    language=target,
                    percentage=0.0,
                )
                return
            render_hook(kind, data, severity)

        result: RenderResult = await self._step(
            job_id,
            "render",
            lambda: self.executor.render(
                src, description, output_path=output_path, quality=inp.quality, on_event=_on_render
            ),
        )
        self.store.record_render_progress(
            job_id,
            attempt=result.attempts,
            max_attempts=result.attempts,
            cues=result.cue_count,
            language=target,
            percentage=100.0,
            processing_ms=result.elapsed_ms,
        )
        self.store.finish_step(job_id, "render")
        self._progress(job_id, JobStatus.rendering, 1.0, total - 1, total, "render")

        # upload
        self.store.advance(job_id, JobStatus.uploading)
        self.store.start_step(job_id, "upload")
        t0 = time.perf_counter()
        data = await asyncio.to_thread(Path(result.output_path).read_bytes)
        stored = await self._step(
            job_id,
            "upload",
            lambda: asyncio.to_thread(self.storage.upload, data, output_path.name),
        )
        self.store.record_upload_progress(
            job_id,
            bytes_uploaded=len(data),
            total_bytes=len(data),
            processing_ms=(time.perf_counter() - t0) * 1000.0,
        )
        vtt = render_vtt(captions).encode("utf-8")
        try:
            subtitles = await self._step(
                job_id,
                "upload_subtitles",
                lambda: asyncio.to_thread(self.storage.upload, vtt, f"{job_id}_{target}.vtt"),
            )
        except BaseException:
            # nothing is published, so the video object must not outlive the job
            self._discard_object(job_id, stored["url"])
            raise
        self.store.set_output(
            job_id,
            url=stored["url"],
            file_url=stored["url"],
            download_url=stored.get("download_url") or stored["url"],
            preview_url=stored["url"],
            subtitles_url=subtitles["url"],
            processing_stats={
                "source": info.to_dict(),
                "render": result.to_dict(),
                "transcription": {
                    "word_count": record.word_count,
                    "confidence": record.confidence,
                    "cache_hit": record.cache_hit,
                    "retries": record.retries,
                    "cost_usd": record.cost_usd,
                },
                "caption_count": len(captions),
                "total_ms": (time.perf_counter() - t_start) * 1000.0,
            },
        )
        self.store.finish_step(job_id, "upload")
        self.store.set_validation(
            job_id,
            passed=True,
            warnings=list(decision.warnings),
            metrics={
                "font_coverage": decision.coverage.percentage,
                "transcription_confidence": record.confidence,
                "language_confidence": record.language_confidence,
                "quality_score": record.quality_score,
            },
        )
        done = self.store.advance(job_id, JobStatus.done)
        logger.info("pipeline_completed", job_id=job_id, url=stored["url"], language=target)
        return done
