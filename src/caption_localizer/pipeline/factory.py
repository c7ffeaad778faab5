from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from caption_localizer.config import get_settings
from caption_localizer.fonts.engine import FontSelectionEngine
from caption_localizer.jobs.limits import AdmissionController
from caption_localizer.jobs.store import JobStore
from caption_localizer.jobs.supervisor import TimeoutSupervisor
from caption_localizer.pipeline.collaborators import (
    DefaultMediaFetcher,
    LocalObjectStorage,
    LocalStepExecutor,
    MediaFetcher,
    ObjectStorage,
    OpenAIChatTranslator,
    StepExecutor,
    Translator,
)
from caption_localizer.pipeline.runner import PipelineRunner
from caption_localizer.render.executor import FFmpegRunner, RenderExecutor
from caption_localizer.render.probe import MediaInfo, probe_media
from caption_localizer.transcription.controller import TranscriptionController
from caption_localizer.transcription.providers import OpenAIWhisperClient, SpeechToText


@dataclass(slots=True)
class Services:
    store: JobStore
    runner: PipelineRunner
    supervisor: TimeoutSupervisor
    storage: ObjectStorage
    font_engine: FontSelectionEngine


def build_services(
    *,
    store: JobStore | None = None,
    stt: SpeechToText | None = None,
    translator: Translator | None = None,
    storage: ObjectStorage | None = None,
    fetcher: MediaFetcher | None = None,
    ffmpeg_runner: FFmpegRunner | None = None,
    step_executor: StepExecutor | None = None,
    font_engine: FontSelectionEngine | None = None,
    controller: TranscriptionController | None = None,
    admission: AdmissionController | None = None,
    prober: Callable[[Path], MediaInfo] | None = None,
) -> Services:
    """
    Wire the default collaborators from settings; any of them can be injected.
    """
    s = get_settings()
    store = store or JobStore()
    font_engine = font_engine or FontSelectionEngine()
    storage = storage or LocalObjectStorage()
    controller = controller or TranscriptionController(stt or OpenAIWhisperClient(), extract_audio=True)
    runner = PipelineRunner(
        store,
        controller=controller,
        font_engine=font_engine,
        executor=RenderExecutor(runner=ffmpeg_runner),
        storage=storage,
        fetcher=fetcher or DefaultMediaFetcher(),
        translator=translator or OpenAIChatTranslator(),
        step_executor=step_executor or LocalStepExecutor(),
        admission=admission or AdmissionController(),
        prober=prober or probe_media,
    )
    supervisor = TimeoutSupervisor(
        store,
        interval_s=float(s.supervisor_interval_sec),
        on_expired=runner.on_expired,
        purge=controller.cache.purge_expired,
    )
    return Services(
        store=store,
        runner=runner,
        supervisor=supervisor,
        storage=storage,
        font_engine=font_engine,
    )
