from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from caption_localizer.captions.models import CaptionSegment
from caption_localizer.fonts.engine import FontSelectionEngine
from caption_localizer.jobs.limits import AdmissionController, Limits
from caption_localizer.jobs.store import JobStore
from caption_localizer.pipeline.collaborators import DefaultMediaFetcher, LocalStepExecutor
from caption_localizer.pipeline.factory import Services, build_services
from caption_localizer.render.probe import MediaInfo
from caption_localizer.transcription.controller import QualityPolicy, TranscriptionController
from caption_localizer.utils.ffmpeg_safe import FFmpegError
from caption_localizer.utils.retry import RetryPolicy

from tests._helpers.media import fake_media_info

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_s=0.0, factor=2.0, cap_s=0.0)


def stt_payload(
    text: str = "hello there this is a caption test",
    *,
    confidence: float = 0.95,
    language: str = "english",
    duration: float = 2.0,
) -> dict[str, Any]:
    """
    A verbose_json style response with two segments and per-word probabilities.
    """
    words = text.split()
    half = max(1, len(words) // 2)
    per = duration / max(1, len(words))
    word_items = [
        {"word": w, "start": i * per, "end": (i + 1) * per, "probability": confidence}
        for i, w in enumerate(words)
    ]
    return {
        "text": text,
        "language": language,
        "duration": duration,
        "words": word_items,
        "segments": [
            {"id": 0, "start": 0.0, "end": half * per, "text": " ".join(words[:half]), "avg_logprob": -0.1},
            {"id": 1, "start": half * per, "end": duration, "text": " ".join(words[half:]), "avg_logprob": -0.1},
        ],
    }


class ScriptedSTT:
    """
    Returns (or raises) scripted responses in order; the last entry repeats.
    """

    def __init__(self, *script: dict[str, Any] | BaseException) -> None:
        self.script = list(script) or [stt_payload()]
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        language: str,
        response_format: str,
        timestamp_granularities: list[str],
        temperature: float = 0.0,
        prompt: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            idx = min(len(self.calls), len(self.script) - 1)
            self.calls.append({"filename": filename, "language": language, "size": len(audio)})
            item = self.script[idx]
        if isinstance(item, BaseException):
            raise item
        return dict(item)


class FakeTranslator:
    def __init__(self, mapping: dict[str, str] | None = None, *, fail: BaseException | None = None) -> None:
        self.mapping = dict(mapping or {})
        self.fail = fail
        self.calls: list[tuple[str, str, int]] = []

    def translate(
        self,
        segments: list[CaptionSegment],
        *,
        source_language: str,
        target_language: str,
    ) -> list[CaptionSegment]:
        self.calls.append((source_language, target_language, len(segments)))
        if self.fail is not None:
            raise self.fail
        return [
            seg.with_text(self.mapping.get(seg.text, f"[{target_language}] {seg.text}"), language=target_language)
            for seg in segments
        ]


class MemoryStorage:
    def __init__(self, *, base_url: str = "https://cdn.test") -> None:
        self.base_url = base_url
        self.objects: dict[str, bytes] = {}
        self.uploads: list[str] = []

    def upload(self, data: bytes, filename: str) -> dict[str, str]:
        digest = hashlib.sha256(data).hexdigest()
        key = f"{digest[:2]}/{digest}{Path(filename).suffix}"
        self.objects[key] = bytes(data)
        self.uploads.append(filename)
        url = f"{self.base_url}/objects/{key}"
        return {"key": key, "url": url, "download_url": f"{url}?download={filename}"}

    def list(self, prefix: str | None = None) -> list[dict[str, Any]]:
        return [
            {"key": k, "url": f"{self.base_url}/objects/{k}", "size_bytes": len(v)}
            for k, v in sorted(self.objects.items())
            if not prefix or k.startswith(prefix)
        ]

    def delete(self, url: str) -> bool:
        key = url.split("/objects/", 1)[-1]
        return self.objects.pop(key, None) is not None


class FakeFFmpeg:
    """
    Stands in for run_ffmpeg_async. Outcomes per call: ok, fail, empty, hang.
    """

    def __init__(self, *outcomes: str) -> None:
        self.outcomes = list(outcomes) or ["ok"]
        self.calls: list[list[str]] = []
        self.scripts: list[str] = []
        self.script_paths: list[Path] = []

    async def __call__(
        self, argv: list[str], *, timeout_s: float | None = None, script_root: Path | None = None
    ) -> None:
        idx = min(len(self.calls), len(self.outcomes) - 1)
        self.calls.append(list(argv))
        script = Path(argv[argv.index("-filter_complex_script") + 1])
        self.script_paths.append(script)
        self.scripts.append(script.read_text(encoding="utf-8"))
        out = Path(argv[-1])
        outcome = self.outcomes[idx]
        if outcome == "hang":
            await asyncio.sleep(3600)
        if outcome == "fail":
            raise FFmpegError("ffmpeg failed (exit=1)\nstderr_tail=boom")
        if outcome == "empty":
            out.write_bytes(b"")
            return
        out.write_bytes(b"rendered:" + self.scripts[-1].encode("utf-8"))


async def wait_until(pred: Callable[[], Any], *, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not pred():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_controller(stt: ScriptedSTT, *, policy: RetryPolicy | None = None, **kw: Any) -> TranscriptionController:
    return TranscriptionController(
        stt,
        policy=policy or FAST_RETRY,
        quality=kw.pop("quality", QualityPolicy()),
        duration_probe=lambda _p: 2.0,
        **kw,
    )


def make_services(
    *,
    stt: ScriptedSTT | None = None,
    translator: FakeTranslator | None = None,
    ffmpeg: FakeFFmpeg | None = None,
    storage: MemoryStorage | None = None,
    media: MediaInfo | None = None,
    limits: Limits | None = None,
    store: JobStore | None = None,
) -> Services:
    info = media or fake_media_info()
    return build_services(
        store=store or JobStore(),
        controller=make_controller(stt or ScriptedSTT()),
        translator=translator or FakeTranslator(),
        storage=storage or MemoryStorage(),
        fetcher=DefaultMediaFetcher(max_bytes=0),
        ffmpeg_runner=ffmpeg or FakeFFmpeg(),
        step_executor=LocalStepExecutor(default_policy=FAST_RETRY),
        font_engine=FontSelectionEngine(),
        admission=AdmissionController(limits or Limits()),
        prober=lambda _p: info,
    )
