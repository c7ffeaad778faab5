"""
Burn a compiled SubtitleDescription into a video with ffmpeg.

The filter graph goes through a temporary `-filter_complex_script` file inside
the work dir; the file is removed on every exit path.
"""

from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from caption_localizer.captions.compiler import build_filter_graph
from caption_localizer.captions.models import SubtitleDescription
from caption_localizer.config import get_settings
from caption_localizer.errors import (
    EmptyOutput,
    InvalidRequest,
    RenderPipelineError,
    RetryExhausted,
    SourceNotFound,
)
from caption_localizer.utils.ffmpeg_safe import FFmpegError, run_ffmpeg_async
from caption_localizer.utils.io import ensure_dir
from caption_localizer.utils.log import logger
from caption_localizer.utils.retry import RetryPolicy, is_retryable, retry_call_async

# runner(argv, timeout_s=..., script_root=...)
FFmpegRunner = Callable[..., Awaitable[None]]
EventHook = Callable[[str, dict[str, Any], str], None]


@dataclass(frozen=True, slots=True)
class QualityPreset:
    crf: int
    preset: str
    maxrate: str

    def bufsize(self) -> str:
        num = "".join(ch for ch in self.maxrate if ch.isdigit())
        unit = "".join(ch for ch in self.maxrate if ch.isalpha())
        return f"{int(num or 0) * 2}{unit}"


QUALITY_PRESETS: dict[str, QualityPreset] = {
    "low": QualityPreset(crf=28, preset="veryfast", maxrate="1M"),
    "medium": QualityPreset(crf=23, preset="medium", maxrate="2500k"),
    "high": QualityPreset(crf=18, preset="slow", maxrate="5M"),
}


@dataclass(frozen=True, slots=True)
class LanguageRenderTuning:
    max_attempts: int
    base_delay_s: float
    timeout_s: float


LANGUAGE_TUNING: dict[str, LanguageRenderTuning] = {
    "vi": LanguageRenderTuning(max_attempts=3, base_delay_s=2.0, timeout_s=300.0),
    "hi": LanguageRenderTuning(max_attempts=4, base_delay_s=3.0, timeout_s=420.0),
    "fr": LanguageRenderTuning(max_attempts=3, base_delay_s=2.2, timeout_s=330.0),
    "es": LanguageRenderTuning(max_attempts=3, base_delay_s=2.5, timeout_s=360.0),
}


@dataclass(frozen=True, slots=True)
class RenderResult:
    output_path: str
    size_bytes: int
    attempts: int
    quality: str
    language: str
    cue_count: int
    elapsed_ms: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def quality_preset(name: str) -> QualityPreset:
    key = str(name or "").strip().lower()
    if key not in QUALITY_PRESETS:
        raise InvalidRequest(
            f"Unknown quality preset: {name}", details={"supported": sorted(QUALITY_PRESETS)}
        )
    return QUALITY_PRESETS[key]


class RenderExecutor:
    def __init__(
        self,
        *,
        runner: FFmpegRunner | None = None,
        work_dir: Path | None = None,
        ffmpeg_bin: str | None = None,
        policy: RetryPolicy | None = None,
        timeout_s: float | None = None,
        audio: bool | None = None,
    ) -> None:
        s = get_settings()
        self.runner = runner or run_ffmpeg_async
        self.work_dir = Path(work_dir) if work_dir else s.public.resolved_work_dir()
        self.ffmpeg_bin = str(ffmpeg_bin or s.ffmpeg_bin)
        self.policy = policy or RetryPolicy(
            max_attempts=max(1, int(s.render_max_attempts)),
            base_delay_s=float(s.render_retry_base_sec),
            factor=2.0,
            cap_s=float(s.render_retry_cap_sec),
        )
        self.timeout_s = float(timeout_s or s.render_timeout_sec)
        self.audio = bool(s.render_audio) if audio is None else bool(audio)

    def policy_for(self, language: str) -> tuple[RetryPolicy, float]:
        tuning = LANGUAGE_TUNING.get(str(language or "").lower())
        if tuning is None:
            return self.policy, self.timeout_s
        return (
            self.policy.with_overrides(
                max_attempts=tuning.max_attempts, base_delay_s=tuning.base_delay_s
            ),
            tuning.timeout_s,
        )

    def build_argv(
        self,
        *,
        input_path: Path,
        output_path: Path,
        script_path: Path,
        preset: QualityPreset,
        audio: bool,
    ) -> list[str]:
        argv = [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(input_path),
            "-filter_complex_script",
            str(script_path),
            "-map",
            "[vout]",
        ]
        if audio:
            argv += ["-map", "0:a?"]
        argv += [
            "-c:v",
            "libx264",
            "-crf",
            str(preset.crf),
            "-preset",
            preset.preset,
            "-maxrate",
            preset.maxrate,
            "-bufsize",
            preset.bufsize(),
            "-pix_fmt",
            "yuv420p",
            "-movflags",
            "+faststart",
        ]
        if audio:
            argv += ["-c:a", "aac", "-b:a", "128k", "-ar", "44100"]
        else:
            argv += ["-an"]
        argv.append(str(output_path))
        return argv

    async def render(
        self,
        input_media: Path,
        description: SubtitleDescription,
        *,
        output_path: Path,
        quality: str = "medium",
        audio: bool | None = None,
        on_event: EventHook | None = None,
    ) -> RenderResult:
        src = Path(input_media)
        if not src.is_file():
            raise SourceNotFound(f"Input video not found: {src.name}")
        preset = quality_preset(quality)
        keep_audio = self.audio if audio is None else bool(audio)
        policy, timeout_s = self.policy_for(description.language)
        max_attempts = int(policy.max_attempts)
        out = Path(output_path)
        ensure_dir(out.parent)
        ensure_dir(self.work_dir)
        t0 = time.perf_counter()

        def emit(kind: str, data: dict[str, Any], severity: str = "info") -> None:
            if on_event is not None:
                on_event(kind, data, severity)

        fd, tmp = tempfile.mkstemp(prefix="captions_", suffix=".filter", dir=str(self.work_dir))
        script = Path(tmp)
        attempts = {"n": 0}
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(build_filter_graph(description))
            argv = self.build_argv(
                input_path=src, output_path=out, script_path=script, preset=preset, audio=keep_audio
            )

            async def _attempt() -> None:
                attempts["n"] += 1
                logger.info(
                    "render_attempt",
                    attempt=attempts["n"],
                    max_attempts=max_attempts,
                    language=description.language,
                    quality=quality,
                    cues=len(description.cues),
                )
                emit("render_attempt", {"attempt": attempts["n"], "max_attempts": max_attempts})
                with suppress(FileNotFoundError):
                    out.unlink()
                try:
                    await self.runner(argv, timeout_s=timeout_s, script_root=self.work_dir)
                except FFmpegError as ex:
                    raise RenderPipelineError(
                        f"ffmpeg render failed: {str(ex).splitlines()[0] if str(ex) else ex}",
                        details={"attempt": attempts["n"]},
                    ) from ex

            def _attempt_failed(attempt: int, delay: float | None, ex: BaseException) -> None:
                logger.warning(
                    "render_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_s=delay,
                    error=str(ex),
                )
                emit(
                    "render_attempt_failed",
                    {
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "retry_delay_s": delay,
                        "will_retry": delay is not None,
                        "error": str(ex),
                    },
                    "warning",
                )

            try:
                await retry_call_async(
                    _attempt,
                    policy=policy,
                    on_retry=_attempt_failed,
                    on_giveup=lambda attempt, ex: _attempt_failed(attempt, None, ex),
                )
            except Exception as ex:
                if is_retryable(ex):
                    raise RetryExhausted(
                        f"Render failed after {attempts['n']} attempts: {ex}",
                        details={"attempts": attempts["n"], "last_error": str(ex)},
                    ) from ex
                raise
        finally:
            with suppress(FileNotFoundError):
                script.unlink()

        size = out.stat().st_size if out.exists() else 0
        if size <= 0:
            with suppress(FileNotFoundError):
                out.unlink()
            raise EmptyOutput("Rendered output is missing or empty", details={"output": out.name})

        elapsed = (time.perf_counter() - t0) * 1000.0
        logger.info(
            "render_completed",
            attempts=attempts["n"],
            size_bytes=size,
            elapsed_ms=round(elapsed, 1),
        )
        return RenderResult(
            output_path=str(out),
            size_bytes=int(size),
            attempts=attempts["n"],
            quality=str(quality).lower(),
            language=description.language,
            cue_count=len(description.cues),
            elapsed_ms=elapsed,
        )
