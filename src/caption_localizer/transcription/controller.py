from __future__ import annotations

import asyncio
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from caption_localizer.config import get_settings
from caption_localizer.errors import (
    AudioExtractionError,
    LanguageConfidenceTooLow,
    MalformedResponse,
    QualityValidationFailed,
    RetryExhausted,
    SourceNotFound,
)
from caption_localizer.transcription.cache import TTLCache, file_fingerprint, make_key
from caption_localizer.transcription.cost import CostTracker, estimate_stt_cost
from caption_localizer.transcription.models import (
    Segment,
    TranscriptionOptions,
    TranscriptionRecord,
    Word,
)
from caption_localizer.transcription.providers import SpeechToText
from caption_localizer.utils.ffmpeg_safe import FFmpegError, extract_audio_mp3, ffprobe_media_info
from caption_localizer.utils.log import logger
from caption_localizer.utils.retry import RetryPolicy, is_retryable, retry_call_async

# (kind, data, severity)
EventHook = Callable[[str, dict[str, Any], str], None]

# Whisper's verbose_json reports full language names.
_LANGUAGE_NAMES = {
    "english": "en",
    "spanish": "es",
    "french": "fr",
    "german": "de",
    "vietnamese": "vi",
    "arabic": "ar",
    "japanese": "ja",
    "korean": "ko",
    "chinese": "zh",
    "hindi": "hi",
    "russian": "ru",
}


def normalize_language(value: Any) -> str:
    v = str(value or "").strip().lower()
    return _LANGUAGE_NAMES.get(v, v)


@dataclass(frozen=True, slots=True)
class QualityPolicy:
    min_word_count: int = 5
    min_confidence: float = 0.7
    language_confidence_threshold: float = 0.9

    @classmethod
    def from_settings(cls) -> QualityPolicy:
        s = get_settings()
        return cls(
            min_word_count=int(s.min_word_count),
            min_confidence=float(s.min_confidence_score),
            language_confidence_threshold=float(s.language_confidence_threshold),
        )


def stt_policy_from_settings() -> RetryPolicy:
    s = get_settings()
    return RetryPolicy(
        max_attempts=max(1, int(s.stt_max_retries) + 1),
        base_delay_s=float(s.stt_retry_base_sec),
        factor=float(s.stt_retry_factor),
        cap_s=float(s.stt_retry_cap_sec),
    )


def _probe_duration(path: Path) -> float:
    return float(ffprobe_media_info(path)["duration_s"])


def _overall_confidence(payload: dict[str, Any], words: list[Word], segments: list[Segment]) -> float:
    if payload.get("confidence") is not None:
        return max(0.0, min(1.0, float(payload["confidence"])))
    if words:
        return sum(w.confidence for w in words) / len(words)
    if segments:
        mean_lp = sum(s.avg_logprob for s in segments) / len(segments)
        return max(0.0, min(1.0, (mean_lp + 1.0) / 2.0))
    return 0.0


def _parse_words(raw: Any) -> list[Word]:
    out: list[Word] = []
    for w in raw or []:
        if not isinstance(w, dict):
            continue
        conf = w.get("confidence", w.get("probability"))
        out.append(
            Word(
                word=str(w.get("word") or ""),
                start=float(w.get("start") or 0.0),
                end=float(w.get("end") or 0.0),
                confidence=float(conf) if conf is not None else 0.8,
            )
        )
    return out


def _segment_id(value: Any, index: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return index


def _parse_segments(raw: Any) -> list[Segment]:
    out: list[Segment] = []
    for i, s in enumerate(raw or []):
        if not isinstance(s, dict):
            continue
        out.append(
            Segment(
                id=_segment_id(s.get("id"), i),
                start=float(s.get("start") or 0.0),
                end=float(s.get("end") or 0.0),
                text=str(s.get("text") or "").strip(),
                avg_logprob=float(s.get("avg_logprob") or 0.0),
                no_speech_prob=float(s.get("no_speech_prob") or 0.0),
                words=tuple(_parse_words(s.get("words"))),
            )
        )
    return out


class TranscriptionController:
    """
    Cached, retried, quality-gated calls to a speech-to-text collaborator.
    """

    def __init__(
        self,
        provider: SpeechToText,
        *,
        cache: TTLCache | None = None,
        cost_tracker: CostTracker | None = None,
        policy: RetryPolicy | None = None,
        quality: QualityPolicy | None = None,
        duration_probe: Callable[[Path], float] | None = None,
        extract_audio: bool = False,
        model: str | None = None,
    ) -> None:
        s = get_settings()
        self.provider = provider
        self.cache = cache or TTLCache(ttl_s=float(s.transcription_cache_ttl_sec))
        self.cost_tracker = cost_tracker or CostTracker(limit_usd=float(s.max_cost_limit_usd))
        self.policy = policy or stt_policy_from_settings()
        self.quality = quality or QualityPolicy.from_settings()
        self.duration_probe = duration_probe or _probe_duration
        self.extract_audio = bool(extract_audio)
        self.model = str(model or s.stt_model)
        self.cost_per_minute = float(s.stt_cost_per_minute_usd)

    def cache_key(self, path: Path, options: TranscriptionOptions) -> str:
        return make_key(
            "transcription",
            {"file": file_fingerprint(path), "options": options.cache_parts(), "model": self.model},
        )

    async def transcribe(
        self,
        file_ref: str | Path,
        options: TranscriptionOptions | None = None,
        *,
        on_event: EventHook | None = None,
        duration_s: float | None = None,
    ) -> TranscriptionRecord:
        opts = options or TranscriptionOptions()
        path = Path(file_ref)
        if not path.is_file():
            raise SourceNotFound(f"Media file not found: {path.name}")
        t0 = time.perf_counter()

        def emit(kind: str, data: dict[str, Any], severity: str = "info") -> None:
            if on_event is not None:
                on_event(kind, data, severity)

        key = self.cache_key(path, opts)
        cached = self.cache.get(key)
        if cached is not None:
            rec = TranscriptionRecord.from_dict(cached)
            rec.cache_hit = True
            rec.retries = 0
            rec.processing_ms = (time.perf_counter() - t0) * 1000.0
            logger.info("transcription_cache_hit", cache_key=key, word_count=rec.word_count)
            emit("transcription_cache_hit", {"cache_key": key, "word_count": rec.word_count})
            return rec

        if duration_s is None:
            try:
                duration_s = await asyncio.to_thread(self.duration_probe, path)
            except FFmpegError as ex:
                raise AudioExtractionError(f"Could not read audio duration: {ex}") from ex
        cost = estimate_stt_cost(float(duration_s or 0.0), per_minute_usd=self.cost_per_minute)
        audio = await asyncio.to_thread(self._read_audio, path)

        attempts = {"n": 0}
        max_attempts = int(self.policy.max_attempts)

        async def _call() -> dict[str, Any]:
            attempts["n"] += 1
            # refused before the request, never after
            self.cost_tracker.reserve(cost, operation=f"stt:{path.name}")
            logger.info(
                "transcription_attempt",
                attempt=attempts["n"],
                max_attempts=max_attempts,
                model=self.model,
                language=opts.language,
            )
            return await asyncio.to_thread(
                self.provider.transcribe,
                audio,
                filename=path.with_suffix(".mp3").name if self.extract_audio else path.name,
                language=opts.language,
                response_format=opts.response_format,
                timestamp_granularities=list(opts.timestamp_granularities),
                temperature=opts.temperature,
                prompt=opts.prompt,
            )

        def _attempt_failed(attempt: int, delay: float | None, ex: BaseException) -> None:
            logger.warning(
                "transcription_attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                delay_s=delay,
                error=str(ex),
            )
            emit(
                "transcription_attempt_failed",
                {
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "retry_delay_s": delay,
                    "will_retry": delay is not None,
                    "error": str(ex),
                },
                "warning",
            )

        emit("transcription_started", {"language": opts.language, "max_attempts": max_attempts})
        try:
            payload = await retry_call_async(
                _call,
                policy=self.policy,
                on_retry=_attempt_failed,
                on_giveup=lambda attempt, ex: _attempt_failed(attempt, None, ex),
            )
        except Exception as ex:
            if is_retryable(ex):
                raise RetryExhausted(
                    f"Transcription failed after {attempts['n']} attempts: {ex}",
                    details={"attempts": attempts["n"], "last_error": str(ex)},
                ) from ex
            raise

        try:
            rec = self._build_record(payload, opts, duration_s=float(duration_s or 0.0), cost=cost)
        except (TypeError, ValueError) as ex:
            raise MalformedResponse(f"Unreadable transcription payload: {ex}") from ex
        rec.cache_key = key
        rec.retries = attempts["n"] - 1
        self._validate(rec, opts)
        self.cache.put(key, rec.to_dict())
        rec.processing_ms = (time.perf_counter() - t0) * 1000.0
        logger.info(
            "transcription_completed",
            word_count=rec.word_count,
            confidence=round(rec.confidence, 3),
            language=rec.language,
            retries=rec.retries,
            cost_usd=round(rec.cost_usd, 5),
        )
        emit(
            "transcription_completed",
            {
                "word_count": rec.word_count,
                "confidence": rec.confidence,
                "language": rec.language,
                "retries": rec.retries,
            },
            "success",
        )
        return rec

    def _read_audio(self, path: Path) -> bytes:
        if not self.extract_audio:
            return path.read_bytes()
        with tempfile.TemporaryDirectory(prefix="stt_") as td:
            dst = Path(td) / (path.stem + ".mp3")
            try:
                extract_audio_mp3(src=path, dst=dst)
            except FFmpegError as ex:
                raise AudioExtractionError(f"Audio extraction failed: {ex}") from ex
            return dst.read_bytes()

    def _build_record(
        self, payload: dict[str, Any], opts: TranscriptionOptions, *, duration_s: float, cost: float
    ) -> TranscriptionRecord:
        text = str(payload.get("text") or "").strip()
        words = _parse_words(payload.get("words"))
        segments = _parse_segments(payload.get("segments"))
        if not words:
            words = [w for s in segments for w in s.words]
        confidence = _overall_confidence(payload, words, segments)
        detected = normalize_language(payload.get("language")) or opts.language
        if payload.get("language_confidence") is not None:
            lang_conf = max(0.0, min(1.0, float(payload["language_confidence"])))
        else:
            target = opts.expected_language or opts.language
            lang_conf = 1.0 if detected == target else 0.0
        word_count = len([w for w in text.split() if w])
        floor = max(1, int(self.quality.min_word_count))
        quality_score = confidence * min(1.0, word_count / floor)
        return TranscriptionRecord(
            text=text,
            language=detected,
            language_confidence=lang_conf,
            confidence=confidence,
            quality_score=quality_score,
            duration_s=float(payload.get("duration") or duration_s or 0.0),
            words=words,
            segments=segments,
            word_count=word_count,
            character_count=len(text),
            cost_usd=cost,
            model=self.model,
        )

    def _validate(self, rec: TranscriptionRecord, opts: TranscriptionOptions) -> None:
        q = self.quality
        if rec.word_count < int(q.min_word_count):
            raise QualityValidationFailed(
                f"Transcription has {rec.word_count} words (minimum {q.min_word_count})",
                details={"word_count": rec.word_count, "min_word_count": q.min_word_count},
            )
        if rec.confidence < float(q.min_confidence):
            raise QualityValidationFailed(
                f"Transcription confidence {rec.confidence:.2f} below minimum {q.min_confidence:.2f}",
                details={"confidence": rec.confidence, "min_confidence": q.min_confidence},
            )
        if opts.expected_language:
            expected = normalize_language(opts.expected_language)
            if rec.language != expected or rec.language_confidence < float(q.language_confidence_threshold):
                raise LanguageConfidenceTooLow(
                    f"Detected language {rec.language!r} ({rec.language_confidence:.2f}) "
                    f"does not meet {expected!r} at {q.language_confidence_threshold:.2f}",
                    details={
                        "detected": rec.language,
                        "expected": expected,
                        "language_confidence": rec.language_confidence,
                        "threshold": q.language_confidence_threshold,
                    },
                )

    def metrics(self) -> dict[str, Any]:
        return {
            "cache": self.cache.metrics(),
            "cost_usd": self.cost_tracker.total_usd,
            "cost_limit_usd": self.cost_tracker.limit_usd,
        }
