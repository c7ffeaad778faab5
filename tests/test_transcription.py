from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
import requests

from caption_localizer.errors import (
    CostLimitExceeded,
    LanguageConfidenceTooLow,
    MalformedResponse,
    NetworkError,
    ProviderError,
    ProviderTimeout,
    QualityValidationFailed,
    RetryExhausted,
    SourceNotFound,
)
from caption_localizer.transcription.cache import TTLCache, make_key
from caption_localizer.transcription.controller import normalize_language
from caption_localizer.transcription.cost import CostTracker, estimate_stt_cost
from caption_localizer.transcription.models import TranscriptionOptions
from caption_localizer.transcription.providers import OpenAIWhisperClient

from tests._helpers.fakes import ScriptedSTT, make_controller, stt_payload
from tests._helpers.media import write_fake_clip


def _events() -> tuple[list[tuple[str, dict[str, Any], str]], Any]:
    seen: list[tuple[str, dict[str, Any], str]] = []
    return seen, lambda kind, data, severity: seen.append((kind, data, severity))


def test_transcribe_builds_record(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(stt_payload())
    ctl = make_controller(stt)

    rec = asyncio.run(ctl.transcribe(clip))
    assert rec.text == "hello there this is a caption test"
    assert rec.language == "en"
    assert rec.language_confidence == 1.0
    assert rec.word_count == 7
    assert rec.character_count == len(rec.text)
    assert rec.confidence == pytest.approx(0.95)
    assert rec.quality_score == pytest.approx(0.95)
    assert rec.retries == 0
    assert rec.cache_hit is False
    assert len(rec.segments) == 2
    assert stt.calls[0]["filename"] == "clip.mp4"


def test_non_numeric_segment_ids_fall_back_to_position(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    payload = stt_payload()
    payload["segments"][0]["id"] = "seg-a"
    payload["segments"][1]["id"] = None
    rec = asyncio.run(make_controller(ScriptedSTT(payload)).transcribe(clip))
    assert [s.id for s in rec.segments] == [0, 1]


def test_unreadable_timestamps_are_a_malformed_response(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    payload = stt_payload()
    payload["segments"][1]["start"] = "soon"
    ctl = make_controller(ScriptedSTT(payload))
    with pytest.raises(MalformedResponse) as ei:
        asyncio.run(ctl.transcribe(clip))
    assert ei.value.retryable is False
    assert ctl.metrics()["cache"]["sets"] == 0


def test_second_call_is_served_from_cache(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(stt_payload())
    ctl = make_controller(stt)
    seen, hook = _events()

    first = asyncio.run(ctl.transcribe(clip))
    second = asyncio.run(ctl.transcribe(clip, on_event=hook))
    assert len(stt.calls) == 1
    assert second.cache_hit is True
    assert second.content_dict() == first.content_dict()
    assert [k for k, _, _ in seen] == ["transcription_cache_hit"]
    assert ctl.metrics()["cache"]["hits"] == 1


def test_options_are_part_of_the_cache_key(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(stt_payload())
    ctl = make_controller(stt)

    asyncio.run(ctl.transcribe(clip, TranscriptionOptions(temperature=0.0)))
    asyncio.run(ctl.transcribe(clip, TranscriptionOptions(temperature=0.2)))
    assert len(stt.calls) == 2


def test_each_failed_attempt_is_reported(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(ProviderError("upstream 503", status_code=503), stt_payload())
    ctl = make_controller(stt)
    seen, hook = _events()

    rec = asyncio.run(ctl.transcribe(clip, on_event=hook))
    assert rec.retries == 1
    failed = [d for k, d, _ in seen if k == "transcription_attempt_failed"]
    assert len(failed) == 1
    assert failed[0]["attempt"] == 1
    assert failed[0]["will_retry"] is True
    assert seen[-1][0] == "transcription_completed"
    assert seen[-1][2] == "success"


def test_retry_exhaustion_is_fatal(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(ProviderTimeout("slow"))
    ctl = make_controller(stt)
    seen, hook = _events()

    with pytest.raises(RetryExhausted) as ei:
        asyncio.run(ctl.transcribe(clip, on_event=hook))
    assert ei.value.retryable is False
    assert ei.value.details["attempts"] == 3
    failed = [d for k, d, _ in seen if k == "transcription_attempt_failed"]
    assert [d["attempt"] for d in failed] == [1, 2, 3]
    assert failed[-1]["will_retry"] is False
    assert failed[-1]["retry_delay_s"] is None
    assert len(stt.calls) == 3


def test_non_retryable_provider_error_is_raised_once(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(ProviderError("bad request", status_code=400, retryable=False))
    with pytest.raises(ProviderError):
        asyncio.run(make_controller(stt).transcribe(clip))
    assert len(stt.calls) == 1


def test_cost_limit_refuses_before_calling_provider(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(stt_payload())
    ctl = make_controller(stt, cost_tracker=CostTracker(limit_usd=0.0))

    with pytest.raises(CostLimitExceeded):
        asyncio.run(ctl.transcribe(clip))
    assert stt.calls == []


def test_low_confidence_fails_quality_gate_and_is_not_cached(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    stt = ScriptedSTT(stt_payload(confidence=0.3))
    ctl = make_controller(stt)

    for _ in range(2):
        with pytest.raises(QualityValidationFailed) as ei:
            asyncio.run(ctl.transcribe(clip))
    assert ei.value.details["min_confidence"] == 0.7
    assert len(stt.calls) == 2


def test_too_few_words_fails_quality_gate(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    ctl = make_controller(ScriptedSTT(stt_payload("hi there")))
    with pytest.raises(QualityValidationFailed) as ei:
        asyncio.run(ctl.transcribe(clip))
    assert ei.value.details == {"word_count": 2, "min_word_count": 5}


def test_expected_language_mismatch(tmp_path: Path) -> None:
    clip = write_fake_clip(tmp_path / "clip.mp4")
    ctl = make_controller(ScriptedSTT(stt_payload(language="english")))
    with pytest.raises(LanguageConfidenceTooLow) as ei:
        asyncio.run(ctl.transcribe(clip, TranscriptionOptions(language="es", expected_language="es")))
    assert ei.value.details["detected"] == "en"


def test_missing_media_is_reported(tmp_path: Path) -> None:
    ctl = make_controller(ScriptedSTT())
    with pytest.raises(SourceNotFound):
        asyncio.run(ctl.transcribe(tmp_path / "nope.mp4"))


def test_language_names_are_normalized() -> None:
    assert normalize_language("Vietnamese") == "vi"
    assert normalize_language("fr") == "fr"
    assert normalize_language(None) == ""


def test_ttl_cache_expires_and_copies() -> None:
    now = {"t": 100.0}
    cache = TTLCache(ttl_s=10.0, clock=lambda: now["t"])
    key = make_key("transcription", {"a": 1})
    assert key.startswith("transcription:")

    cache.put(key, {"words": [1, 2]})
    got = cache.get(key)
    got["words"].append(3)
    assert cache.get(key) == {"words": [1, 2]}

    now["t"] = 111.0
    assert cache.get(key) is None
    m = cache.metrics()
    assert m["hits"] == 2
    assert m["evictions"] == 1


def test_cost_tracker_ledger() -> None:
    tracker = CostTracker(limit_usd=0.01)
    cost = estimate_stt_cost(30.0, per_minute_usd=0.006)
    assert cost == pytest.approx(0.003)
    tracker.reserve(cost, operation="stt:a")
    tracker.reserve(cost, operation="stt:b")
    with pytest.raises(CostLimitExceeded):
        tracker.reserve(0.005, operation="stt:c")
    assert [e["operation"] for e in tracker.ledger()] == ["stt:a", "stt:b"]
    assert tracker.total_usd == pytest.approx(0.006)


class _Resp:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _Session:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.requests: list[dict[str, Any]] = []

    def post(self, url: str, **kw: Any) -> _Resp:
        self.requests.append({"url": url, **kw})
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _client(result: Any) -> tuple[OpenAIWhisperClient, _Session]:
    sess = _Session(result)
    return OpenAIWhisperClient(api_key="sk-test", base_url="https://stt.test/v1", session=sess), sess


def _call(client: OpenAIWhisperClient) -> dict[str, Any]:
    return client.transcribe(
        b"audio",
        filename="clip.mp3",
        language="en",
        response_format="verbose_json",
        timestamp_granularities=["word", "segment"],
    )


def test_whisper_client_posts_multipart() -> None:
    client, sess = _client(_Resp(200, {"text": "hello"}))
    assert _call(client) == {"text": "hello"}
    req = sess.requests[0]
    assert req["url"] == "https://stt.test/v1/audio/transcriptions"
    assert ("timestamp_granularities[]", "word") in req["data"]
    assert req["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.parametrize(
    ("result", "exc", "retryable"),
    [
        (_Resp(503), ProviderError, True),
        (_Resp(429), ProviderError, True),
        (_Resp(401, text="unauthorized"), ProviderError, False),
        (_Resp(200, ValueError("not json")), MalformedResponse, False),
        (_Resp(200, {"no_text": True}), MalformedResponse, False),
        (requests.exceptions.Timeout("t"), ProviderTimeout, True),
        (requests.exceptions.ConnectionError("c"), NetworkError, True),
    ],
)
def test_whisper_client_error_mapping(result: Any, exc: type, retryable: bool) -> None:
    client, _ = _client(result)
    with pytest.raises(exc) as ei:
        _call(client)
    assert ei.value.retryable is retryable


def test_whisper_client_requires_key() -> None:
    client = OpenAIWhisperClient(api_key="", session=_Session(_Resp(200, {"text": "x"})))
    with pytest.raises(ProviderError) as ei:
        _call(client)
    assert ei.value.retryable is False
