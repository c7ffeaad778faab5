from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class TranscriptionOptions:
    """
    Decoding options. Every field participates in the cache key.
    """

    language: str = "en"
    temperature: float = 0.0
    response_format: str = "verbose_json"
    timestamp_granularities: tuple[str, ...] = ("word", "segment")
    prompt: str | None = None
    # When set, the detected language must match with at least this confidence.
    expected_language: str | None = None

    def cache_parts(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "temperature": float(self.temperature),
            "response_format": self.response_format,
            "timestamp_granularities": list(self.timestamp_granularities),
            "prompt": self.prompt or "",
            "expected_language": self.expected_language or "",
        }


@dataclass(frozen=True, slots=True)
class Word:
    word: str
    start: float
    end: float
    confidence: float = 0.8


@dataclass(frozen=True, slots=True)
class Segment:
    id: int
    start: float
    end: float
    text: str
    avg_logprob: float = 0.0
    no_speech_prob: float = 0.0
    words: tuple[Word, ...] = ()


@dataclass(slots=True)
class TranscriptionRecord:
    text: str
    language: str
    language_confidence: float
    confidence: float
    quality_score: float
    duration_s: float
    words: list[Word] = field(default_factory=list)
    segments: list[Segment] = field(default_factory=list)
    word_count: int = 0
    character_count: int = 0
    cost_usd: float = 0.0
    cache_key: str = ""
    cache_hit: bool = False
    retries: int = 0
    model: str = ""
    processing_ms: float = 0.0

    def content_dict(self) -> dict[str, Any]:
        """
        Provider-derived content only (no per-call bookkeeping such as cache_hit).
        """
        d = self.to_dict()
        for k in ("cache_hit", "retries", "processing_ms"):
            d.pop(k, None)
        return d

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TranscriptionRecord:
        dd = dict(d)
        dd["words"] = [Word(**w) for w in dd.get("words") or []]
        segs = []
        for s in dd.get("segments") or []:
            ss = dict(s)
            ss["words"] = tuple(Word(**w) for w in ss.get("words") or ())
            segs.append(Segment(**ss))
        dd["segments"] = segs
        return cls(**dd)
