from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from caption_localizer.errors import InvalidRequest


@dataclass(frozen=True, slots=True)
class CaptionSegment:
    id: str
    start: float
    end: float
    text: str
    language: str
    confidence: float | None = None

    def __post_init__(self) -> None:
        if float(self.start) < 0:
            raise InvalidRequest(f"Caption {self.id}: start must be >= 0")
        if not float(self.start) < float(self.end):
            raise InvalidRequest(
                f"Caption {self.id}: start ({self.start}) must be before end ({self.end})"
            )
        if self.confidence is not None and not 0.0 <= float(self.confidence) <= 1.0:
            raise InvalidRequest(f"Caption {self.id}: confidence must be within [0, 1]")

    @property
    def duration(self) -> float:
        return float(self.end) - float(self.start)

    def with_text(self, text: str, *, language: str | None = None) -> CaptionSegment:
        return CaptionSegment(
            id=self.id,
            start=self.start,
            end=self.end,
            text=text,
            language=language or self.language,
            confidence=self.confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any], *, language: str | None = None, index: int = 0) -> CaptionSegment:
        conf = d.get("confidence")
        return cls(
            id=str(d.get("id") or f"seg_{index + 1}"),
            start=float(d.get("start", d.get("start_time", 0.0))),
            end=float(d.get("end", d.get("end_time", 0.0))),
            text=str(d.get("text") or ""),
            language=str(d.get("language") or language or "en"),
            confidence=float(conf) if conf is not None else None,
        )


def validate_track(segments: Iterable[CaptionSegment]) -> list[CaptionSegment]:
    """
    Return the segments ordered by start time; overlapping cues are rejected.
    """
    ordered = sorted(segments, key=lambda s: (float(s.start), float(s.end)))
    for prev, cur in zip(ordered, ordered[1:]):
        if float(cur.start) < float(prev.end):
            raise InvalidRequest(
                f"Caption {cur.id} overlaps {prev.id}",
                details={"segment": cur.id, "overlaps": prev.id},
            )
    return ordered


@dataclass(frozen=True, slots=True)
class StyleConfig:
    """
    Caller overrides. Unset fields take the per-language defaults.
    """

    font_size: int | None = None
    font_color: str = "white"
    box_color: str = "black@0.7"
    outline_color: str | None = "black@0.8"
    shadow_color: str | None = "black@0.5"
    vertical: str | None = None  # bottom|top
    watermark_text: str | None = None
    font_file: str | None = None


@dataclass(frozen=True, slots=True)
class SafeArea:
    x: str
    y: str
    width: float
    height: float
    text_x: str
    text_y: str
    padding: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class CueDirective:
    segment_id: str
    start: float
    end: float
    text: str
    escaped_text: str
    font_size: int
    font_color: str
    box_color: str
    outline_color: str | None
    shadow_color: str | None
    area: SafeArea
    anchor: str  # center|right

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["area"] = self.area.to_dict()
        return d


@dataclass(frozen=True, slots=True)
class SubtitleDescription:
    language: str
    direction: str
    vertical: str
    font_family: str
    font_file: str | None
    fallback_chain: tuple[str, ...]
    cues: tuple[CueDirective, ...]
    watermark_text: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.cues and not self.watermark_text

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "direction": self.direction,
            "vertical": self.vertical,
            "font_family": self.font_family,
            "font_file": self.font_file,
            "fallback_chain": list(self.fallback_chain),
            "cues": [c.to_dict() for c in self.cues],
            "watermark_text": self.watermark_text,
            "warnings": list(self.warnings),
        }
