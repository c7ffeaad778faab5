from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from caption_localizer.captions.models import CaptionSegment
from caption_localizer.utils.io import atomic_write_text


def format_srt_timestamp(seconds: float) -> str:
    """
    SRT timestamp: HH:MM:SS,mmm
    """
    ms_total = int(round(max(0.0, float(seconds)) * 1000.0))
    hh, rem = divmod(ms_total, 3_600_000)
    mm, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d},{ms:03d}"


def format_vtt_timestamp(seconds: float) -> str:
    """
    WebVTT timestamp: HH:MM:SS.mmm
    """
    return format_srt_timestamp(seconds).replace(",", ".")


def render_srt(segments: Iterable[CaptionSegment]) -> str:
    parts: list[str] = []
    for idx, seg in enumerate(segments, 1):
        st = format_srt_timestamp(seg.start)
        en = format_srt_timestamp(seg.end)
        parts.append(f"{idx}\n{st} --> {en}\n{seg.text.strip()}\n")
    return "\n".join(parts)


def render_vtt(segments: Iterable[CaptionSegment]) -> str:
    """
    Cue identifiers are the segment ids so players can deep-link a cue.
    """
    parts = ["WEBVTT\n"]
    for seg in segments:
        st = format_vtt_timestamp(seg.start)
        en = format_vtt_timestamp(seg.end)
        parts.append(f"{seg.id}\n{st} --> {en}\n{seg.text.strip()}\n")
    return "\n".join(parts)


def write_srt(segments: Iterable[CaptionSegment], path: Path) -> Path:
    return atomic_write_text(path, render_srt(segments))


def write_vtt(segments: Iterable[CaptionSegment], path: Path) -> Path:
    return atomic_write_text(path, render_vtt(segments))
