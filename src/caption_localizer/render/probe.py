from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from caption_localizer.config import get_settings
from caption_localizer.errors import (
    DurationTooLong,
    MissingAudioTrack,
    SourceNotFound,
    UnsupportedCodec,
)
from caption_localizer.utils.ffmpeg_safe import ffprobe_media_info

SUPPORTED_VIDEO_CODECS = frozenset({"h264", "hevc", "vp9", "av1"})
SUPPORTED_AUDIO_CODECS = frozenset({"aac", "mp3", "opus", "vorbis"})


@dataclass(frozen=True, slots=True)
class MediaInfo:
    format_name: str = ""
    duration_s: float = 0.0
    size_bytes: int = 0
    width: int = 0
    height: int = 0
    video_codec: str = ""
    audio_codec: str = ""
    has_audio: bool = False
    sample_rate: int = 0
    channels: int = 0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MediaInfo:
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in dict(d).items() if k in fields})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ProbePolicy:
    max_duration_s: float
    video_codecs: frozenset[str] = SUPPORTED_VIDEO_CODECS
    audio_codecs: frozenset[str] = SUPPORTED_AUDIO_CODECS
    require_audio: bool = True

    @classmethod
    def from_settings(cls) -> ProbePolicy:
        return cls(max_duration_s=float(get_settings().max_video_duration_sec))


def probe_media(
    path: Path, *, prober: Callable[[Path], dict[str, Any]] = ffprobe_media_info
) -> MediaInfo:
    p = Path(path)
    if not p.is_file():
        raise SourceNotFound(f"Media file not found: {p.name}")
    return MediaInfo.from_dict(prober(p))


def check_media(info: MediaInfo, policy: ProbePolicy) -> None:
    """
    Enforce the media policy; the first violation aborts the job.
    """
    if info.duration_s > policy.max_duration_s:
        raise DurationTooLong(
            f"Video is {info.duration_s:.1f}s; maximum is {policy.max_duration_s:.1f}s",
            details={"duration_s": info.duration_s, "max_duration_s": policy.max_duration_s},
        )
    if not info.video_codec or info.video_codec not in policy.video_codecs:
        raise UnsupportedCodec(
            f"Unsupported video codec: {info.video_codec or 'none'}",
            details={"video_codec": info.video_codec, "supported": sorted(policy.video_codecs)},
        )
    if policy.require_audio and not info.has_audio:
        raise MissingAudioTrack("Video has no audio track to transcribe")
    if info.has_audio and info.audio_codec not in policy.audio_codecs:
        raise UnsupportedCodec(
            f"Unsupported audio codec: {info.audio_codec or 'unknown'}",
            details={"audio_codec": info.audio_codec, "supported": sorted(policy.audio_codecs)},
        )
