from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from caption_localizer.render.probe import MediaInfo


def write_fake_clip(path: Path, *, payload: bytes = b"\x00\x00\x00\x18ftypmp42fake-clip") -> Path:
    """
    Bytes that stand in for a video when ffmpeg/ffprobe are faked.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


def fake_media_info(**overrides: object) -> MediaInfo:
    d: dict[str, object] = {
        "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
        "duration_s": 2.0,
        "size_bytes": 1024,
        "width": 1280,
        "height": 720,
        "video_codec": "h264",
        "audio_codec": "aac",
        "has_audio": True,
        "sample_rate": 44100,
        "channels": 2,
    }
    d.update(overrides)
    return MediaInfo.from_dict(d)


def ensure_tiny_mp4(
    path: Path,
    *,
    duration_s: float = 1.0,
    skip_message: str | None = None,
) -> Path:
    if shutil.which("ffmpeg") is None:
        if skip_message:
            import pytest

            pytest.skip(skip_message)
        raise RuntimeError("ffmpeg not available")
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return path
    subprocess.run(
        [
            "ffmpeg",
            "-y",
            "-f",
            "lavfi",
            "-i",
            "testsrc=size=160x90:rate=10",
            "-f",
            "lavfi",
            "-i",
            "sine=frequency=440:sample_rate=44100",
            "-t",
            f"{float(duration_s):.2f}",
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            str(path),
        ],
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return path
