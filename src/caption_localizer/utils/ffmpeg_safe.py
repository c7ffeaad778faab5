from __future__ import annotations

import asyncio
import json
import subprocess
from contextlib import suppress
from pathlib import Path
from typing import Any

from caption_localizer.config import get_settings

_FORBIDDEN_FLAGS = {
    "-stats_file",
    "-dump_attachment",
}
# Filter scripts are allowed, but only from inside the job work dir.
_SCRIPT_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-filter_complex_script",
}


class FFmpegError(RuntimeError):
    pass


def _validate_args(argv: list[str], *, script_root: Path | None = None) -> None:
    for i, a in enumerate(argv):
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg/ffprobe flag: {a}")
        if a in _SCRIPT_FLAGS:
            if script_root is None or i + 1 >= len(argv):
                raise FFmpegError(f"Filter script flag requires a work-dir script: {a}")
            target = Path(argv[i + 1]).resolve()
            if not target.is_relative_to(Path(script_root).resolve()):
                raise FFmpegError(f"Filter script outside work dir: {target}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: float | None = None,
    capture: bool = False,
    script_root: Path | None = None,
) -> subprocess.CompletedProcess[str] | None:
    """
    Run ffmpeg/ffprobe once. Retrying is the caller's concern (see RetryPolicy).
    """
    _validate_args(argv, script_root=script_root)
    try:
        if capture:
            return subprocess.run(
                argv,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        subprocess.run(
            argv,
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=timeout_s,
        )
        return None
    except subprocess.TimeoutExpired as ex:
        raise FFmpegError(f"ffmpeg timed out after {timeout_s}s") from ex
    except subprocess.CalledProcessError as ex:
        stderr = ""
        with suppress(Exception):
            if ex.stderr:
                if isinstance(ex.stderr, bytes):
                    stderr = ex.stderr.decode("utf-8", errors="replace")
                else:
                    stderr = str(ex.stderr)
        raise FFmpegError(
            "ffmpeg failed "
            f"(exit={ex.returncode})\n"
            f"argv={argv}\n"
            f"stderr_tail={_tail(stderr)}"
        ) from ex
    except OSError as ex:
        raise FFmpegError(f"ffmpeg failed: {ex} (argv={argv})") from ex


async def run_ffmpeg_async(
    argv: list[str],
    *,
    timeout_s: float | None = None,
    script_root: Path | None = None,
) -> None:
    """
    Cancellable ffmpeg run: cancelling the awaiting task kills the child process.
    """
    _validate_args(argv, script_root=script_root)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as ex:
        raise FFmpegError(f"ffmpeg failed to start: {ex} (argv={argv})") from ex
    try:
        _, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as ex:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise FFmpegError(f"ffmpeg timed out after {timeout_s}s") from ex
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        stderr = (err or b"").decode("utf-8", errors="replace")
        raise FFmpegError(
            "ffmpeg failed "
            f"(exit={proc.returncode})\n"
            f"argv={argv}\n"
            f"stderr_tail={_tail(stderr)}"
        )


def parse_probe_output(data: dict[str, Any]) -> dict[str, Any]:
    """
    Reduce raw `ffprobe -print_format json` output to the fields the pipeline uses.
    """
    fmt = data.get("format") if isinstance(data, dict) else {}
    streams = data.get("streams") if isinstance(data, dict) else []
    format_name = ""
    duration_s = 0.0
    size_bytes = 0
    if isinstance(fmt, dict):
        format_name = str(fmt.get("format_name") or "").strip()
        with suppress(TypeError, ValueError):
            duration_s = float(fmt.get("duration") or 0.0)
        with suppress(TypeError, ValueError):
            size_bytes = int(fmt.get("size") or 0)

    video: dict[str, Any] | None = None
    audio: dict[str, Any] | None = None
    for st in streams if isinstance(streams, list) else []:
        if not isinstance(st, dict):
            continue
        kind = str(st.get("codec_type") or "")
        if kind == "video" and video is None:
            video = st
        elif kind == "audio" and audio is None:
            audio = st

    info: dict[str, Any] = {
        "format_name": format_name,
        "duration_s": float(duration_s),
        "size_bytes": int(size_bytes),
        "width": 0,
        "height": 0,
        "video_codec": "",
        "audio_codec": "",
        "has_audio": audio is not None,
        "sample_rate": 0,
        "channels": 0,
    }
    if video is not None:
        with suppress(TypeError, ValueError):
            info["width"] = int(video.get("width") or 0)
            info["height"] = int(video.get("height") or 0)
        info["video_codec"] = str(video.get("codec_name") or "").lower()
    if audio is not None:
        info["audio_codec"] = str(audio.get("codec_name") or "").lower()
        with suppress(TypeError, ValueError):
            info["sample_rate"] = int(audio.get("sample_rate") or 0)
            info["channels"] = int(audio.get("channels") or 0)
    return info


def ffprobe_media_info(path: Path, *, timeout_s: int = 20) -> dict[str, Any]:
    """
    Safe ffprobe metadata probe.

    Returns a dict with format_name, duration_s, size_bytes, width, height,
    video_codec, audio_codec, has_audio, sample_rate, channels.
    """
    s = get_settings()
    argv = [
        str(s.ffprobe_bin),
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    _validate_args(argv)
    try:
        out = subprocess.check_output(argv, stderr=subprocess.DEVNULL, timeout=timeout_s).decode(
            "utf-8", errors="replace"
        )
    except subprocess.TimeoutExpired as ex:
        raise FFmpegError("ffprobe timed out") from ex
    except (OSError, subprocess.CalledProcessError) as ex:
        raise FFmpegError(f"ffprobe failed: {ex}") from ex

    try:
        data = json.loads(out) if out else {}
    except ValueError as ex:
        raise FFmpegError(f"ffprobe returned invalid JSON: {ex}") from ex
    return parse_probe_output(data)


def extract_audio_mp3(*, src: Path, dst: Path, timeout_s: float = 60.0) -> Path:
    """
    Mono 16 kHz MP3 at 128k, the upload format the speech-to-text provider prefers.
    """
    s = get_settings()
    argv = [
        str(s.ffmpeg_bin),
        "-y",
        "-i",
        str(src),
        "-vn",
        "-ac",
        "1",
        "-ar",
        "16000",
        "-c:a",
        "libmp3lame",
        "-b:a",
        "128k",
        str(dst),
    ]
    run_ffmpeg(argv, timeout_s=timeout_s)
    return dst
