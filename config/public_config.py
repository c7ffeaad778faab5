from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

      - Docker: /app
      - Local/dev: current working directory
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    output_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "Output").resolve(), alias="LOCALIZER_OUTPUT_DIR"
    )
    # Per-job scratch space (downloads, filter scripts, intermediate audio).
    # If unset, defaults to "<LOCALIZER_OUTPUT_DIR>/_work".
    work_dir: Path | None = Field(default=None, alias="LOCALIZER_WORK_DIR")
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="LOCALIZER_LOG_DIR"
    )
    fonts_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "fonts").resolve(), alias="LOCALIZER_FONTS_DIR"
    )
    # Local content-addressed object storage. If unset, "<LOCALIZER_OUTPUT_DIR>/objects".
    storage_dir: Path | None = Field(default=None, alias="LOCALIZER_STORAGE_DIR")

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")

    # --- web ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- job policy ---
    job_timeout_sec: float = Field(default=300.0, alias="JOB_TIMEOUT_SEC")
    max_concurrent_jobs_per_client: int = Field(default=2, alias="MAX_CONCURRENT_JOBS_PER_CLIENT")
    max_upload_mb: int = Field(default=50, alias="MAX_UPLOAD_MB")
    max_video_duration_sec: float = Field(default=10.2, alias="MAX_VIDEO_DURATION_SEC")
    supervisor_interval_sec: float = Field(default=1.0, alias="SUPERVISOR_INTERVAL_SEC")

    # --- step dispatch retry (download/probe/upload and friends) ---
    step_max_attempts: int = Field(default=3, alias="STEP_MAX_ATTEMPTS")
    step_retry_base_sec: float = Field(default=2.0, alias="STEP_RETRY_BASE_SEC")
    step_retry_factor: float = Field(default=2.0, alias="STEP_RETRY_FACTOR")
    step_retry_cap_sec: float = Field(default=10.0, alias="STEP_RETRY_CAP_SEC")

    # --- transcription ---
    stt_model: str = Field(default="whisper-1", alias="STT_MODEL")
    stt_max_retries: int = Field(default=3, alias="STT_MAX_RETRIES")
    stt_timeout_sec: float = Field(default=120.0, alias="STT_TIMEOUT_SEC")
    stt_retry_base_sec: float = Field(default=2.0, alias="STT_RETRY_BASE_SEC")
    stt_retry_factor: float = Field(default=2.0, alias="STT_RETRY_FACTOR")
    stt_retry_cap_sec: float = Field(default=10.0, alias="STT_RETRY_CAP_SEC")
    transcription_cache_ttl_sec: float = Field(default=3600.0, alias="TRANSCRIPTION_CACHE_TTL_SEC")
    min_word_count: int = Field(default=5, alias="MIN_WORD_COUNT")
    min_confidence_score: float = Field(default=0.7, alias="MIN_CONFIDENCE_SCORE")
    language_confidence_threshold: float = Field(
        default=0.9, alias="LANGUAGE_CONFIDENCE_THRESHOLD"
    )
    max_cost_limit_usd: float = Field(default=1.00, alias="MAX_COST_LIMIT_USD")
    stt_cost_per_minute_usd: float = Field(default=0.006, alias="STT_COST_PER_MINUTE_USD")

    # --- translation ---
    translate_model: str = Field(default="gpt-4o-mini", alias="TRANSLATE_MODEL")
    translate_timeout_sec: float = Field(default=60.0, alias="TRANSLATE_TIMEOUT_SEC")

    # --- render ---
    render_max_attempts: int = Field(default=3, alias="RENDER_MAX_ATTEMPTS")
    render_retry_base_sec: float = Field(default=3.0, alias="RENDER_RETRY_BASE_SEC")
    render_retry_cap_sec: float = Field(default=15.0, alias="RENDER_RETRY_CAP_SEC")
    render_timeout_sec: float = Field(default=300.0, alias="RENDER_TIMEOUT_SEC")
    render_quality: str = Field(default="medium", alias="RENDER_QUALITY")  # low|medium|high
    render_audio: bool = Field(default=True, alias="RENDER_AUDIO")
    watermark_text: str = Field(default="", alias="WATERMARK_TEXT")

    # --- event stream ---
    events_poll_sec: float = Field(default=2.0, alias="EVENTS_POLL_SEC")
    events_stream_timeout_sec: float = Field(default=300.0, alias="EVENTS_STREAM_TIMEOUT_SEC")
    events_close_grace_sec: float = Field(default=2.0, alias="EVENTS_CLOSE_GRACE_SEC")

    # --- fonts ---
    font_downloads: bool = Field(default=False, alias="FONT_DOWNLOADS")
    font_download_timeout_sec: float = Field(default=30.0, alias="FONT_DOWNLOAD_TIMEOUT_SEC")

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in str(self.cors_origins or "").split(",") if o.strip()]

    def resolved_work_dir(self) -> Path:
        return Path(self.work_dir) if self.work_dir else Path(self.output_dir) / "_work"

    def resolved_storage_dir(self) -> Path:
        return Path(self.storage_dir) if self.storage_dir else Path(self.output_dir) / "objects"
