from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

_QUALITIES = {"low", "medium", "high"}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if name in type(self.secret).model_fields:
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()


def _validate(s: Settings) -> None:
    """
    Reject combinations the pipeline cannot run with.

    Missing provider keys only warn: tests and offline CLI renders run without them.
    """
    p = s.public
    bad: list[str] = []
    if str(p.render_quality).strip().lower() not in _QUALITIES:
        bad.append("RENDER_QUALITY")
    for name, value in (
        ("JOB_TIMEOUT_SEC", p.job_timeout_sec),
        ("MAX_CONCURRENT_JOBS_PER_CLIENT", p.max_concurrent_jobs_per_client),
        ("MAX_UPLOAD_MB", p.max_upload_mb),
        ("STEP_MAX_ATTEMPTS", p.step_max_attempts),
        ("RENDER_MAX_ATTEMPTS", p.render_max_attempts),
        ("MAX_COST_LIMIT_USD", p.max_cost_limit_usd),
        ("EVENTS_POLL_SEC", p.events_poll_sec),
    ):
        if value is None or float(value) < 0:
            bad.append(name)
    for name, value in (
        ("MIN_CONFIDENCE_SCORE", p.min_confidence_score),
        ("LANGUAGE_CONFIDENCE_THRESHOLD", p.language_confidence_threshold),
    ):
        if not 0.0 <= float(value) <= 1.0:
            bad.append(name)
    if bad:
        raise ConfigError("Invalid configuration: " + ", ".join(sorted(set(bad))))

    if s.secret.openai_api_key is None:
        logging.getLogger("caption_localizer").warning(
            "provider_key_missing",
            extra={"key": "OPENAI_API_KEY"},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub_s: dict[str, Any] = {}
    for k, v in s.public.model_dump().items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(type(s.secret).model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"
    return {"public": pub_s, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s

