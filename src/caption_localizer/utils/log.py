"""
structlog setup: one JSON line per event, to stdout and a rotating file.

Every line carries the request id and job id bound in the current context and
is scrubbed of provider keys and the API token before it is rendered.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from caption_localizer.config import get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

_REDACTED = "***REDACTED***"
_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/]+):([^@/]+)@"), rf"\1{_REDACTED}@"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{16,}\b"), _REDACTED),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9_\-\.=]+"), f"Bearer {_REDACTED}"),
    (
        re.compile(r"(?i)\b(openai_api_key|api_token|api_key|token|secret|password)\b\s*=\s*[^\s,;]+"),
        rf"\1={_REDACTED}",
    ),
)
_CONFIGURED_FLAG = "_caption_localizer_logging"


def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)


def set_job_id(jid: str | None) -> None:
    job_id_var.set(jid)


def _configured_secrets() -> list[str]:
    out: list[str] = []
    with suppress(Exception):
        sec = get_settings().secret
        for name in ("openai_api_key", "api_token"):
            value = getattr(sec, name, None)
            raw = str(value.get_secret_value() or "") if value is not None else ""
            # short values would redact ordinary words
            if len(raw) >= 8 and raw not in out:
                out.append(raw)
    return out


def redact(text: str) -> str:
    for secret in _configured_secrets():
        text = text.replace(secret, _REDACTED)
    for pattern, repl in _PATTERNS:
        text = pattern.sub(repl, text)
    return text


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in event_dict.items():
        if isinstance(v, str):
            event_dict[k] = redact(v)
    return event_dict


def bind_context(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, var in (("request_id", request_id_var), ("job_id", job_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        bind_context,
        redact_event,
        structlog.processors.format_exc_info,
        structlog.processors.EventRenamer("msg"),
    ]


def _handlers(log_path: Path, formatter: logging.Formatter) -> list[logging.Handler]:
    s = get_settings()
    file_handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=int(s.log_max_bytes),
        backupCount=int(s.log_backup_count),
        encoding="utf-8",
    )
    stream_handler = logging.StreamHandler(sys.stdout)
    for h in (file_handler, stream_handler):
        h.setFormatter(formatter)
    return [file_handler, stream_handler]


def configure_logging(*, force: bool = False) -> structlog.stdlib.BoundLogger:
    """
    Route structlog and stdlib logging through the same JSON formatter.

    Idempotent unless force=True; stdlib records from uvicorn and friends get the
    same timestamp, context and redaction as our own events.
    """
    s = get_settings()
    root = logging.getLogger()
    root.setLevel(str(s.log_level).upper())
    if getattr(root, _CONFIGURED_FLAG, False) and not force:
        return structlog.get_logger("caption_localizer")

    log_path = Path(s.log_dir) / "app.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors(),
    )
    root.handlers.clear()
    for h in _handlers(log_path, formatter):
        root.addHandler(h)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    setattr(root, _CONFIGURED_FLAG, True)
    return structlog.get_logger("caption_localizer")


logger = configure_logging()


def set_log_level(level: str) -> None:
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
