"""
External collaborators of the pipeline and their default implementations.

The runner only sees the Protocols; tests swap in fakes.
"""

from __future__ import annotations

import hashlib
import json
import shutil
import threading
import urllib.parse
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

import requests

from caption_localizer.captions.models import CaptionSegment
from caption_localizer.config import get_settings
from caption_localizer.errors import (
    FileTooLarge,
    MalformedResponse,
    NetworkError,
    ProviderError,
    ProviderTimeout,
    RetryExhausted,
    SourceNotFound,
)
from caption_localizer.utils.io import atomic_write_bytes, ensure_dir
from caption_localizer.utils.log import logger
from caption_localizer.utils.retry import RetryPolicy, is_retryable, retry_call_async

T = TypeVar("T")

# (attempt, delay_s or None when no retry follows, error)
AttemptHook = Callable[[int, "float | None", BaseException], None]


class Translator(Protocol):
    def translate(
        self,
        segments: list[CaptionSegment],
        *,
        source_language: str,
        target_language: str,
    ) -> list[CaptionSegment]: ...


class ObjectStorage(Protocol):
    def upload(self, data: bytes, filename: str) -> dict[str, str]: ...

    def list(self, prefix: str | None = None) -> list[dict[str, Any]]: ...

    def delete(self, url: str) -> bool: ...


class MediaFetcher(Protocol):
    def fetch(self, source_ref: str, dest_dir: Path) -> Path: ...


class StepExecutor(Protocol):
    async def run(
        self,
        job_id: str,
        step: str,
        fn: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        on_attempt_failed: AttemptHook | None = None,
    ) -> T: ...


def _strip_code_fences(s: str) -> str:
    t = str(s or "").strip()
    if t.startswith("```"):
        t = t.split("\n", 1)[1] if "\n" in t else t.strip("`")
    if t.endswith("```"):
        t = t[: -3]
    return t.strip()


class OpenAIChatTranslator:
    """
    Caption translation through an OpenAI-compatible chat completions endpoint.

    Segment timing is never sent; only the texts, as a JSON array, so the reply can be
    zipped back onto the original segments.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        s = get_settings()
        if api_key is None and s.openai_api_key is not None:
            api_key = s.openai_api_key.get_secret_value()
        self._api_key = api_key or ""
        self.base_url = str(base_url or s.openai_base_url).rstrip("/")
        self.model = str(model or s.translate_model)
        self.timeout_s = float(timeout_s or s.translate_timeout_sec)
        self._session = session or requests.Session()

    def translate(
        self,
        segments: list[CaptionSegment],
        *,
        source_language: str,
        target_language: str,
    ) -> list[CaptionSegment]:
        if not segments:
            return []
        if not self._api_key:
            raise ProviderError("OPENAI_API_KEY is not configured", retryable=False)
        texts = [s.text for s in segments]
        body = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        f"Translate video captions from {source_language} to {target_language}. "
                        "Reply with a JSON array of strings with exactly one translation per "
                        "input item, in the same order. Keep each caption short."
                    ),
                },
                {"role": "user", "content": json.dumps(texts, ensure_ascii=False)},
            ],
        }
        try:
            resp = self._session.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=body,
                timeout=self.timeout_s,
            )
        except requests.exceptions.Timeout as ex:
            raise ProviderTimeout("Translation request timed out") from ex
        except requests.exceptions.ConnectionError as ex:
            raise NetworkError("Network error reaching translation provider") from ex

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderError(
                f"Translation provider returned {resp.status_code}",
                status_code=resp.status_code,
                retryable=True,
            )
        if resp.status_code != 200:
            raise ProviderError(
                f"Translation provider returned {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
                retryable=False,
            )
        try:
            content = resp.json()["choices"][0]["message"]["content"]
            translated = json.loads(_strip_code_fences(content))
        except (ValueError, KeyError, IndexError, TypeError) as ex:
            raise MalformedResponse("Translation response is not a JSON array") from ex
        if not isinstance(translated, list) or len(translated) != len(segments):
            raise MalformedResponse(
                "Translation count does not match caption count",
                details={"expected": len(segments)},
            )
        return [
            seg.with_text(str(t or "").strip() or seg.text, language=target_language)
            for seg, t in zip(segments, translated)
        ]


class LocalObjectStorage:
    """
    Content-addressed object storage on the local filesystem.

    Objects are keyed by sha256; an existing object is never rewritten.
    """

    def __init__(self, root: Path | None = None, *, public_base_url: str | None = None) -> None:
        s = get_settings()
        self.root = Path(root) if root else s.public.resolved_storage_dir()
        base = public_base_url if public_base_url is not None else (s.storage_public_base_url or "")
        self.public_base_url = str(base).rstrip("/")

    def _key(self, data: bytes, filename: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        suffix = Path(filename).suffix.lower()[:10]
        return f"{digest[:2]}/{digest}{suffix}"

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/objects/{key}"

    def key_for(self, url: str) -> str | None:
        path = urllib.parse.urlparse(str(url)).path
        marker = "/objects/"
        if marker not in path:
            return None
        key = path.split(marker, 1)[1]
        parts = key.split("/")
        if len(parts) != 2 or any(p in ("", ".", "..") for p in parts):
            return None
        return key

    def path_for(self, key: str) -> Path | None:
        p = (self.root / key).resolve()
        if not p.is_relative_to(self.root.resolve()) or not p.is_file():
            return None
        return p

    def upload(self, data: bytes, filename: str) -> dict[str, str]:
        key = self._key(data, filename)
        dst = self.root / key
        if not dst.exists():
            atomic_write_bytes(dst, data)
        url = self.url_for(key)
        name = Path(filename).name or Path(key).name
        logger.info("object_stored", key=key, size_bytes=len(data))
        return {
            "key": key,
            "url": url,
            "download_url": f"{url}?download={urllib.parse.quote(name)}",
        }

    def list(self, prefix: str | None = None) -> list[dict[str, Any]]:
        if not self.root.exists():
            return []
        out: list[dict[str, Any]] = []
        for p in sorted(self.root.glob("*/*")):
            if not p.is_file():
                continue
            key = f"{p.parent.name}/{p.name}"
            if prefix and not p.name.startswith(prefix) and not key.startswith(prefix):
                continue
            out.append({"key": key, "url": self.url_for(key), "size_bytes": p.stat().st_size})
        return out

    def delete(self, url: str) -> bool:
        key = self.key_for(url)
        if key is None:
            return False
        p = self.path_for(key)
        if p is None:
            return False
        p.unlink()
        logger.info("object_deleted", key=key)
        return True


class DefaultMediaFetcher:
    """
    Resolve a source reference into a local file: plain path, file:// or http(s).
    """

    def __init__(
        self,
        *,
        max_bytes: int | None = None,
        timeout_s: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        if max_bytes is None:
            max_bytes = int(get_settings().max_upload_mb) * 1024 * 1024
        self.max_bytes = int(max_bytes)
        self.timeout_s = float(timeout_s)
        self._session = session or requests.Session()

    def _check_size(self, n: int) -> None:
        if self.max_bytes > 0 and n > self.max_bytes:
            raise FileTooLarge(
                f"Source is {n} bytes (limit {self.max_bytes})",
                details={"size_bytes": n, "limit_bytes": self.max_bytes},
            )

    def fetch(self, source_ref: str, dest_dir: Path) -> Path:
        ref = str(source_ref or "").strip()
        parsed = urllib.parse.urlparse(ref)
        if parsed.scheme in ("http", "https"):
            return self._download(ref, Path(dest_dir))
        if parsed.scheme == "file":
            p = Path(urllib.parse.unquote(parsed.path))
        else:
            p = Path(ref)
        if not p.is_file():
            raise SourceNotFound(f"Source media not found: {p.name or ref}")
        self._check_size(p.stat().st_size)
        return p

    def _download(self, url: str, dest_dir: Path) -> Path:
        ensure_dir(dest_dir)
        name = Path(urllib.parse.urlparse(url).path).name or "source.mp4"
        dst = dest_dir / name
        tmp = dest_dir / f".{name}.part"
        try:
            with self._session.get(url, stream=True, timeout=self.timeout_s) as resp:
                if resp.status_code == 404:
                    raise SourceNotFound(f"Source media not found: {url}")
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise ProviderError(
                        f"Source host returned {resp.status_code}",
                        status_code=resp.status_code,
                        retryable=True,
                    )
                if resp.status_code != 200:
                    raise ProviderError(
                        f"Source host returned {resp.status_code}",
                        status_code=resp.status_code,
                        retryable=False,
                    )
                declared = int(resp.headers.get("Content-Length") or 0)
                self._check_size(declared)
                total = 0
                with tmp.open("wb") as f:
                    for chunk in resp.iter_content(chunk_size=1024 * 256):
                        if not chunk:
                            continue
                        total += len(chunk)
                        self._check_size(total)
                        f.write(chunk)
            shutil.move(str(tmp), str(dst))
        except requests.exceptions.Timeout as ex:
            raise ProviderTimeout(f"Timed out fetching {url}") from ex
        except requests.exceptions.ConnectionError as ex:
            raise NetworkError(f"Network error fetching {url}") from ex
        finally:
            tmp.unlink(missing_ok=True)
        logger.info("source_downloaded", url=url, size_bytes=dst.stat().st_size)
        return dst


class LocalStepExecutor:
    """
    In-process stand-in for a durable task platform.

    Each (job id, step) is an idempotency key: once a step has completed, running
    it again returns the recorded result without calling fn.
    """

    def __init__(self, *, default_policy: RetryPolicy | None = None) -> None:
        if default_policy is None:
            s = get_settings()
            default_policy = RetryPolicy(
                max_attempts=max(1, int(s.step_max_attempts)),
                base_delay_s=float(s.step_retry_base_sec),
                factor=float(s.step_retry_factor),
                cap_s=float(s.step_retry_cap_sec),
            )
        self.default_policy = default_policy
        self._lock = threading.Lock()
        self._completed: dict[str, Any] = {}

    @staticmethod
    def idempotency_key(job_id: str, step: str) -> str:
        return f"{job_id}:{step}"

    def completed(self, job_id: str, step: str) -> bool:
        with self._lock:
            return self.idempotency_key(job_id, step) in self._completed

    def forget(self, job_id: str) -> None:
        prefix = f"{job_id}:"
        with self._lock:
            for k in [k for k in self._completed if k.startswith(prefix)]:
                del self._completed[k]

    async def run(
        self,
        job_id: str,
        step: str,
        fn: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        on_attempt_failed: AttemptHook | None = None,
    ) -> T:
        key = self.idempotency_key(job_id, step)
        with self._lock:
            if key in self._completed:
                logger.info("step_replayed", job_id=job_id, step=step)
                return self._completed[key]
        pol = policy or self.default_policy
        logger.info("step_started", job_id=job_id, step=step, max_attempts=pol.max_attempts)
        attempts = {"n": 0}

        async def _counted() -> T:
            attempts["n"] += 1
            return await fn()

        try:
            result = await retry_call_async(
                _counted,
                policy=pol,
                on_retry=on_attempt_failed,
                on_giveup=(lambda a, ex: on_attempt_failed(a, None, ex)) if on_attempt_failed else None,
            )
        except Exception as ex:
            if is_retryable(ex):
                raise RetryExhausted(
                    f"Step {step} failed after {attempts['n']} attempts: {ex}",
                    details={"step": step, "attempts": attempts["n"], "last_error": str(ex)},
                ) from ex
            raise
        with self._lock:
            self._completed[key] = result
        logger.info("step_completed", job_id=job_id, step=step, attempts=attempts["n"])
        return result
