from __future__ import annotations

import threading
from dataclasses import dataclass

from caption_localizer.config import get_settings
from caption_localizer.errors import ConcurrencyLimitExceeded, FileTooLarge
from caption_localizer.utils.log import logger


@dataclass(frozen=True, slots=True)
class Limits:
    max_concurrent_per_client: int = 2
    max_upload_bytes: int = 50 * 1024 * 1024
    max_video_duration_s: float = 10.2
    job_timeout_s: float = 300.0


def get_limits() -> Limits:
    s = get_settings()
    return Limits(
        max_concurrent_per_client=max(0, int(s.max_concurrent_jobs_per_client)),
        max_upload_bytes=max(0, int(s.max_upload_mb)) * 1024 * 1024,
        max_video_duration_s=max(0.0, float(s.max_video_duration_sec)),
        job_timeout_s=max(0.0, float(s.job_timeout_sec)),
    )


class AdmissionController:
    """
    Per-client concurrency slots, checked and reserved atomically.

    Checks run in a fixed order (concurrency, then size) and always before any
    external call is made for the submission.
    """

    def __init__(self, limits: Limits | None = None) -> None:
        self.limits = limits or get_limits()
        self._lock = threading.Lock()
        self._active: dict[str, int] = {}

    def active(self, client_id: str) -> int:
        with self._lock:
            return self._active.get(client_id, 0)

    def _check_locked(self, client_id: str, size_bytes: int) -> int:
        cap = int(self.limits.max_concurrent_per_client)
        current = self._active.get(client_id, 0)
        if cap > 0 and current >= cap:
            logger.warning("admission_rejected", client_id=client_id, reason="concurrency", active=current)
            raise ConcurrencyLimitExceeded(
                f"Client already has {current} active jobs (limit {cap})",
                details={"active_jobs": current, "limit": cap},
            )
        max_bytes = int(self.limits.max_upload_bytes)
        if max_bytes > 0 and int(size_bytes) > max_bytes:
            logger.warning("admission_rejected", client_id=client_id, reason="size", size_bytes=size_bytes)
            raise FileTooLarge(
                f"Upload is {int(size_bytes)} bytes (limit {max_bytes})",
                details={"size_bytes": int(size_bytes), "limit_bytes": max_bytes},
            )
        return current

    def check(self, client_id: str, *, size_bytes: int = 0) -> None:
        """
        Same checks as reserve() without taking a slot (early rejection of uploads).
        """
        with self._lock:
            self._check_locked(client_id, size_bytes)

    def reserve(self, client_id: str, *, size_bytes: int = 0) -> None:
        with self._lock:
            current = self._check_locked(client_id, size_bytes)
            self._active[client_id] = current + 1

    def release(self, client_id: str) -> None:
        with self._lock:
            n = self._active.get(client_id, 0) - 1
            if n > 0:
                self._active[client_id] = n
            else:
                self._active.pop(client_id, None)
