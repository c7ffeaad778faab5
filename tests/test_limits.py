from __future__ import annotations

import pytest

from caption_localizer.config import get_settings
from caption_localizer.errors import ConcurrencyLimitExceeded, FileTooLarge
from caption_localizer.jobs.limits import AdmissionController, Limits, get_limits


def test_limits_come_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_JOBS_PER_CLIENT", "5")
    monkeypatch.setenv("MAX_UPLOAD_MB", "2")
    get_settings.cache_clear()
    limits = get_limits()
    assert limits.max_concurrent_per_client == 5
    assert limits.max_upload_bytes == 2 * 1024 * 1024


def test_concurrency_slots_per_client() -> None:
    adm = AdmissionController(Limits(max_concurrent_per_client=2))
    adm.reserve("a")
    adm.reserve("a")
    with pytest.raises(ConcurrencyLimitExceeded) as ei:
        adm.reserve("a")
    assert ei.value.details == {"active_jobs": 2, "limit": 2}
    assert ei.value.http_status == 429
    adm.reserve("b")
    adm.release("a")
    adm.reserve("a")
    assert adm.active("a") == 2


def test_check_does_not_take_a_slot() -> None:
    adm = AdmissionController(Limits(max_concurrent_per_client=1))
    adm.check("a")
    adm.check("a")
    assert adm.active("a") == 0


def test_size_limit() -> None:
    adm = AdmissionController(Limits(max_upload_bytes=100))
    adm.reserve("a", size_bytes=100)
    with pytest.raises(FileTooLarge) as ei:
        adm.reserve("b", size_bytes=101)
    assert ei.value.http_status == 413
    assert adm.active("b") == 0


def test_concurrency_is_checked_before_size() -> None:
    adm = AdmissionController(Limits(max_concurrent_per_client=1, max_upload_bytes=10))
    adm.reserve("a")
    with pytest.raises(ConcurrencyLimitExceeded):
        adm.check("a", size_bytes=10_000)


def test_release_never_goes_negative() -> None:
    adm = AdmissionController(Limits(max_concurrent_per_client=1))
    adm.release("ghost")
    adm.reserve("ghost")
    assert adm.active("ghost") == 1
