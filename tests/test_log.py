from __future__ import annotations

import pytest

from caption_localizer.config import get_settings
from caption_localizer.utils.log import bind_context, redact, redact_event, set_job_id, set_request_id


def test_redacts_provider_keys_and_credentials() -> None:
    assert "sk-abcdefghijklmnopqrstuvwx" not in redact("key sk-abcdefghijklmnopqrstuvwx failed")
    assert redact("Authorization: Bearer abc.def") == "Authorization: Bearer ***REDACTED***"
    assert redact("https://user:pw@media.test/a.mp4") == "https://***REDACTED***@media.test/a.mp4"
    assert redact("api_token=hunter2hunter2, next") == "api_token=***REDACTED***, next"


def test_redacts_configured_secret_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_TOKEN", "plain-shared-token")
    get_settings.cache_clear()
    out = redact_event(None, None, {"msg": "bad auth plain-shared-token", "n": 3})
    assert out == {"msg": "bad auth ***REDACTED***", "n": 3}


def test_context_ids_are_bound() -> None:
    set_request_id("req-1")
    set_job_id("job-1")
    try:
        assert bind_context(None, None, {"event": "x"}) == {"event": "x", "request_id": "req-1", "job_id": "job-1"}
        # explicit values win
        assert bind_context(None, None, {"job_id": "other"})["job_id"] == "other"
    finally:
        set_request_id(None)
        set_job_id(None)
    assert bind_context(None, None, {}) == {}
