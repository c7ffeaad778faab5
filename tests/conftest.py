from __future__ import annotations

import pytest

from caption_localizer.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("cl_test")
    for name in ("Output", "work", "logs", "fonts", "storage"):
        (root / name).mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("LOCALIZER_OUTPUT_DIR", str(root / "Output"))
    monkeypatch.setenv("LOCALIZER_WORK_DIR", str(root / "work"))
    monkeypatch.setenv("LOCALIZER_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("LOCALIZER_FONTS_DIR", str(root / "fonts"))
    monkeypatch.setenv("LOCALIZER_STORAGE_DIR", str(root / "storage"))
    # no real backoff in tests
    monkeypatch.setenv("STEP_RETRY_BASE_SEC", "0")
    monkeypatch.setenv("STT_RETRY_BASE_SEC", "0")
    monkeypatch.setenv("RENDER_RETRY_BASE_SEC", "0")
    monkeypatch.setenv("EVENTS_POLL_SEC", "0.01")
    monkeypatch.setenv("EVENTS_CLOSE_GRACE_SEC", "0")
    monkeypatch.setenv("SUPERVISOR_INTERVAL_SEC", "0.05")
    monkeypatch.setenv("FONT_DOWNLOADS", "0")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("API_TOKEN", raising=False)
    monkeypatch.delenv("WATERMARK_TEXT", raising=False)
    get_settings.cache_clear()
