from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from caption_localizer.errors import UnsupportedLanguage
from caption_localizer.fonts.engine import FontSelectionEngine
from caption_localizer.fonts.registry import FontFamily
from caption_localizer.fonts.unicode import block_of, required_blocks, unicode_range_spec

VI_TEXT = "Xin chào, đây là phụ đề tiếng Việt"
AR_TEXT = "مرحبا بالعالم"


class _CountingLoader:
    def __init__(self, path: Path | None = None, *, delay_s: float = 0.05) -> None:
        self.path = path
        self.delay_s = delay_s
        self.calls = 0
        self._lock = threading.Lock()

    def load(self, family: FontFamily, *, weight: int = 400, style: str = "normal") -> Path | None:
        with self._lock:
            self.calls += 1
        time.sleep(self.delay_s)
        return self.path


def test_unicode_blocks() -> None:
    assert block_of("A") == "Basic Latin"
    assert block_of("à") == "Latin-1 Supplement"
    assert block_of("đ") == "Latin Extended-A"
    assert block_of("ế") == "Latin Extended Additional"
    assert block_of("م") == "Arabic"
    assert required_blocks("aà") == ["Basic Latin", "Latin-1 Supplement"]


def test_unicode_range_spec_merges_runs() -> None:
    assert unicode_range_spec("cab") == "U+61-63"
    assert unicode_range_spec("az") == "U+61, U+7A"
    assert unicode_range_spec("") == ""


def test_vietnamese_text_is_covered() -> None:
    engine = FontSelectionEngine()
    decision = engine.select_font(VI_TEXT, "vi")
    assert decision.primary_font == "Roboto"
    assert decision.direction == "ltr"
    assert decision.coverage.percentage >= 90.0
    assert decision.coverage.missing == ()
    assert "Latin Extended Additional" in decision.required_blocks
    assert decision.fallback_chain[-3:] == ("sans-serif", "serif", "monospace")
    assert "Roboto" not in decision.fallback_chain


def test_empty_text_has_full_coverage() -> None:
    decision = FontSelectionEngine().select_font("", "en")
    assert decision.coverage.total == 0
    assert decision.coverage.percentage == 100.0
    assert decision.unicode_range == ""


def test_unsupported_language_is_rejected() -> None:
    engine = FontSelectionEngine()
    with pytest.raises(UnsupportedLanguage) as ei:
        engine.select_font("hello", "xx")
    assert "vi" in ei.value.details["supported"]


def test_arabic_is_rtl_and_flagged() -> None:
    decision = FontSelectionEngine().select_font(AR_TEXT, "ar")
    assert decision.primary_font == "Noto Sans Arabic"
    assert decision.direction == "rtl"
    assert decision.requires_special_rendering is True
    assert any("special rendering" in w for w in decision.warnings)


def test_uncovered_script_produces_low_coverage_warning() -> None:
    decision = FontSelectionEngine().select_font("こんにちは", "en")
    assert decision.coverage.percentage < 90.0
    assert len(decision.coverage.missing) == 5
    assert any(w.startswith("Low character coverage") for w in decision.warnings)


def test_fallback_rate_accumulates_across_decisions() -> None:
    engine = FontSelectionEngine()
    covered = engine.select_font(VI_TEXT, "vi").coverage
    uncovered = engine.select_font("こんにちは", "en").coverage
    # memoized decisions are not counted twice
    engine.select_font(VI_TEXT, "vi")
    m = engine.metrics()
    assert m["decisions"] == 2
    assert m["characters_checked"] == covered.total + uncovered.total
    assert m["characters_missing"] == len(covered.missing) + 5
    assert m["character_fallback_rate"] == pytest.approx(m["characters_missing"] / m["characters_checked"])
    assert m["character_fallback_rate"] < 1.0


def test_decisions_are_memoized() -> None:
    engine = FontSelectionEngine()
    a = engine.select_font(VI_TEXT, "vi")
    b = engine.select_font(VI_TEXT, "VI")
    assert a is b
    assert engine.metrics()["cached_decisions"] == 1


def test_validate_font_scores() -> None:
    engine = FontSelectionEngine()
    good = engine.validate_font("Roboto", "vi", VI_TEXT)
    assert good.is_valid is True
    assert good.score >= 70

    rtl = engine.validate_font("Roboto", "ar", AR_TEXT)
    assert rtl.is_valid is False
    assert "Font may not support RTL text properly" in rtl.critical
    assert "Noto Sans Arabic" in rtl.alternative_fonts

    unknown = engine.validate_font("Comic Sans", "en", "hi").to_dict()
    assert unknown["score"] == 0
    assert unknown["issues"]["critical"] == ["Unknown font family: Comic Sans"]

    # read-only: nothing cached
    assert engine.metrics()["cached_decisions"] == 0


def test_font_recommendations_by_use_case() -> None:
    recs = FontSelectionEngine().font_recommendations("ar", "heading")
    assert recs["primary"][0] == "Noto Sans Arabic"
    assert recs["recommendations"][0].startswith("Use heavier weights")
    assert "Ensure proper text direction and line height settings" in recs["recommendations"]


def test_concurrent_loads_share_one_flight(tmp_path: Path) -> None:
    payload = tmp_path / "Roboto-Regular.ttf"
    payload.write_bytes(b"ttf")
    loader = _CountingLoader(payload)
    engine = FontSelectionEngine(loader=loader)

    async def _go():
        first = await asyncio.gather(
            *(engine.load_font("Roboto", language="vi", text="abc") for _ in range(5))
        )
        again = await engine.load_font("Roboto", language="vi", text="ab")
        partial = await engine.load_font("Roboto", language="vi", text="abz")
        return first, again, partial

    first, again, partial = asyncio.run(_go())
    assert loader.calls == 1
    assert {r.path for r in first} == {str(payload)}
    assert {r.cache_status for r in first} == {"miss"}
    assert again.cache_status == "hit"
    assert partial.cache_status == "partial"
    m = engine.metrics()
    assert m["loads"] == 1
    assert m["families_loaded"] == 1


def test_failed_load_is_not_cached() -> None:
    engine = FontSelectionEngine(loader=_CountingLoader(delay_s=0.0))

    async def _go():
        return await engine.load_font("No Such Font", language="en")

    res = asyncio.run(_go())
    assert res.path is None
    assert res.error == "Font family not found: No Such Font"
    assert engine.metrics()["failed_loads"] == 1
    assert engine.metrics()["families_loaded"] == 0


def test_decide_returns_decision_and_payload() -> None:
    engine = FontSelectionEngine(loader=_CountingLoader(delay_s=0.0))

    async def _go():
        return await engine.decide(VI_TEXT, "vi")

    decision, loaded = asyncio.run(_go())
    assert loaded.font == decision.primary_font
    assert loaded.key == "Roboto-vi-400-normal"
    # no payload on disk: drawtext falls back to fontconfig by family name
    assert loaded.path is None
