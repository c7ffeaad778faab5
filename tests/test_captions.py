from __future__ import annotations

from pathlib import Path

import pytest

from caption_localizer.captions.compiler import (
    build_filter_graph,
    compile_captions,
    escape_drawtext,
    safe_area,
)
from caption_localizer.captions.models import CaptionSegment, StyleConfig, validate_track
from caption_localizer.captions.subtitles import (
    format_srt_timestamp,
    format_vtt_timestamp,
    render_srt,
    render_vtt,
    write_vtt,
)
from caption_localizer.errors import InvalidRequest
from caption_localizer.fonts.engine import FontSelectionEngine


def _seg(i: int, start: float, end: float, text: str, language: str = "en") -> CaptionSegment:
    return CaptionSegment(id=f"seg_{i}", start=start, end=end, text=text, language=language)


def test_segment_timing_is_validated() -> None:
    with pytest.raises(InvalidRequest):
        _seg(1, 2.0, 2.0, "zero length")
    with pytest.raises(InvalidRequest):
        _seg(1, -0.5, 1.0, "negative")
    with pytest.raises(InvalidRequest):
        CaptionSegment(id="s", start=0, end=1, text="x", language="en", confidence=1.5)


def test_track_is_sorted_and_overlaps_rejected() -> None:
    ordered = validate_track([_seg(2, 1.0, 2.0, "b"), _seg(1, 0.0, 1.0, "a")])
    assert [s.id for s in ordered] == ["seg_1", "seg_2"]
    with pytest.raises(InvalidRequest) as ei:
        validate_track([_seg(1, 0.0, 1.5, "a"), _seg(2, 1.0, 2.0, "b")])
    assert ei.value.details == {"segment": "seg_2", "overlaps": "seg_1"}


def test_from_dict_accepts_legacy_keys() -> None:
    seg = CaptionSegment.from_dict({"start_time": 0.5, "end_time": 1.5, "text": "hi"}, language="vi", index=2)
    assert seg.id == "seg_3"
    assert seg.language == "vi"
    assert seg.duration == pytest.approx(1.0)


def test_drawtext_escaping() -> None:
    # one backslash per unescaping level: filter graph, then option value
    assert escape_drawtext("It's 50% off: [now]") == "It\\\\\\'s 50\\% off\\\\: \\[now\\]"
    assert escape_drawtext("a\\b") == "a\\\\\\\\b"
    assert escape_drawtext("one, two; {x}") == "one\\, two\\; \\{x\\}"
    assert escape_drawtext("  padded  ") == "padded"
    assert escape_drawtext("line one\r\nline two") == "line one\nline two"


def test_safe_area_ltr_is_centered() -> None:
    area = safe_area("hello", font_size=24)
    # 5 chars * 24 * 0.6 = 72, below the 200 minimum box width
    assert area.width == 220.0
    assert area.x == "(w-220)/2"
    assert area.text_x == "(w-200)/2"
    assert area.y.startswith("h-")
    assert area.padding == 10


def test_safe_area_rtl_hugs_the_right_edge() -> None:
    area = safe_area("مرحبا بالعالم يا أصدقاء", font_size=26, rtl=True)
    assert area.x.startswith("w-")
    assert area.text_x.startswith("w-")


def test_safe_area_complex_script_and_top() -> None:
    area = safe_area("字幕", font_size=28, complex_script=True, vertical="top")
    assert area.padding == 20
    assert area.y == "20"
    assert area.text_y == "40"


def test_compile_english_captions() -> None:
    engine = FontSelectionEngine()
    segs = [_seg(1, 0.0, 1.0, "Hello"), _seg(2, 1.0, 2.0, "   "), _seg(3, 2.0, 3.0, "World")]
    decision = engine.select_font("Hello World", "en")
    desc = compile_captions(segs, decision, StyleConfig(watermark_text="  demo  "))
    assert [c.segment_id for c in desc.cues] == ["seg_1", "seg_3"]
    assert all(c.anchor == "center" for c in desc.cues)
    assert desc.cues[0].font_size == 24
    assert desc.watermark_text == "demo"
    assert desc.font_family == "Roboto"
    assert desc.vertical == "bottom"


def test_compile_arabic_captions_are_right_anchored() -> None:
    engine = FontSelectionEngine()
    text = "مرحبا بالعالم"
    desc = compile_captions([_seg(1, 0.0, 2.0, text, "ar")], engine.select_font(text, "ar"))
    cue = desc.cues[0]
    assert desc.direction == "rtl"
    assert cue.anchor == "right"
    assert cue.font_size == 26
    assert cue.area.x.startswith("w-")


def test_compile_rejects_bad_style() -> None:
    decision = FontSelectionEngine().select_font("x", "en")
    with pytest.raises(InvalidRequest):
        compile_captions([_seg(1, 0, 1, "x")], decision, StyleConfig(vertical="middle"))
    with pytest.raises(InvalidRequest):
        compile_captions([_seg(1, 0, 1, "x")], decision, StyleConfig(font_size=-3))


def test_filter_graph() -> None:
    engine = FontSelectionEngine()
    decision = engine.select_font("Hi: there", "en")
    desc = compile_captions([_seg(1, 0.0, 1.25, "Hi: there")], decision, StyleConfig(watermark_text="wm"))
    graph = build_filter_graph(desc)
    assert graph.startswith("[0:v]drawbox=")
    assert graph.endswith("[vout]")
    assert "drawtext=expansion=none:text=Hi\\\\: there:" in graph
    assert "enable='between(t,0.000,1.250)'" in graph
    assert ":font=Roboto:" in graph
    assert "text=wm:" in graph
    # box, outline pass, main text, watermark
    assert graph.count("drawtext=") == 3


def test_filter_graph_uses_font_file_when_loaded() -> None:
    decision = FontSelectionEngine().select_font("x", "en")
    desc = compile_captions([_seg(1, 0, 1, "x")], decision, StyleConfig(font_file="/fonts/Roboto-Regular.ttf"))
    assert "fontfile=/fonts/Roboto-Regular.ttf" in build_filter_graph(desc)


def test_empty_description_is_a_passthrough() -> None:
    decision = FontSelectionEngine().select_font("", "en")
    desc = compile_captions([], decision)
    assert desc.is_empty
    assert build_filter_graph(desc) == "[0:v]null[vout]"


def test_subtitle_timestamps() -> None:
    assert format_srt_timestamp(3661.5) == "01:01:01,500"
    assert format_vtt_timestamp(0.0015) == "00:00:00.002"
    assert format_srt_timestamp(-3) == "00:00:00,000"


def test_srt_and_vtt_rendering(tmp_path: Path) -> None:
    segs = [_seg(1, 0.0, 1.0, " Xin chào "), _seg(2, 1.0, 2.5, "Tạm biệt")]
    srt = render_srt(segs)
    assert srt.startswith("1\n00:00:00,000 --> 00:00:01,000\nXin chào\n")
    assert "\n2\n00:00:01,000 --> 00:00:02,500\nTạm biệt\n" in srt

    vtt = render_vtt(segs)
    assert vtt.startswith("WEBVTT\n")
    assert "seg_1\n00:00:00.000 --> 00:00:01.000\nXin chào\n" in vtt

    out = write_vtt(segs, tmp_path / "subs" / "out.vtt")
    assert out.read_text(encoding="utf-8") == vtt
