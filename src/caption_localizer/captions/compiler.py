"""
Caption compiler: timed segments + a font decision -> drawbox/drawtext directives.

The output `SubtitleDescription` is pure data; `build_filter_graph` turns it into
an ffmpeg filter graph for the render executor.
"""

from __future__ import annotations

from collections.abc import Iterable

from caption_localizer.captions.models import (
    CaptionSegment,
    CueDirective,
    SafeArea,
    StyleConfig,
    SubtitleDescription,
    validate_track,
)
from caption_localizer.captions.styles import WATERMARK_COLOR, WATERMARK_FONT_SIZE, language_style
from caption_localizer.errors import InvalidRequest
from caption_localizer.fonts.engine import FontDecision

CHAR_WIDTH_RATIO = 0.6
LINE_HEIGHT_RATIO = 1.2
MIN_BOX_WIDTH = 200.0
PADDING_SIMPLE = 10
PADDING_COMPLEX = 20
_VERTICALS = {"bottom", "top"}

# Option values are unescaped twice: once by the filter graph parser, once by
# the filter's own key=value parser. Values are emitted unquoted.
_VALUE_SPECIALS = "\\':"
# % and braces only matter to drawtext expansion, which is switched off.
_GRAPH_SPECIALS = "\\'[],;%{}"


def _backslash(text: str, specials: str) -> str:
    return "".join("\\" + c if c in specials else c for c in text)


def escape_filter_value(value: str) -> str:
    return _backslash(_backslash(str(value), _VALUE_SPECIALS), _GRAPH_SPECIALS)


def escape_drawtext(text: str) -> str:
    """
    Escape caption text for a drawtext `text=` value.

    Line breaks stay literal newlines, which drawtext renders as new lines.
    """
    normalized = str(text or "").replace("\r\n", "\n").replace("\r", "\n").strip()
    return escape_filter_value(normalized)


def _n(v: float) -> str:
    return f"{float(v):.2f}".rstrip("0").rstrip(".")


def safe_area(
    text: str,
    *,
    font_size: int,
    rtl: bool = False,
    complex_script: bool = False,
    vertical: str = "bottom",
) -> SafeArea:
    """
    Background box + text anchor for one cue.

    Width is estimated from the character count; RTL cues hug the right edge,
    everything else is centered.
    """
    text_w = max(len(str(text or "").strip()) * font_size * CHAR_WIDTH_RATIO, MIN_BOX_WIDTH)
    text_h = font_size * LINE_HEIGHT_RATIO
    pad = PADDING_COMPLEX if complex_script else PADDING_SIMPLE
    box_w = text_w + pad * 2
    box_h = text_h + pad * 2

    if rtl:
        x = f"w-{_n(box_w + pad)}"
        text_x = f"w-{_n(text_w + pad * 2)}"
    else:
        x = f"(w-{_n(box_w)})/2"
        text_x = f"(w-{_n(text_w)})/2"

    if vertical == "top":
        y = _n(pad)
        text_y = _n(pad * 2)
    else:
        y = f"h-{_n(box_h)}"
        text_y = f"h-{_n(text_h + pad)}"

    return SafeArea(x=x, y=y, width=box_w, height=box_h, text_x=text_x, text_y=text_y, padding=pad)


def compile_captions(
    segments: Iterable[CaptionSegment],
    decision: FontDecision,
    style: StyleConfig | None = None,
) -> SubtitleDescription:
    style = style or StyleConfig()
    lang = language_style(decision.language)
    rtl = decision.direction == "rtl"
    complex_script = lang.complex_script or (decision.requires_special_rendering and not rtl)
    vertical = (style.vertical or lang.vertical).strip().lower()
    if vertical not in _VERTICALS:
        raise InvalidRequest(f"Unsupported vertical position: {vertical}")
    font_size = int(style.font_size or lang.font_size)
    if font_size <= 0:
        raise InvalidRequest("font_size must be positive")

    cues: list[CueDirective] = []
    for seg in validate_track(segments):
        text = seg.text.strip()
        if not text:
            continue
        cues.append(
            CueDirective(
                segment_id=seg.id,
                start=float(seg.start),
                end=float(seg.end),
                text=text,
                escaped_text=escape_drawtext(text),
                font_size=font_size,
                font_color=style.font_color,
                box_color=style.box_color,
                outline_color=style.outline_color,
                shadow_color=style.shadow_color,
                area=safe_area(
                    text,
                    font_size=font_size,
                    rtl=rtl,
                    complex_script=complex_script,
                    vertical=vertical,
                ),
                anchor="right" if rtl else "center",
            )
        )

    return SubtitleDescription(
        language=decision.language,
        direction=decision.direction,
        vertical=vertical,
        font_family=decision.primary_font,
        font_file=style.font_file,
        fallback_chain=decision.fallback_chain,
        cues=tuple(cues),
        watermark_text=(style.watermark_text or "").strip() or None,
        warnings=decision.warnings,
    )


def _font_opt(desc: SubtitleDescription) -> str:
    if desc.font_file:
        return f"fontfile={escape_filter_value(desc.font_file)}"
    # fontconfig lookup by family name
    return f"font={escape_filter_value(desc.font_family)}"


def _enable(cue: CueDirective) -> str:
    return f"enable='between(t,{cue.start:.3f},{cue.end:.3f})'"


def cue_filters(cue: CueDirective, font: str) -> list[str]:
    a = cue.area
    out = [
        f"drawbox=x={a.x}:y={a.y}:w={_n(a.width)}:h={_n(a.height)}:color={cue.box_color}:t=fill:{_enable(cue)}"
    ]
    if cue.outline_color and cue.outline_color != "none":
        out.append(
            f"drawtext=expansion=none:text={cue.escaped_text}:{font}:fontsize={cue.font_size}"
            f":fontcolor={cue.outline_color}:x={a.text_x}+1:y={a.text_y}+1:{_enable(cue)}"
        )
    main = (
        f"drawtext=expansion=none:text={cue.escaped_text}:{font}:fontsize={cue.font_size}"
        f":fontcolor={cue.font_color}:x={a.text_x}:y={a.text_y}"
    )
    if cue.shadow_color and cue.shadow_color != "none":
        main += f":shadowcolor={cue.shadow_color}:shadowx=2:shadowy=2"
    out.append(f"{main}:{_enable(cue)}")
    return out


def build_filter_graph(
    desc: SubtitleDescription, *, input_label: str = "0:v", output_label: str = "vout"
) -> str:
    font = _font_opt(desc)
    filters: list[str] = []
    for cue in desc.cues:
        filters.extend(cue_filters(cue, font))
    if desc.watermark_text:
        filters.append(
            f"drawtext=expansion=none:text={escape_drawtext(desc.watermark_text)}:{font}"
            f":fontsize={WATERMARK_FONT_SIZE}:fontcolor={WATERMARK_COLOR}:x=10:y=10"
        )
    body = ",".join(filters) if filters else "null"
    return f"[{input_label}]{body}[{output_label}]"
