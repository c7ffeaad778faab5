from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class LanguageStyle:
    font_size: int = 24
    complex_script: bool = False
    vertical: str = "bottom"


DEFAULT_STYLE = LanguageStyle()

LANGUAGE_STYLES: dict[str, LanguageStyle] = {
    "en": DEFAULT_STYLE,
    "es": DEFAULT_STYLE,
    "fr": DEFAULT_STYLE,
    "de": DEFAULT_STYLE,
    "ru": DEFAULT_STYLE,
    "vi": LanguageStyle(font_size=22),
    "ar": LanguageStyle(font_size=26),
    "hi": LanguageStyle(font_size=26, complex_script=True),
    "ja": LanguageStyle(font_size=28, complex_script=True),
    "ko": LanguageStyle(font_size=28, complex_script=True),
    "zh": LanguageStyle(font_size=28, complex_script=True),
}

WATERMARK_FONT_SIZE = 16
WATERMARK_COLOR = "white@0.5"


def language_style(language: str) -> LanguageStyle:
    return LANGUAGE_STYLES.get(str(language or "").strip().lower(), DEFAULT_STYLE)
