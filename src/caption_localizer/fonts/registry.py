from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Direction(str, Enum):
    ltr = "ltr"
    rtl = "rtl"


class Complexity(str, Enum):
    simple = "simple"
    moderate = "moderate"
    complex = "complex"


class FontSource(str, Enum):
    google = "google"
    system = "system"
    local = "local"


GENERIC_FAMILIES: tuple[str, ...] = ("sans-serif", "serif", "monospace")


@dataclass(frozen=True, slots=True)
class FontFamily:
    name: str
    display_name: str
    category: str  # serif|sans-serif|monospace|display|handwriting
    weights: tuple[int, ...]
    styles: tuple[str, ...]
    languages: tuple[str, ...]
    blocks: frozenset[str]
    character_coverage: float  # nominal, 0..1
    source: FontSource
    url: str = ""
    file_size: int = 0  # bytes, 0 if unknown
    loading_strategy: str = "swap"
    fallback_chain: tuple[str, ...] = ()

    def supports_block(self, block: str) -> bool:
        return block in self.blocks

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["blocks"] = sorted(self.blocks)
        d["source"] = self.source.value
        return d


@dataclass(frozen=True, slots=True)
class GoogleFontsRecommendation:
    font: str
    url: str
    reason: str


@dataclass(frozen=True, slots=True)
class LanguageConfig:
    code: str
    name: str
    direction: Direction
    script: str
    primary_fonts: tuple[str, ...]
    secondary_fonts: tuple[str, ...]
    fallback_fonts: tuple[str, ...]
    system_fonts: tuple[str, ...]
    recommended_weights: tuple[int, ...]
    recommended_styles: tuple[str, ...]
    requires_special_rendering: bool
    complexity: Complexity
    line_height_adjustment: float
    letter_spacing_adjustment: float = 0.0
    google_fonts: GoogleFontsRecommendation | None = None

    @property
    def is_rtl(self) -> bool:
        return self.direction == Direction.rtl

    @property
    def is_complex(self) -> bool:
        return self.complexity == Complexity.complex

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        d["complexity"] = self.complexity.value
        return d


def _gf(family: str, axis: str) -> str:
    return f"https://fonts.googleapis.com/css2?family={family.replace(' ', '+')}:wght@{axis}&display=swap"


_LATIN_CORE = frozenset(
    {
        "Basic Latin",
        "Latin-1 Supplement",
        "General Punctuation",
        "Currency Symbols",
    }
)
_LATIN_EXT = frozenset(
    {
        "Latin Extended-A",
        "Latin Extended-B",
        "Latin Extended Additional",
        "Combining Diacritical Marks",
        "Spacing Modifier Letters",
    }
)
_GREEK_CYRILLIC = frozenset(
    {
        "Greek and Coptic",
        "Greek Extended",
        "Cyrillic",
        "Cyrillic Supplement",
    }
)
_ARABIC = frozenset(
    {
        "Arabic",
        "Arabic Supplement",
        "Arabic Extended-A",
        "Arabic Presentation Forms-A",
        "Arabic Presentation Forms-B",
    }
)
_CJK_COMMON = frozenset(
    {
        "Basic Latin",
        "Latin-1 Supplement",
        "General Punctuation",
        "CJK Symbols and Punctuation",
        "CJK Unified Ideographs",
        "CJK Compatibility Ideographs",
        "Halfwidth and Fullwidth Forms",
    }
)
_KANA = frozenset({"Hiragana", "Katakana", "Katakana Phonetic Extensions"})
_HANGUL = frozenset({"Hangul Syllables", "Hangul Jamo", "Hangul Compatibility Jamo"})


def _family(
    name: str,
    *,
    category: str = "sans-serif",
    weights: tuple[int, ...] = (400, 700),
    styles: tuple[str, ...] = ("normal",),
    languages: tuple[str, ...],
    blocks: frozenset[str],
    coverage: float,
    source: FontSource,
    url: str = "",
    file_size: int = 0,
    fallback_chain: tuple[str, ...] = (),
) -> FontFamily:
    return FontFamily(
        name=name,
        display_name=name,
        category=category,
        weights=weights,
        styles=styles,
        languages=languages,
        blocks=frozenset(blocks),
        character_coverage=coverage,
        source=source,
        url=url,
        file_size=file_size,
        loading_strategy="swap",
        fallback_chain=fallback_chain,
    )


FONT_FAMILIES: dict[str, FontFamily] = {
    f.name: f
    for f in (
        _family(
            "Roboto",
            weights=(100, 300, 400, 500, 700, 900),
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de", "vi", "ru"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC,
            coverage=0.95,
            source=FontSource.google,
            url=_gf("Roboto", "100..900"),
            file_size=168_000,
            fallback_chain=("Arial", "Helvetica", "sans-serif"),
        ),
        _family(
            "Open Sans",
            weights=(300, 400, 500, 600, 700, 800),
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de", "vi", "ru"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC | {"Hebrew"},
            coverage=0.95,
            source=FontSource.google,
            url=_gf("Open Sans", "300..800"),
            file_size=96_000,
            fallback_chain=("Arial", "sans-serif"),
        ),
        _family(
            "Lato",
            weights=(100, 300, 400, 700, 900),
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de"),
            blocks=_LATIN_CORE
            | {"Latin Extended-A", "Latin Extended-B", "Combining Diacritical Marks"},
            coverage=0.85,
            source=FontSource.google,
            url=_gf("Lato", "100;300;400;700;900"),
            file_size=72_000,
            fallback_chain=("Helvetica", "Arial", "sans-serif"),
        ),
        _family(
            "Source Sans Pro",
            weights=(200, 300, 400, 600, 700, 900),
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de", "vi", "ru"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC,
            coverage=0.92,
            source=FontSource.google,
            url=_gf("Source Sans Pro", "200..900"),
            file_size=88_000,
            fallback_chain=("Arial", "sans-serif"),
        ),
        _family(
            "Noto Sans",
            languages=("en", "es", "fr", "de", "vi", "ru", "hi"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC | {"Devanagari"},
            coverage=0.98,
            source=FontSource.google,
            url=_gf("Noto Sans", "400;700"),
            file_size=142_000,
            fallback_chain=("Roboto", "Arial", "sans-serif"),
        ),
        _family(
            "Noto Sans Arabic",
            languages=("ar",),
            blocks=_ARABIC | {"General Punctuation"},
            coverage=0.99,
            source=FontSource.google,
            url=_gf("Noto Sans Arabic", "400;700"),
            file_size=128_000,
            fallback_chain=("Tahoma", "Arial", "sans-serif"),
        ),
        _family(
            "Noto Sans JP",
            weights=(300, 400, 500, 700),
            languages=("ja",),
            blocks=_CJK_COMMON | _KANA,
            coverage=0.99,
            source=FontSource.google,
            url=_gf("Noto Sans JP", "300..700"),
            file_size=4_200_000,
            fallback_chain=("Hiragino Sans", "Yu Gothic", "sans-serif"),
        ),
        _family(
            "Noto Sans KR",
            weights=(300, 400, 500, 700),
            languages=("ko",),
            blocks=_CJK_COMMON | _HANGUL,
            coverage=0.99,
            source=FontSource.google,
            url=_gf("Noto Sans KR", "300..700"),
            file_size=4_800_000,
            fallback_chain=("Malgun Gothic", "sans-serif"),
        ),
        _family(
            "Noto Sans SC",
            weights=(300, 400, 500, 700),
            languages=("zh",),
            blocks=_CJK_COMMON | {"CJK Unified Ideographs Extension A", "Bopomofo"},
            coverage=0.99,
            source=FontSource.google,
            url=_gf("Noto Sans SC", "300..700"),
            file_size=8_100_000,
            fallback_chain=("Microsoft YaHei", "SimSun", "sans-serif"),
        ),
        _family(
            "Noto Sans Devanagari",
            languages=("hi",),
            blocks=frozenset(
                {
                    "Basic Latin",
                    "General Punctuation",
                    "Devanagari",
                    "Devanagari Extended",
                    "Vedic Extensions",
                }
            ),
            coverage=0.99,
            source=FontSource.google,
            url=_gf("Noto Sans Devanagari", "400;700"),
            file_size=210_000,
            fallback_chain=("Noto Sans", "Arial", "sans-serif"),
        ),
        _family(
            "Source Han Sans",
            weights=(300, 400, 500, 700),
            languages=("ja", "ko", "zh"),
            blocks=_CJK_COMMON | _KANA | _HANGUL | {"CJK Unified Ideographs Extension A"},
            coverage=0.98,
            source=FontSource.google,
            url=_gf("Source Han Sans", "300..700"),
            file_size=16_000_000,
            fallback_chain=("Noto Sans", "sans-serif"),
        ),
        # --- system fonts ---
        _family(
            "Arial",
            languages=("en", "es", "fr", "de", "vi", "ru"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC | _ARABIC | {"Hebrew"},
            coverage=0.85,
            source=FontSource.system,
            fallback_chain=("Helvetica", "sans-serif"),
        ),
        _family(
            "Helvetica",
            languages=("en", "es", "fr", "de"),
            blocks=_LATIN_CORE | {"Latin Extended-A"},
            coverage=0.8,
            source=FontSource.system,
            fallback_chain=("Arial", "sans-serif"),
        ),
        _family(
            "Times New Roman",
            category="serif",
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC | _ARABIC | {"Hebrew"},
            coverage=0.85,
            source=FontSource.system,
            fallback_chain=("Georgia", "serif"),
        ),
        _family(
            "Georgia",
            category="serif",
            styles=("normal", "italic"),
            languages=("en", "es", "fr", "de"),
            blocks=_LATIN_CORE | {"Latin Extended-A", "Greek and Coptic", "Cyrillic"},
            coverage=0.85,
            source=FontSource.system,
            fallback_chain=("Times New Roman", "serif"),
        ),
        _family(
            "Tahoma",
            languages=("ar", "en", "vi"),
            blocks=_LATIN_CORE | _LATIN_EXT | _GREEK_CYRILLIC | _ARABIC | {"Hebrew", "Thai"},
            coverage=0.85,
            source=FontSource.system,
            fallback_chain=("Arial", "sans-serif"),
        ),
        _family(
            "Hiragino Sans",
            weights=(300, 400, 600),
            languages=("ja",),
            blocks=_CJK_COMMON | _KANA,
            coverage=0.95,
            source=FontSource.system,
            fallback_chain=("Yu Gothic", "sans-serif"),
        ),
        _family(
            "Yu Gothic",
            weights=(300, 400, 700),
            languages=("ja",),
            blocks=_CJK_COMMON | _KANA,
            coverage=0.95,
            source=FontSource.system,
            fallback_chain=("sans-serif",),
        ),
        _family(
            "Malgun Gothic",
            languages=("ko",),
            blocks=_CJK_COMMON | _HANGUL,
            coverage=0.95,
            source=FontSource.system,
            fallback_chain=("sans-serif",),
        ),
        _family(
            "Batang",
            category="serif",
            languages=("ko",),
            blocks=_CJK_COMMON | _HANGUL,
            coverage=0.9,
            source=FontSource.system,
            fallback_chain=("serif",),
        ),
        _family(
            "Microsoft YaHei",
            languages=("zh",),
            blocks=_CJK_COMMON | {"Bopomofo"},
            coverage=0.95,
            source=FontSource.system,
            fallback_chain=("SimSun", "sans-serif"),
        ),
        _family(
            "SimSun",
            category="serif",
            languages=("zh",),
            blocks=_CJK_COMMON | {"CJK Unified Ideographs Extension A"},
            coverage=0.95,
            source=FontSource.system,
            fallback_chain=("serif",),
        ),
    )
}


def _lang(
    code: str,
    name: str,
    *,
    script: str,
    primary: tuple[str, ...],
    secondary: tuple[str, ...],
    fallback: tuple[str, ...],
    system: tuple[str, ...],
    weights: tuple[int, ...] = (300, 400, 500, 700),
    styles: tuple[str, ...] = ("normal", "italic"),
    direction: Direction = Direction.ltr,
    special: bool = False,
    complexity: Complexity = Complexity.simple,
    line_height: float = 1.3,
    google: tuple[str, str, str] | None = None,
) -> LanguageConfig:
    return LanguageConfig(
        code=code,
        name=name,
        direction=direction,
        script=script,
        primary_fonts=primary,
        secondary_fonts=secondary,
        fallback_fonts=fallback,
        system_fonts=system,
        recommended_weights=weights,
        recommended_styles=styles,
        requires_special_rendering=special,
        complexity=complexity,
        line_height_adjustment=line_height,
        google_fonts=GoogleFontsRecommendation(*google) if google else None,
    )


LANGUAGE_CONFIGS: dict[str, LanguageConfig] = {
    c.code: c
    for c in (
        _lang(
            "en",
            "English",
            script="Latin",
            primary=("Roboto", "Arial", "Helvetica"),
            secondary=("Georgia", "Times New Roman"),
            fallback=("sans-serif", "serif"),
            system=("Arial", "Times New Roman", "Georgia"),
            line_height=1.2,
            google=("Roboto", _gf("Roboto", "100..900"), "Excellent readability and comprehensive character support"),
        ),
        _lang(
            "es",
            "Spanish",
            script="Latin",
            primary=("Roboto", "Noto Sans"),
            secondary=("Open Sans", "Lato"),
            fallback=("Arial", "Helvetica", "sans-serif"),
            system=("Arial", "Helvetica"),
            google=("Roboto", _gf("Roboto", "100..900"), "Full support for Spanish accents and punctuation"),
        ),
        _lang(
            "fr",
            "French",
            script="Latin",
            primary=("Roboto", "Open Sans"),
            secondary=("Lato", "Noto Sans"),
            fallback=("Arial", "Helvetica", "sans-serif"),
            system=("Arial", "Helvetica"),
            google=("Open Sans", _gf("Open Sans", "300..800"), "Clean rendering of French diacritics"),
        ),
        _lang(
            "de",
            "German",
            script="Latin",
            primary=("Roboto", "Open Sans"),
            secondary=("Lato", "Source Sans Pro"),
            fallback=("Arial", "Helvetica", "sans-serif"),
            system=("Arial", "Helvetica"),
            google=("Source Sans Pro", _gf("Source Sans Pro", "200..900"), "Compact glyphs suit long German compounds"),
        ),
        _lang(
            "vi",
            "Vietnamese",
            script="Latin",
            primary=("Roboto", "Open Sans"),
            secondary=("Noto Sans", "Lato"),
            fallback=("Arial", "sans-serif"),
            system=("Arial",),
            complexity=Complexity.moderate,
            line_height=1.4,
            google=("Roboto", _gf("Roboto", "100..900"), "Complete Vietnamese diacritic coverage"),
        ),
        _lang(
            "ar",
            "Arabic",
            script="Arabic",
            direction=Direction.rtl,
            primary=("Noto Sans Arabic", "Tahoma"),
            secondary=("Arial", "Helvetica"),
            fallback=("sans-serif",),
            system=("Tahoma",),
            weights=(400, 700),
            styles=("normal",),
            special=True,
            complexity=Complexity.complex,
            line_height=1.6,
            google=("Noto Sans Arabic", _gf("Noto Sans Arabic", "400;700"), "Proper joining forms and right-to-left shaping"),
        ),
        _lang(
            "ja",
            "Japanese",
            script="Japanese",
            primary=("Noto Sans JP", "Source Han Sans"),
            secondary=("Hiragino Sans", "Yu Gothic"),
            fallback=("sans-serif",),
            system=("Hiragino Sans", "Yu Gothic"),
            styles=("normal",),
            special=True,
            complexity=Complexity.complex,
            line_height=1.8,
            google=("Noto Sans JP", _gf("Noto Sans JP", "300..700"), "Covers kana and common kanji"),
        ),
        _lang(
            "ko",
            "Korean",
            script="Hangul",
            primary=("Noto Sans KR", "Malgun Gothic"),
            secondary=("Source Han Sans", "Batang"),
            fallback=("sans-serif",),
            system=("Malgun Gothic", "Batang"),
            styles=("normal",),
            special=True,
            complexity=Complexity.complex,
            line_height=1.6,
            google=("Noto Sans KR", _gf("Noto Sans KR", "300..700"), "Full Hangul syllable coverage"),
        ),
        _lang(
            "zh",
            "Chinese (Simplified)",
            script="Han",
            primary=("Noto Sans SC", "Source Han Sans"),
            secondary=("Microsoft YaHei", "SimSun"),
            fallback=("sans-serif",),
            system=("Microsoft YaHei", "SimSun"),
            styles=("normal",),
            special=True,
            complexity=Complexity.complex,
            line_height=1.8,
            google=("Noto Sans SC", _gf("Noto Sans SC", "300..700"), "Simplified Chinese glyph set"),
        ),
        _lang(
            "hi",
            "Hindi",
            script="Devanagari",
            primary=("Noto Sans Devanagari", "Noto Sans"),
            secondary=("Arial", "sans-serif"),
            fallback=("sans-serif",),
            system=("Arial",),
            weights=(400, 700),
            styles=("normal",),
            special=True,
            complexity=Complexity.complex,
            line_height=1.6,
            google=("Noto Sans Devanagari", _gf("Noto Sans Devanagari", "400;700"), "Correct conjuncts and matra placement"),
        ),
        _lang(
            "ru",
            "Russian",
            script="Cyrillic",
            primary=("Roboto", "Open Sans"),
            secondary=("Noto Sans", "Source Sans Pro"),
            fallback=("Arial", "sans-serif"),
            system=("Arial",),
            complexity=Complexity.moderate,
            line_height=1.4,
            google=("Roboto", _gf("Roboto", "100..900"), "Complete Cyrillic coverage"),
        ),
    )
}


@dataclass(slots=True)
class FontRegistry:
    """
    Static catalog of font families and per-language configurations.

    Injectable so tests can register synthetic fonts without touching the defaults.
    """

    families: dict[str, FontFamily] = field(default_factory=lambda: dict(FONT_FAMILIES))
    languages: dict[str, LanguageConfig] = field(default_factory=lambda: dict(LANGUAGE_CONFIGS))

    def font(self, name: str) -> FontFamily | None:
        return self.families.get(str(name))

    def language(self, code: str) -> LanguageConfig | None:
        return self.languages.get(str(code or "").strip().lower())

    def supported_languages(self) -> list[str]:
        return sorted(self.languages)
