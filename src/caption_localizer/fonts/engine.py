from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from caption_localizer.errors import UnsupportedLanguage
from caption_localizer.fonts.loader import FontLoadError, FontPayloadLoader
from caption_localizer.fonts.registry import (
    GENERIC_FAMILIES,
    FontRegistry,
    LanguageConfig,
)
from caption_localizer.fonts.unicode import block_of, distinct_chars, required_blocks, unicode_range_spec
from caption_localizer.utils.log import logger

LOW_COVERAGE_PCT = 90.0
VALID_SCORE = 70
LARGE_FONT_BYTES = 100_000


@dataclass(frozen=True, slots=True)
class CharacterCoverage:
    supported: int
    total: int
    percentage: float
    missing: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["missing"] = list(self.missing)
        return d


@dataclass(frozen=True, slots=True)
class FontDecision:
    language: str
    primary_font: str
    fallback_chain: tuple[str, ...]
    coverage: CharacterCoverage
    warnings: tuple[str, ...]
    loading_strategy: str
    direction: str
    script: str
    unicode_range: str
    required_blocks: tuple[str, ...]
    requires_special_rendering: bool
    line_height: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "primary_font": self.primary_font,
            "fallback_chain": list(self.fallback_chain),
            "coverage": self.coverage.to_dict(),
            "warnings": list(self.warnings),
            "loading_strategy": self.loading_strategy,
            "direction": self.direction,
            "script": self.script,
            "unicode_range": self.unicode_range,
            "required_blocks": list(self.required_blocks),
            "requires_special_rendering": self.requires_special_rendering,
            "line_height": self.line_height,
        }


@dataclass(slots=True)
class FontValidation:
    is_valid: bool
    score: int
    critical: list[str] = field(default_factory=list)
    warning: list[str] = field(default_factory=list)
    suggestion: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    alternative_fonts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "score": self.score,
            "issues": {
                "critical": list(self.critical),
                "warning": list(self.warning),
                "suggestion": list(self.suggestion),
            },
            "recommendations": list(self.recommendations),
            "alternative_fonts": list(self.alternative_fonts),
        }


@dataclass(frozen=True, slots=True)
class FontLoadResult:
    font: str
    key: str
    path: str | None
    cache_status: str  # hit|miss|partial
    load_ms: float
    error: str | None = None


@dataclass(slots=True)
class _LoadedEntry:
    font: str
    path: str | None
    error: str | None
    load_ms: float
    characters: set[str] = field(default_factory=set)
    access_count: int = 1
    last_accessed: float = field(default_factory=time.time)


@dataclass(slots=True)
class FontMetrics:
    loads: int = 0
    failed_loads: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_load_ms: float = 0.0
    decisions: int = 0
    characters_checked: int = 0
    characters_missing: int = 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        lookups = self.cache_hits + self.cache_misses
        d["cache_hit_rate"] = (self.cache_hits / lookups) if lookups else 0.0
        d["average_load_ms"] = (self.total_load_ms / self.loads) if self.loads else 0.0
        d["character_fallback_rate"] = (
            (self.characters_missing / self.characters_checked) if self.characters_checked else 0.0
        )
        return d


def _text_key(language: str, text: str) -> tuple[str, str]:
    return language, hashlib.sha256(str(text).encode("utf-8")).hexdigest()


class FontSelectionEngine:
    """
    Pick a primary font and fallback chain for (language, text) and measure coverage.

    Decisions are pure functions of the registry and are memoized per
    (language, sha256(text)). Payload loads are single-flight per
    (font, language, weight, style).
    """

    def __init__(
        self,
        registry: FontRegistry | None = None,
        *,
        loader: FontPayloadLoader | None = None,
    ) -> None:
        self.registry = registry or FontRegistry()
        self._loader = loader
        self._lock = threading.Lock()
        self._decisions: dict[tuple[str, str], FontDecision] = {}
        self._loaded: dict[str, _LoadedEntry] = {}
        self._inflight: dict[str, asyncio.Future[_LoadedEntry]] = {}
        self._metrics = FontMetrics()

    @property
    def loader(self) -> FontPayloadLoader:
        if self._loader is None:
            self._loader = FontPayloadLoader()
        return self._loader

    # --- selection ---
    def language_config(self, language: str) -> LanguageConfig:
        cfg = self.registry.language(language)
        if cfg is None:
            raise UnsupportedLanguage(
                f"Unsupported language: {language}",
                details={"supported": self.registry.supported_languages()},
            )
        return cfg

    def select_font(self, text: str, language: str) -> FontDecision:
        cfg = self.language_config(language)
        key = _text_key(cfg.code, text)
        with self._lock:
            hit = self._decisions.get(key)
        if hit is not None:
            return hit

        blocks = required_blocks(text)
        primary = self._pick_primary(cfg, blocks)
        chain = self._fallback_chain(primary, cfg)
        coverage = self.coverage(text, primary, chain)
        warnings = self._warnings(coverage, cfg)
        fam = self.registry.font(primary)
        decision = FontDecision(
            language=cfg.code,
            primary_font=primary,
            fallback_chain=tuple(chain),
            coverage=coverage,
            warnings=tuple(warnings),
            loading_strategy=fam.loading_strategy if fam else "swap",
            direction=cfg.direction.value,
            script=cfg.script,
            unicode_range=unicode_range_spec(text),
            required_blocks=tuple(blocks),
            requires_special_rendering=cfg.requires_special_rendering,
            line_height=cfg.line_height_adjustment,
        )
        with self._lock:
            decision = self._decisions.setdefault(key, decision)
            self._metrics.decisions += 1
            self._metrics.characters_checked += coverage.total
            self._metrics.characters_missing += len(coverage.missing)
        if warnings:
            logger.debug(
                "font_decision_warnings",
                language=cfg.code,
                font=primary,
                coverage=round(coverage.percentage, 1),
                warnings=list(warnings),
            )
        return decision

    def _pick_primary(self, cfg: LanguageConfig, blocks: list[str]) -> str:
        wanted = set(blocks)
        for tier in (cfg.primary_fonts, cfg.secondary_fonts):
            for name in tier:
                fam = self.registry.font(name)
                if fam is not None and fam.blocks & wanted:
                    return name
        return cfg.primary_fonts[0]

    def _fallback_chain(self, primary: str, cfg: LanguageConfig) -> list[str]:
        chain: list[str] = []
        for name in (*cfg.secondary_fonts, *cfg.fallback_fonts, *GENERIC_FAMILIES):
            if name != primary and name not in chain:
                chain.append(name)
        return chain

    def supports(self, font: str, ch: str) -> bool:
        fam = self.registry.font(font)
        return fam is not None and fam.supports_block(block_of(ch))

    def coverage(self, text: str, primary: str, chain: list[str] | tuple[str, ...]) -> CharacterCoverage:
        chars = distinct_chars(text)
        supported = 0
        missing: list[str] = []
        for ch in chars:
            if self.supports(primary, ch) or any(self.supports(f, ch) for f in chain):
                supported += 1
            else:
                missing.append(ch)
        total = len(chars)
        pct = (supported / total * 100.0) if total else 100.0
        return CharacterCoverage(supported=supported, total=total, percentage=pct, missing=tuple(missing))

    def _warnings(self, coverage: CharacterCoverage, cfg: LanguageConfig) -> list[str]:
        out: list[str] = []
        if coverage.percentage < LOW_COVERAGE_PCT:
            out.append(f"Low character coverage: {coverage.percentage:.1f}%")
        if coverage.missing:
            out.append(f"{len(coverage.missing)} characters not found in primary font or fallbacks")
        if cfg.requires_special_rendering or cfg.is_rtl or cfg.is_complex:
            out.append("Language requires special rendering considerations")
        return out

    # --- diagnostics ---
    def validate_font(self, font: str, language: str, sample_text: str) -> FontValidation:
        """
        Read-only 0-100 suitability score. Never raises and never touches caches.
        """
        cfg = self.registry.language(language)
        if cfg is None:
            return FontValidation(
                is_valid=False,
                score=0,
                critical=[f"Unsupported language: {language}"],
                recommendations=["Use a supported language code"],
            )
        fam = self.registry.font(font)
        if fam is None:
            return FontValidation(
                is_valid=False,
                score=0,
                critical=[f"Unknown font family: {font}"],
                recommendations=["Use a known font family or register a custom font"],
                alternative_fonts=list(cfg.primary_fonts),
            )

        v = FontValidation(is_valid=False, score=100)
        if cfg.code not in fam.languages:
            v.warning.append(f"Font not specifically designed for {cfg.name}")
            v.score -= 20

        cov = self.coverage(sample_text, font, ())
        if cov.percentage < LOW_COVERAGE_PCT:
            v.warning.append(f"Low character coverage ({cov.percentage:.1f}%)")
            v.score -= 15
        if cov.missing:
            v.suggestion.append(
                "Consider adding fallback fonts for missing characters: " + ", ".join(cov.missing[:5])
            )
            v.score -= 10

        if fam.category == "monospace" and cfg.is_complex:
            v.warning.append("Monospace fonts may not render complex scripts well")
            v.score -= 10

        if cfg.is_rtl and not any(b.startswith("Arabic") for b in fam.blocks):
            v.critical.append("Font may not support RTL text properly")
            v.score -= 30

        if fam.file_size > LARGE_FONT_BYTES:
            v.warning.append("Large font file may impact loading performance")
            v.score -= 5

        v.score = max(0, v.score)
        v.is_valid = v.score >= VALID_SCORE
        if v.critical:
            v.recommendations.append("Consider using a different font family")
        if v.warning:
            v.recommendations.append("Review font configuration for optimal results")
        if cfg.google_fonts is not None:
            v.recommendations.append(f"Consider using {cfg.google_fonts.font}: {cfg.google_fonts.reason}")
        v.alternative_fonts = [
            *(f for f in cfg.primary_fonts if f != font),
            *(f for f in cfg.secondary_fonts if f != font),
            *cfg.fallback_fonts,
        ]
        return v

    def font_recommendations(self, language: str, use_case: str | None = None) -> dict[str, Any]:
        cfg = self.language_config(language)
        recs: list[str] = []
        if use_case == "heading":
            recs.append("Use heavier weights (600-700) for better heading visibility")
        elif use_case == "body":
            recs.append("Use regular weights (400-500) for optimal readability")
        elif use_case == "display":
            recs.append("Consider display fonts with distinctive character designs")
        elif use_case == "code":
            recs.append("Use monospace fonts for better code readability")
        else:
            recs.append("Use primary fonts for general text")
        if cfg.requires_special_rendering:
            recs.append("Ensure proper text direction and line height settings")
        return {
            "primary": list(cfg.primary_fonts),
            "secondary": list(cfg.secondary_fonts),
            "fallback": list(cfg.fallback_fonts),
            "recommendations": recs,
        }

    # --- loading ---
    @staticmethod
    def load_key(font: str, language: str | None, weight: int, style: str) -> str:
        return f"{font}-{language or 'default'}-{int(weight)}-{style or 'normal'}"

    def _cache_status(self, font: str, chars: set[str]) -> str:
        cached: set[str] = set()
        found = False
        for entry in self._loaded.values():
            if entry.font == font and entry.error is None:
                found = True
                cached |= entry.characters
        if not found:
            return "miss"
        if chars <= cached:
            return "hit"
        return "partial" if chars & cached else "miss"

    async def load_font(
        self,
        font: str,
        *,
        language: str | None = None,
        weight: int = 400,
        style: str = "normal",
        text: str = "",
    ) -> FontLoadResult:
        """
        Load a font payload once per key; concurrent callers share one in-flight load.
        """
        key = self.load_key(font, language, weight, style)
        chars = set(str(text or ""))
        with self._lock:
            status = self._cache_status(font, chars)
            entry = self._loaded.get(key)
            if entry is not None and entry.error is None:
                entry.access_count += 1
                entry.last_accessed = time.time()
                entry.characters |= chars
                self._metrics.cache_hits += 1
                return FontLoadResult(font, key, entry.path, status, 0.0)
            self._metrics.cache_misses += 1
            fut = self._inflight.get(key)
            if fut is None:
                fut = asyncio.ensure_future(self._perform_load(font, weight=weight, style=style))
                self._inflight[key] = fut
                fut.add_done_callback(lambda _f, k=key: self._finish_load(k, _f))

        # one cancelled waiter must not cancel the shared load
        loaded = await asyncio.shield(fut)
        with self._lock:
            loaded.characters |= chars
        return FontLoadResult(font, key, loaded.path, status, loaded.load_ms, loaded.error)

    def _finish_load(self, key: str, fut: asyncio.Future[_LoadedEntry]) -> None:
        with self._lock:
            self._inflight.pop(key, None)
            if fut.cancelled() or fut.exception() is not None:
                return
            entry = fut.result()
            self._metrics.loads += 1
            self._metrics.total_load_ms += entry.load_ms
            if entry.error is None:
                self._loaded[key] = entry
            else:
                self._metrics.failed_loads += 1

    async def _perform_load(self, font: str, *, weight: int, style: str) -> _LoadedEntry:
        t0 = time.perf_counter()
        fam = self.registry.font(font)
        path: Path | None = None
        error: str | None = None
        if fam is None:
            error = f"Font family not found: {font}"
        else:
            try:
                path = await asyncio.to_thread(self.loader.load, fam, weight=weight, style=style)
            except (FontLoadError, OSError) as ex:
                error = str(ex)
        load_ms = (time.perf_counter() - t0) * 1000.0
        if error:
            logger.warning("font_load_failed", font=font, weight=weight, style=style, error=error)
        else:
            logger.debug("font_loaded", font=font, path=str(path) if path else None, load_ms=round(load_ms, 2))
        return _LoadedEntry(font=font, path=str(path) if path else None, error=error, load_ms=load_ms)

    async def preload_language_fonts(self, language: str) -> list[FontLoadResult]:
        cfg = self.language_config(language)
        names = [
            n
            for n in dict.fromkeys((*cfg.primary_fonts, *cfg.secondary_fonts[:2]))
            if self.registry.font(n) is not None
        ]
        return list(await asyncio.gather(*(self.load_font(n, language=cfg.code) for n in names)))

    async def decide(
        self, text: str, language: str, *, weight: int = 400, style: str = "normal"
    ) -> tuple[FontDecision, FontLoadResult]:
        decision = self.select_font(text, language)
        loaded = await self.load_font(
            decision.primary_font, language=decision.language, weight=weight, style=style, text=text
        )
        return decision, loaded

    def metrics(self) -> dict[str, Any]:
        with self._lock:
            d = self._metrics.to_dict()
            d["families_loaded"] = len({e.font for e in self._loaded.values()})
            d["cached_decisions"] = len(self._decisions)
        return d
