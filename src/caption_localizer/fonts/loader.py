from __future__ import annotations

import re
from pathlib import Path

import requests

from caption_localizer.config import get_settings
from caption_localizer.fonts.registry import FontFamily, FontSource
from caption_localizer.utils.io import atomic_write_bytes, ensure_dir
from caption_localizer.utils.log import logger

_WEIGHT_NAMES = {
    100: "Thin",
    200: "ExtraLight",
    300: "Light",
    400: "Regular",
    500: "Medium",
    600: "SemiBold",
    700: "Bold",
    800: "ExtraBold",
    900: "Black",
}
_CSS_URL_RE = re.compile(r"url\((https://[^)\s]+?\.(?:ttf|otf))\)")
_EXTS = (".ttf", ".otf")


class FontLoadError(RuntimeError):
    pass


def font_slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "", str(name))


def candidate_filenames(family: FontFamily, weight: int, style: str) -> list[str]:
    slug = font_slug(family.name)
    wname = _WEIGHT_NAMES.get(int(weight), "Regular")
    italic = str(style).lower() in {"italic", "oblique"}
    stems = []
    if italic:
        stems += [f"{slug}-{wname}Italic", f"{slug}-Italic" if wname == "Regular" else ""]
    stems += [f"{slug}-{wname}", f"{slug}-{int(weight)}", slug]
    out: list[str] = []
    for stem in stems:
        if not stem:
            continue
        for ext in _EXTS:
            name = stem + ext
            if name not in out:
                out.append(name)
    return out


class FontPayloadLoader:
    """
    Resolve a font family to a payload file ffmpeg's drawtext can use.

    Search order: fonts dir by naming convention, then (if enabled) a Google Fonts
    download. Returns None when nothing is available; the renderer then asks
    fontconfig for the family by name.
    """

    def __init__(
        self,
        *,
        fonts_dir: Path | None = None,
        downloads: bool | None = None,
        timeout_s: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        s = get_settings()
        self.fonts_dir = Path(fonts_dir or s.fonts_dir)
        self.downloads = bool(s.font_downloads if downloads is None else downloads)
        self.timeout_s = float(timeout_s or s.font_download_timeout_sec)
        self._session = session

    def find_local(self, family: FontFamily, weight: int, style: str) -> Path | None:
        if not self.fonts_dir.is_dir():
            return None
        for name in candidate_filenames(family, weight, style):
            p = self.fonts_dir / name
            if p.is_file() and p.stat().st_size > 0:
                return p
        return None

    def load(self, family: FontFamily, *, weight: int = 400, style: str = "normal") -> Path | None:
        local = self.find_local(family, weight, style)
        if local is not None:
            return local
        if family.source != FontSource.google or not family.url or not self.downloads:
            return None
        return self._download(family, weight=weight, style=style)

    def _download(self, family: FontFamily, *, weight: int, style: str) -> Path:
        sess = self._session or requests.Session()
        try:
            css = sess.get(family.url, timeout=self.timeout_s)
            css.raise_for_status()
            urls = _CSS_URL_RE.findall(css.text)
            if not urls:
                raise FontLoadError(f"No TTF/OTF source in stylesheet for {family.name}")
            resp = sess.get(urls[0], timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as ex:
            raise FontLoadError(f"Font download failed for {family.name}: {ex}") from ex
        if not resp.content:
            raise FontLoadError(f"Empty font payload for {family.name}")
        ext = ".otf" if urls[0].lower().endswith(".otf") else ".ttf"
        dst = ensure_dir(self.fonts_dir) / (candidate_filenames(family, weight, style)[0].rsplit(".", 1)[0] + ext)
        atomic_write_bytes(dst, resp.content)
        logger.info("font_downloaded", font=family.name, path=str(dst), bytes=len(resp.content))
        return dst
