from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from caption_localizer.captions.compiler import compile_captions
from caption_localizer.captions.models import CaptionSegment, StyleConfig
from caption_localizer.captions.subtitles import write_srt, write_vtt
from caption_localizer.config import get_settings
from caption_localizer.errors import LocalizerError
from caption_localizer.fonts.engine import FontSelectionEngine
from caption_localizer.render.executor import RenderExecutor


def load_captions(path: Path, *, language: str) -> list[CaptionSegment]:
    """
    Read captions JSON: a list of {start, end, text} or {"segments": [...]}.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    items = raw.get("segments") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise click.ClickException(f"{path}: expected a list of segments")
    return [CaptionSegment.from_dict(d, language=language, index=i) for i, d in enumerate(items)]


async def _render(
    video: Path,
    segments: list[CaptionSegment],
    *,
    language: str,
    out: Path,
    quality: str,
    vertical: str | None,
) -> dict:
    engine = FontSelectionEngine()
    decision, loaded = await engine.decide(" ".join(s.text for s in segments), language)
    style = StyleConfig(
        vertical=vertical,
        font_file=loaded.path,
        watermark_text=str(get_settings().watermark_text or "").strip() or None,
    )
    description = compile_captions(segments, decision, style)
    result = await RenderExecutor().render(video, description, output_path=out, quality=quality)
    return {"render": result.to_dict(), "font": decision.to_dict()}


@click.command("render", help="Burn captions from a JSON file into VIDEO (offline, no job).")
@click.argument("video", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--lang", "language", required=True, help="Caption language.")
@click.option(
    "--captions",
    "captions_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--out", "out", required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--quality",
    type=click.Choice(["low", "medium", "high"]),
    default=lambda: str(get_settings().render_quality),
    show_default="RENDER_QUALITY",
)
@click.option("--vertical", type=click.Choice(["top", "bottom"]), default=None)
@click.option("--sidecars/--no-sidecars", default=True, show_default=True, help="Also write .srt/.vtt.")
def render(
    video: Path,
    language: str,
    captions_path: Path,
    out: Path,
    quality: str,
    vertical: str | None,
    sidecars: bool,
) -> None:
    try:
        segments = load_captions(captions_path, language=language)
        report = asyncio.run(
            _render(
                Path(video).resolve(),
                segments,
                language=language,
                out=Path(out).resolve(),
                quality=quality,
                vertical=vertical,
            )
        )
    except LocalizerError as ex:
        raise click.ClickException(f"{ex.code}: {ex.message}") from ex
    if sidecars:
        out_p = Path(out)
        report["srt"] = str(write_srt(segments, out_p.with_suffix(".srt")))
        report["vtt"] = str(write_vtt(segments, out_p.with_suffix(".vtt")))
    click.echo(json.dumps(report, indent=2, ensure_ascii=False))


def add_commands(cli_group) -> None:
    cli_group.add_command(render)
