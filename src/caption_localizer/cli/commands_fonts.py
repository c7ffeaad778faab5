from __future__ import annotations

import asyncio
import json
from dataclasses import asdict

import click

from caption_localizer.errors import UnsupportedLanguage
from caption_localizer.fonts.engine import FontSelectionEngine


@click.group(help="Font selection and diagnostics.")
def fonts() -> None:
    pass


@fonts.command("select", help="Print the font decision for TEXT in a language.")
@click.argument("text")
@click.option("--lang", "language", required=True, help="Target language code (e.g. vi, ar, ja).")
def select(text: str, language: str) -> None:
    engine = FontSelectionEngine()
    try:
        decision = engine.select_font(text, language)
    except UnsupportedLanguage as ex:
        raise click.ClickException(ex.message) from ex
    click.echo(json.dumps(decision.to_dict(), indent=2, ensure_ascii=False))


@fonts.command("validate", help="Score FONT (0-100) for a language and sample text.")
@click.argument("font")
@click.option("--lang", "language", required=True)
@click.option("--sample", "sample_text", default="", help="Sample text to measure coverage against.")
def validate(font: str, language: str, sample_text: str) -> None:
    result = FontSelectionEngine().validate_font(font, language, sample_text)
    click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))


@fonts.command("recommend", help="Font recommendations for a language.")
@click.option("--lang", "language", required=True)
@click.option("--use-case", default=None, type=click.Choice(["body", "heading", "display", "code"]))
def recommend(language: str, use_case: str | None) -> None:
    engine = FontSelectionEngine()
    try:
        rec = engine.font_recommendations(language, use_case)
    except UnsupportedLanguage as ex:
        raise click.ClickException(ex.message) from ex
    click.echo(json.dumps(rec, indent=2, ensure_ascii=False))


@fonts.command("preload", help="Load the primary and top secondary fonts for a language.")
@click.option("--lang", "language", required=True)
def preload(language: str) -> None:
    engine = FontSelectionEngine()
    try:
        results = asyncio.run(engine.preload_language_fonts(language))
    except UnsupportedLanguage as ex:
        raise click.ClickException(ex.message) from ex
    out = {
        "language": language,
        "fonts": [asdict(r) for r in results],
        "metrics": engine.metrics(),
    }
    click.echo(json.dumps(out, indent=2, ensure_ascii=False))


def add_commands(cli_group) -> None:
    cli_group.add_command(fonts)
