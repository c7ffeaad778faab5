from __future__ import annotations

import click

from caption_localizer import __version__

from . import commands_fonts, commands_render, commands_server


@click.group(name="caption-localizer", help="caption-localizer CLI (serve, fonts, render)")
@click.version_option(__version__, prog_name="caption-localizer")
def cli() -> None:
    pass


commands_server.add_commands(cli)
commands_fonts.add_commands(cli)
commands_render.add_commands(cli)

__all__ = ["cli"]

if __name__ == "__main__":  # pragma: no cover
    cli()
