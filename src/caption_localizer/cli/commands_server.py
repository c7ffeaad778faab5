from __future__ import annotations

import json

import click

from caption_localizer.config import get_settings
from caption_localizer.utils.log import set_log_level


@click.command("serve", help="Run the HTTP API (uvicorn).")
@click.option("--host", default=None, help="Bind address (default: HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT).")
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
def serve(host: str | None, port: int | None, log_level: str | None) -> None:
    import uvicorn

    s = get_settings()
    if log_level:
        set_log_level(log_level)
    uvicorn.run(
        "caption_localizer.web.server:create_app",
        factory=True,
        host=host or str(s.host),
        port=int(port or s.port),
        log_level=str(log_level or s.log_level).lower(),
    )


@click.command("config-report", help="Print the effective configuration (secrets masked).")
def config_report() -> None:
    from config.settings import get_safe_config_report

    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


def add_commands(cli_group) -> None:
    cli_group.add_command(serve)
    cli_group.add_command(config_report)
