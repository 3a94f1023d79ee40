"""Command line entry point for trackgate."""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console

from trackgate import __version__
from trackgate.cli.ban_commands import bans_group
from trackgate.config.config import ConfigManager
from trackgate.exceptions import TrackgateError
from trackgate.gateway import Gateway
from trackgate.models import LogLevel

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Log at debug level",
)
@click.version_option(__version__, prog_name="trackgate")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Trackgate - admission-controlled BitTorrent tracker gateway."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


@cli.command("serve")
@click.option("--port", type=int, default=None, help="Override the HTTP port")
@click.option("--udp/--no-udp", default=None, help="Enable the UDP tracker")
@click.option("--ws/--no-ws", default=None, help="Enable the WebSocket tracker")
@click.pass_context
def serve(
    ctx: click.Context,
    port: int | None,
    udp: bool | None,
    ws: bool | None,
) -> None:
    """Run the tracker until interrupted."""
    console = Console()
    try:
        config_manager = ConfigManager(ctx.obj["config"])
    except TrackgateError as e:
        raise click.ClickException(e.message) from e

    config = config_manager.config
    if ctx.obj["verbose"]:
        config.observability.log_level = LogLevel.DEBUG
    if port is not None:
        config.http.port = port
    if udp is not None:
        config.udp.enabled = udp
    if ws is not None:
        config.websocket.enabled = ws
    config_manager.setup_logging()

    gateway = Gateway(config)
    console.print(
        f"[green]trackgate {__version__}[/green] starting "
        f"(http:{config.http.port}"
        + (f", udp:{config.udp.port}" if config.udp.enabled else "")
        + (f", ws:{config.websocket.port}" if config.websocket.enabled else "")
        + ")"
    )
    try:
        asyncio.run(gateway.run_forever())
    except TrackgateError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise click.ClickException(e.message) from e
    finally:
        gateway.store.close()


cli.add_command(bans_group)


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
