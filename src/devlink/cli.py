"""CLI entry point for devlink."""

import asyncio
from pathlib import Path

import click

from devlink import __version__
from devlink.broadcast import BroadcastChannel
from devlink.config import load_config
from devlink.errors import ConfigError
from devlink.linking.qr_renderer import qr_to_terminal
from devlink.logging import setup_logging
from devlink.protocol import load_client_factory
from devlink.server import LinkServer


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """devlink - Link a phone number to a messaging account."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


async def echo_artifacts(broadcast: BroadcastChannel) -> None:
    """Print pairing artifacts to the terminal until the channel closes."""
    subscriber = broadcast.subscribe()
    try:
        while True:
            update = await subscriber.get()
            if update is None:
                return
            if update.kind == "qr":
                click.echo(f"Scan to link ({update.session_id[:8]}...):")
                click.echo(qr_to_terminal(update.value))
            else:
                click.echo(f"Pairing code ({update.session_id[:8]}...): {update.display}")
    finally:
        broadcast.unsubscribe(subscriber)


@main.command()
@click.option("--host", default=None, help="Address to bind to.")
@click.option("--port", type=int, envvar="PORT", default=None, help="Port to listen on.")
@click.option(
    "--show-qr",
    is_flag=True,
    default=False,
    help="Also print pairing codes and QR codes in this terminal.",
)
@click.pass_context
def serve(
    ctx: click.Context, host: str | None, port: int | None, show_qr: bool
) -> None:
    """Run the linking server."""
    config = ctx.obj["config"]
    host = host or config.bind_address
    port = port if port is not None else config.port

    try:
        factory = load_client_factory(config.protocol.client_factory)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    async def _serve():
        server = LinkServer.from_config(config, factory)
        watcher = None
        try:
            await server.start(host, port)
            click.echo(f"Server running on http://{host}:{server.get_port()}")
            click.echo("Press Ctrl+C to stop")
            if show_qr:
                watcher = asyncio.create_task(echo_artifacts(server.broadcast))
            await asyncio.Event().wait()
        finally:
            if watcher is not None:
                watcher.cancel()
            await server.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"devlink version {__version__}")


if __name__ == "__main__":
    main()
