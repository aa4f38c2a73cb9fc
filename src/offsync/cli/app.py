"""Main CLI application using Typer."""

import logging

import typer
from rich.console import Console

from offsync import __version__
from offsync.cli.commands.cache import cache_app
from offsync.cli.commands.config import config_app
from offsync.cli.commands.sync import sync_app

app = typer.Typer(
    name="offsync",
    help="offsync - Offline cache and sync queue",
    add_completion=False,
)
console = Console()

# Register subcommands
app.add_typer(config_app, name="config")
app.add_typer(cache_app, name="cache")
app.add_typer(sync_app, name="sync")


def version_callback(value: bool) -> None:
    """Show version information."""
    if value:
        console.print(f"offsync version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync activity"),
) -> None:
    """offsync CLI - Inspect the local cache and manage offline sync."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


if __name__ == "__main__":
    app()
