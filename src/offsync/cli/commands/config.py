"""Configuration commands: inspect and change offsync settings."""

from dataclasses import fields

import typer
from rich.console import Console
from rich.table import Table

from offsync.config import Settings, get_config_file, load_config, set_config_value

config_app = typer.Typer(
    name="config",
    help="Manage offsync configuration",
)
console = Console()

_SECRET_KEYS = {"api_key"}


def _display(key: str, value: object) -> str:
    if value is None:
        return "[dim]unset[/dim]"
    if key in _SECRET_KEYS:
        return "****" + str(value)[-4:]
    return str(value)


@config_app.command("show")
def config_show() -> None:
    """Display the effective settings and where each value comes from."""
    stored = load_config()
    try:
        settings = Settings.from_config(stored)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        console.print(f"Fix it with 'offsync config set' or edit [dim]{get_config_file()}[/dim]")
        raise typer.Exit(code=1) from e

    if not stored:
        console.print("[yellow]No configuration found, showing defaults.[/yellow]")

    table = Table(title="offsync Configuration", show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_column("Source", style="dim")
    for field in fields(Settings):
        source = "config" if field.name in stored else "default"
        table.add_row(field.name, _display(field.name, getattr(settings, field.name)), source)

    console.print(table)
    console.print(f"\nConfig file: [dim]{get_config_file()}[/dim]")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting to change"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Set a configuration value.

    The value is checked before it is saved; an invalid value leaves the
    config file unchanged.

    Examples:
        offsync config set server_url http://localhost:8000
        offsync config set cache_strategy durable_only
    """
    try:
        settings = set_config_value(key, value)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e

    shown = _display(key, getattr(settings, key))
    console.print(f"[green]✓[/green] Set [cyan]{key}[/cyan] = [green]{shown}[/green]")
