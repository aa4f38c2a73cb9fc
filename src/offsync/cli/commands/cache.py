"""Cache inspection and maintenance commands."""

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from offsync.errors import StorageUnavailable
from offsync.records import utc_now
from offsync.runtime import build_runtime
from offsync.store.entry_store import Table as StoreTable

cache_app = typer.Typer(name="cache", help="Inspect and maintain the local cache")
console = Console()


def _parse_value(raw: str) -> Any:
    """Parse a JSON value, falling back to the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@cache_app.command("get")
def cache_get(key: str = typer.Argument(..., help="Cache key")) -> None:
    """Show a cached value."""
    runtime = build_runtime()
    try:
        entry = runtime.cache.entry(key)
    finally:
        runtime.close()

    if entry is None:
        console.print(f"[yellow]No live entry for '{key}'.[/yellow]")
        raise typer.Exit(code=1)

    console.print_json(json.dumps(entry.value, default=repr))
    console.print(f"[dim]Expires at {entry.expires_at.isoformat()}[/dim]")


@cache_app.command("put")
def cache_put(
    key: str = typer.Argument(..., help="Cache key"),
    value: str = typer.Argument(..., help="JSON value (plain text is stored as a string)"),
    ttl: float | None = typer.Option(None, "--ttl", help="Time-to-live in seconds"),
) -> None:
    """Store a value in the cache."""
    runtime = build_runtime()
    try:
        result = runtime.cache.put(key, _parse_value(value), ttl)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    except StorageUnavailable as e:
        console.print(f"[red]Storage unavailable:[/red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        runtime.close()

    if result.degraded:
        console.print(f"[yellow]Cached '{key}' in memory only:[/yellow] {result.error}")
    else:
        console.print(f"[green]✓[/green] Cached [cyan]{key}[/cyan]")


@cache_app.command("remove")
def cache_remove(key: str = typer.Argument(..., help="Cache key")) -> None:
    """Remove a key from the cache."""
    runtime = build_runtime()
    try:
        runtime.cache.remove(key)
    finally:
        runtime.close()
    console.print(f"[green]✓[/green] Removed [cyan]{key}[/cyan]")


@cache_app.command("clear")
def cache_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Remove every cache entry."""
    if not yes and not typer.confirm("Remove all cache entries?"):
        raise typer.Exit()
    runtime = build_runtime()
    try:
        runtime.cache.clear()
    finally:
        runtime.close()
    console.print("[green]✓ Cache cleared.[/green]")


@cache_app.command("sweep")
def cache_sweep() -> None:
    """Remove expired entries."""
    runtime = build_runtime()
    try:
        removed = runtime.cache.sweep()
    finally:
        runtime.close()
    console.print(f"[green]✓ Removed {removed} expired entries.[/green]")


@cache_app.command("stats")
def cache_stats() -> None:
    """Show durable cache size and expiry."""
    runtime = build_runtime()
    try:
        now = utc_now()
        total = 0
        expired = 0
        for entry in runtime.store.scan(StoreTable.CACHE_ENTRIES):
            total += 1
            if entry.is_expired(now):
                expired += 1
    finally:
        runtime.close()

    table = Table(title="Cache", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Strategy", runtime.settings.cache_strategy)
    table.add_row("Durable entries", str(total))
    table.add_row("Expired (awaiting sweep)", str(expired))
    console.print(table)
