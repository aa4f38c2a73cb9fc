"""Sync CLI commands for queue inspection and manual sync control."""

from collections.abc import Iterable
from functools import partial

import anyio
import typer
from rich.console import Console
from rich.table import Table

from offsync.client import is_online
from offsync.errors import InvalidTransition, ItemNotFound
from offsync.records import SyncItem, SyncSession, SyncStatus
from offsync.runtime import build_runtime
from offsync.sync.remote import HttpRemoteService

sync_app = typer.Typer(name="sync", help="Manage synchronization")
console = Console()

_STATUS_STYLES = {
    SyncStatus.PENDING: "yellow",
    SyncStatus.SYNCING: "cyan",
    SyncStatus.SYNCED: "green",
    SyncStatus.CONFLICT: "magenta",
    SyncStatus.FAILED: "red",
}


def _render_items(title: str, items: Iterable[SyncItem]) -> int:
    """Render sync items table. Returns the number of rows."""
    table = Table(title=title, show_header=True, header_style="bold yellow")
    table.add_column("ID", style="dim")
    table.add_column("Entity", style="cyan")
    table.add_column("Operation", style="white")
    table.add_column("Status")
    table.add_column("Retries", style="white")
    table.add_column("Modified", style="dim")
    table.add_column("Last Error", style="dim")

    rows = 0
    for item in items:
        style = _STATUS_STYLES.get(item.status, "white")
        table.add_row(
            item.id,
            f"{item.entity_type}/{item.entity_id}",
            item.operation.value,
            f"[{style}]{item.status.value}[/{style}]",
            str(item.retry_count),
            item.local_modified_at.strftime("%Y-%m-%d %H:%M:%S"),
            item.last_error or "",
        )
        rows += 1

    if rows:
        console.print(table)
    return rows


def _render_session(session: SyncSession) -> None:
    """Render a summary of a finished sync session."""
    if not session.item_ids:
        console.print("[green]No pending changes to sync.[/green]")
        return

    table = Table(title="Sync Results", show_header=True, header_style="bold yellow")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="white")
    for status, count in sorted(session.summary_counts.items()):
        table.add_row(status, str(count))
    console.print(table)
    if session.cancelled:
        console.print("[yellow]Run was cancelled before all claimed items were sent.[/yellow]")


@sync_app.command("status")
def sync_status() -> None:
    """Show queue counts per status and the last sync run."""
    runtime = build_runtime()
    try:
        counts = runtime.queue.counts()
        recent = runtime.sessions.recent(limit=1)
    finally:
        runtime.close()

    table = Table(title="Sync Queue", show_header=True, header_style="bold yellow")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="white")
    for status in SyncStatus:
        style = _STATUS_STYLES[status]
        table.add_row(f"[{style}]{status.value}[/{style}]", str(counts[status]))
    console.print(table)

    outstanding = counts[SyncStatus.PENDING] + counts[SyncStatus.SYNCING]
    if outstanding == 0:
        console.print("[green]No pending changes.[/green]")
    else:
        console.print(f"\n[yellow]Total pending changes: {outstanding}[/yellow]")

    if counts[SyncStatus.CONFLICT]:
        console.print(
            f"[magenta]{counts[SyncStatus.CONFLICT]} conflict(s) need resolution.[/magenta] "
            "See: offsync sync conflicts"
        )

    if recent:
        last = recent[0]
        ended = last.ended_at.isoformat() if last.ended_at else "still open"
        console.print(f"[dim]Last sync: {ended} ({last.processed} items)[/dim]")


@sync_app.command("run")
def sync_run() -> None:
    """Send pending changes to the server."""
    anyio.run(_sync_run_async)


async def _sync_run_async() -> None:
    """Run one reconciliation pass against the configured server."""
    runtime = build_runtime()
    settings = runtime.settings
    try:
        if not await is_online(settings):
            console.print(f"[red]Unable to reach server at {settings.server_url}.[/red]")
            console.print("Cannot sync while offline.")
            raise typer.Exit(code=1)

        console.print("[cyan]Syncing pending changes...[/cyan]")
        async with HttpRemoteService(settings=settings) as remote:
            coordinator = runtime.coordinator(remote)
            session = await coordinator.run()
        runtime.queue.prune_synced(settings.synced_retention)
    finally:
        runtime.close()

    if session is None:
        console.print("[yellow]A sync run is already in progress.[/yellow]")
        return
    _render_session(session)


@sync_app.command("watch")
def sync_watch(
    interval: float | None = typer.Option(
        None, "--interval", "-i", help="Seconds between sync runs (default: sync_interval)"
    ),
) -> None:
    """Sync periodically and sweep expired cache entries until interrupted."""
    try:
        anyio.run(_sync_watch_async, interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching.[/yellow]")


async def _sync_watch_async(interval: float | None) -> None:
    """Run the periodic sync loop and the cache sweeper side by side."""
    runtime = build_runtime()
    settings = runtime.settings
    every = interval or settings.sync_interval
    console.print(
        f"[cyan]Syncing with {settings.server_url} every {every:g}s, "
        f"sweeping the cache every {settings.sweep_interval:g}s. Press Ctrl+C to stop.[/cyan]"
    )
    try:
        async with HttpRemoteService(settings=settings) as remote:
            coordinator = runtime.coordinator(remote)
            async with anyio.create_task_group() as tg:
                tg.start_soon(
                    partial(
                        coordinator.run_forever,
                        every,
                        settings.synced_retention,
                        ready=partial(is_online, settings),
                    )
                )
                tg.start_soon(runtime.cache.run_sweeper, settings.sweep_interval)
    finally:
        runtime.close()


@sync_app.command("list")
def sync_list(
    status: SyncStatus | None = typer.Option(
        None, "--status", "-s", help="Only show items with this status"
    ),
) -> None:
    """List queued sync items."""
    runtime = build_runtime()
    try:
        statuses = [status] if status else list(SyncStatus)
        rows = 0
        for current in statuses:
            rows += _render_items(
                f"{current.value.capitalize()} Items", runtime.queue.list_by_status(current)
            )
    finally:
        runtime.close()

    if rows == 0:
        console.print("[green]Sync queue is empty.[/green]")


@sync_app.command("conflicts")
def sync_conflicts() -> None:
    """List items whose changes conflict with the server."""
    runtime = build_runtime()
    try:
        rows = _render_items("Conflicts", runtime.queue.list_by_status(SyncStatus.CONFLICT))
    finally:
        runtime.close()

    if rows == 0:
        console.print("[green]No conflicts.[/green]")
        return
    console.print("\nResolve with: offsync sync resolve <id> --local | --remote")


@sync_app.command("resolve")
def sync_resolve(
    item_id: str = typer.Argument(..., help="ID of the conflicting item"),
    local: bool = typer.Option(False, "--local", help="Keep the local change and send it again"),
    remote: bool = typer.Option(False, "--remote", help="Accept the server version"),
) -> None:
    """Resolve a sync conflict."""
    if local == remote:
        console.print("[red]Pass exactly one of --local or --remote.[/red]")
        raise typer.Exit(code=1)

    runtime = build_runtime()
    try:
        # The remote is not contacted when resolving
        coordinator = runtime.coordinator(HttpRemoteService(settings=runtime.settings))
        item = coordinator.resolve_conflict(item_id, use_local=local)
    except (ItemNotFound, InvalidTransition) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        runtime.close()

    if local:
        console.print(f"[green]✓[/green] Local change queued as [cyan]{item.id}[/cyan]")
    else:
        console.print(f"[green]✓[/green] Accepted server version for [cyan]{item.id}[/cyan]")


@sync_app.command("retry")
def sync_retry(item_id: str = typer.Argument(..., help="ID of the failed item")) -> None:
    """Queue a failed item for another attempt."""
    runtime = build_runtime()
    try:
        item = runtime.queue.requeue(item_id)
    except (ItemNotFound, InvalidTransition) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        runtime.close()

    console.print(f"[green]✓[/green] Requeued [cyan]{item.id}[/cyan]")


@sync_app.command("prune")
def sync_prune() -> None:
    """Delete synced items older than the retention window."""
    runtime = build_runtime()
    try:
        removed = runtime.queue.prune_synced(runtime.settings.synced_retention)
    finally:
        runtime.close()
    console.print(f"[green]✓ Pruned {removed} synced items.[/green]")
