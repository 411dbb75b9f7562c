"""Main CLI entry point for Zephyr Sync.

This module provides the Typer application that runs the producer against
a chat account and inspects or clears the persisted snapshot.

Usage:
    zephyr-sync run --token <token>
    zephyr-sync show
    zephyr-sync forget
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from zephyr_sync.api.client import ChatApiClient
from zephyr_sync.config import ZephyrSyncConfig, load_config
from zephyr_sync.logging import setup_logging
from zephyr_sync.producer.codec import decode
from zephyr_sync.producer.messages import CredentialCommitted, CredentialTextChanged
from zephyr_sync.producer.models import Channel, Message, Snapshot
from zephyr_sync.producer.runtime import ProducerRuntime
from zephyr_sync.producer.states import CredentialPending, snapshot_of
from zephyr_sync.producer.store import SnapshotStore

app = typer.Typer(
    name="zephyr-sync",
    help="Zephyr Sync: chat account synchronization engine",
    no_args_is_help=True,
)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Zephyr Sync configuration
        store: Snapshot store at the configured path
    """

    def __init__(self, config: ZephyrSyncConfig):
        self.config = config
        self.store = SnapshotStore(config.storage.snapshot_path)


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: ZephyrSyncConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    initialize_context(config)


def _print_items(items: list[Message]) -> None:
    for message in items:
        stamp = message.timestamp.strftime("%Y-%m-%d %H:%M")
        console.print(
            f"[dim]{stamp}[/dim] [cyan]#{message.channel_id}[/cyan] "
            f"[bold]{message.author.username}[/bold]: {message.content}"
        )


def _print_cache(channels: list[Channel] | None) -> None:
    if channels is None:
        console.print("[dim]Channel cache cleared[/dim]")
    else:
        console.print(f"[dim]{len(channels)} channel(s) available[/dim]")


def generate_snapshot_table(snapshot: Snapshot) -> Table:
    """Generate a table of the channels held by a snapshot.

    Args:
        snapshot: Snapshot to render

    Returns:
        Rich Table with one row per channel
    """
    table = Table(title=f"{snapshot.identity.username} ({snapshot.identity.id})")
    table.add_column("Workspace", style="bold cyan")
    table.add_column("Channel")
    table.add_column("Kind", style="dim")
    table.add_column("Status")
    table.add_column("Last Message", style="dim")

    for channel in sorted(
        snapshot.channels.values(),
        key=lambda c: (c.workspace is None, c.workspace.name if c.workspace else "", c.name),
    ):
        table.add_row(
            channel.workspace.name if channel.workspace else "-",
            channel.name,
            channel.kind.value,
            channel.fetch_status.kind,
            channel.last_message_id or "-",
        )
    return table


@app.command()
def run(
    token: Annotated[
        Optional[str],
        typer.Option("--token", "-t", help="Account token; omit to resume the stored session"),
    ] = None,
) -> None:
    """Synchronize an account until interrupted.

    Resumes the persisted session when one exists. A token starts a new
    session when nothing usable is stored.
    """
    ctx = get_app_context()
    config = ctx.config

    console.print()
    console.print(
        Panel(
            f"[bold cyan]Zephyr Sync Producer[/bold cyan]\n\n"
            f"[bold]API:[/bold] {config.api.base_url}\n"
            f"[bold]Scan Concurrency:[/bold] {config.producer.scan_concurrency}\n"
            f"[bold]Tick Interval:[/bold] {config.producer.tick_interval_seconds} seconds\n"
            f"[bold]Snapshot:[/bold] {config.storage.snapshot_path}",
            title="Starting Producer",
            border_style="cyan",
        )
    )
    console.print()

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        console.print()
        console.print("[yellow]Shutdown signal received. Stopping producer...[/yellow]")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def run_producer() -> None:
        async with ChatApiClient(config.api) as client:
            runtime = ProducerRuntime(
                config.producer,
                client,
                store=ctx.store,
                on_items=_print_items,
                on_cache=_print_cache,
            )
            restored = runtime.restore()

            if token:
                if restored is not None and not isinstance(restored, CredentialPending):
                    console.print("[yellow]Stored session found; --token ignored[/yellow]")
                runtime.dispatch(CredentialTextChanged(text=token))
                runtime.dispatch(CredentialCommitted(text=token))
            elif isinstance(restored, CredentialPending):
                runtime.dispatch(CredentialCommitted())
            elif restored is None:
                console.print("[red]No stored session.[/red] Pass --token to start one.")
                raise typer.Exit(code=1)

            try:
                await runtime.start()
                console.print("[bold green]Producer running[/bold green]")
                console.print("[dim]Press Ctrl+C to stop[/dim]")
                console.print()
                while not shutdown_event.is_set():
                    await asyncio.sleep(0.5)
            finally:
                await runtime.stop()
                console.print()
                console.print("[green]Producer stopped[/green]")

    try:
        asyncio.run(run_producer())
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def show() -> None:
    """Show the persisted snapshot."""
    ctx = get_app_context()
    state = decode(ctx.store.load())
    snapshot = snapshot_of(state)

    if snapshot is None:
        console.print("[dim]No stored snapshot[/dim]")
        return

    console.print(generate_snapshot_table(snapshot))


@app.command()
def forget() -> None:
    """Delete the persisted snapshot."""
    ctx = get_app_context()
    ctx.store.clear()
    console.print(f"[green]Snapshot removed:[/green] {ctx.store.path}")


if __name__ == "__main__":
    app()
