"""Pairing CLI commands."""

from __future__ import annotations

import typer
from rich.table import Table

from meshbridge.config.defaults import CHANNEL_ID
from meshbridge.utils.helpers import truncate_string

from .core import app, console, make_pairing_store

pairing_app = typer.Typer(help="Approve first-contact senders")
app.add_typer(pairing_app, name="pairing")


@pairing_app.command("list")
def pairing_list(
    channel: str = typer.Argument(CHANNEL_ID, help="Channel id"),
) -> None:
    """List pending pairing requests."""
    from meshbridge.config.loader import load_config

    store = make_pairing_store(load_config())
    requests = store.list_requests(channel)
    if not requests:
        console.print("No pending pairing requests.")
        return

    table = Table(title=f"Pending pairing ({channel})")
    table.add_column("Code", style="cyan")
    table.add_column("Sender", style="green")
    table.add_column("Name")
    table.add_column("Requested")
    for request in requests:
        name = str(request.meta.get("name") or "")
        table.add_row(request.code, request.id, truncate_string(name, 32), request.created_at)
    console.print(table)


@pairing_app.command("approve")
def pairing_approve(
    channel: str = typer.Argument(..., help="Channel id"),
    code: str = typer.Argument(..., help="Pairing code"),
    notify: bool = typer.Option(False, "--notify", help="Tell the sender over the mesh"),
    account: str = typer.Option(None, "--account", "-a", help="Account used for --notify"),
) -> None:
    """Approve a pending pairing request by code."""
    from meshbridge.config.loader import load_config
    from meshbridge.core.errors import MeshBridgeError

    from .gateway_commands import notify_approved

    config = load_config()
    store = make_pairing_store(config)
    sender_id = store.approve(channel, code)
    if sender_id is None:
        console.print(f"[red]No pending request with code {code.upper()}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Approved {sender_id} on {channel}")
    if not notify:
        return
    try:
        notify_approved(config, sender_id, account)
    except MeshBridgeError as e:
        console.print(f"[yellow]Approved, but the notice was not sent:[/yellow] {e}")
        return
    console.print(f"[green]✓[/green] Notified {sender_id}")
