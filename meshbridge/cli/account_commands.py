"""Account and status CLI commands."""

from __future__ import annotations

import typer
from rich.table import Table

from meshbridge import __logo__

from .core import app, console, make_channel

accounts_app = typer.Typer(help="Manage Meshtastic accounts")
app.add_typer(accounts_app, name="accounts")


@accounts_app.command("list")
def accounts_list() -> None:
    """List configured accounts."""
    from meshbridge.accounts.resolver import describe_account
    from meshbridge.config.loader import load_config

    channel = make_channel(load_config())

    table = Table(title="Meshtastic Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Configured")
    table.add_column("Transport", style="yellow")
    table.add_column("Address")
    table.add_column("DM policy")

    for account_id in channel.list_account_ids():
        info = describe_account(channel.resolve_account(account_id))
        table.add_row(
            info["account_id"],
            "✓" if info["enabled"] else "✗",
            "✓" if info["configured"] else "[dim]no[/dim]",
            info["transport"],
            info["address"] or "[dim]-[/dim]",
            info["dm_policy"],
        )

    console.print(table)


def _toggle(account_id: str, enabled: bool) -> None:
    from meshbridge.config.loader import load_config, save_config

    channel = make_channel(load_config())
    save_config(channel.set_account_enabled(account_id, enabled))
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]✓[/green] Account {account_id} {state}")


@accounts_app.command("enable")
def accounts_enable(account_id: str = typer.Argument(..., help="Account id")) -> None:
    """Enable an account."""
    _toggle(account_id, True)


@accounts_app.command("disable")
def accounts_disable(account_id: str = typer.Argument(..., help="Account id")) -> None:
    """Disable an account."""
    _toggle(account_id, False)


@accounts_app.command("remove")
def accounts_remove(account_id: str = typer.Argument(..., help="Account id")) -> None:
    """Remove an account (the default account only loses its connection settings)."""
    from meshbridge.config.loader import load_config, save_config

    channel = make_channel(load_config())
    save_config(channel.delete_account(account_id))
    console.print(f"[green]✓[/green] Account {account_id} removed")


@app.command()
def status(
    account: str = typer.Option(None, "--account", "-a", help="Account id"),
) -> None:
    """Show configuration status and security warnings."""
    from meshbridge.config.loader import get_config_path, load_config

    config_path = get_config_path()
    channel = make_channel(load_config())

    console.print(f"{__logo__} meshbridge Status\n")
    console.print(
        f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}"
    )

    account_ids = [account] if account else channel.list_account_ids()
    for account_id in account_ids:
        probe = channel.probe_account(account_id)
        if probe.ok:
            console.print(
                f"[green]✓[/green] {account_id}: {probe.transport} ({probe.address})"
            )
        else:
            console.print(f"[red]✗[/red] {account_id}: {probe.transport} ({probe.error})")
        for warning in channel.collect_warnings(account_id):
            console.print(f"  [yellow]{warning}[/yellow]")
