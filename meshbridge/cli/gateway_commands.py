"""Gateway and one-shot send CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import typer
from loguru import logger

from meshbridge import __logo__

from .core import app, console, make_channel, make_pairing_store

RESPONDERS = ("echo", "silent")


async def _with_session(
    config: Any, account_id: str | None, action: Callable[[Any, str], Awaitable[Any]]
) -> Any:
    """Open a transient connection for the account and run ``action(channel, account_id)``."""
    channel = make_channel(config)
    monitor = channel.create_monitor(account_id)
    async with monitor.session():
        return await action(channel, monitor.account_id)


def notify_approved(config: Any, sender_id: str, account_id: str | None = None) -> None:
    """Send the pairing-approved notice over a transient connection."""

    async def action(channel: Any, resolved_id: str) -> None:
        await channel.notify_approval(sender_id, resolved_id)

    asyncio.run(_with_session(config, account_id, action))


@app.command()
def send(
    target: str = typer.Argument(..., help="!hex node id, or a channel name"),
    message: str = typer.Argument(..., help="Text to send"),
    account: str = typer.Option(None, "--account", "-a", help="Account id"),
    channel_index: int = typer.Option(None, "--channel-index", help="Channel slot 0-7"),
    channel_name: str = typer.Option(None, "--channel", help="Channel name"),
) -> None:
    """Send one text message and exit."""
    from meshbridge.config.loader import load_config
    from meshbridge.core.errors import MeshBridgeError

    config = load_config()

    async def action(channel: Any, resolved_id: str) -> Any:
        return await channel.send_text(
            target,
            message,
            account_id=resolved_id,
            channel_index=channel_index,
            channel_name=channel_name,
        )

    try:
        result = asyncio.run(_with_session(config, account, action))
    except MeshBridgeError as e:
        console.print(f"[red]Send failed:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Sent to {result.target} (id {result.message_id})")


def _make_responder(name: str):
    from meshbridge.bus.reply import EchoReplyPipeline, SilentReplyPipeline

    if name == "echo":
        return EchoReplyPipeline()
    return SilentReplyPipeline()


def _make_activity(config, metrics: bool | None):
    from meshbridge.telemetry import InMemoryActivity, PrometheusActivity

    settings = config.telemetry.prometheus
    if metrics is not None:
        settings = settings.model_copy(update={"enabled": metrics})
    if not settings.enabled:
        return InMemoryActivity()
    activity = PrometheusActivity(settings)
    activity.start()
    console.print(
        f"[green]✓[/green] Metrics: http://{settings.host}:{settings.port}/metrics"
    )
    return activity


def _run_gateway_foreground(responder_name: str, metrics: bool | None) -> None:
    """Run all enabled accounts in the foreground until interrupted."""
    from meshbridge.bus import BusReplyPipeline, MessageBus, serve_bus
    from meshbridge.channels.manager import GatewayManager
    from meshbridge.config.loader import load_config

    config = load_config()
    console.print(f"{__logo__} Starting meshbridge gateway...")

    bus = MessageBus()
    channel = make_channel(
        config,
        pipeline=BusReplyPipeline(bus),
        pairing=make_pairing_store(config),
        activity=_make_activity(config, metrics),
    )
    responder = _make_responder(responder_name)

    async def run() -> None:
        manager = GatewayManager(channel)
        started = manager.start_all()
        if not started:
            console.print("[yellow]Warning: No Meshtastic accounts enabled and configured[/yellow]")
            return
        console.print(f"[green]✓[/green] Accounts: {', '.join(started)}")
        workers = [
            asyncio.create_task(bus.dispatch_outbound()),
            asyncio.create_task(serve_bus(bus, responder)),
        ]
        try:
            await manager.wait()
        finally:
            bus.stop()
            for task in workers:
                task.cancel()
            for task in workers:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await manager.stop_all()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


@app.command()
def gateway(
    responder: str = typer.Option(
        "echo", "--responder", "-r", help=f"Reply pipeline: {', '.join(RESPONDERS)}"
    ),
    metrics: bool = typer.Option(
        None, "--metrics/--no-metrics", help="Override telemetry.prometheus.enabled"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Debug logging"),
) -> None:
    """Run the Meshtastic gateway in the foreground."""
    if responder not in RESPONDERS:
        console.print(f"[red]Unknown responder: {responder}. Use: {', '.join(RESPONDERS)}[/red]")
        raise typer.Exit(1)
    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")
    _run_gateway_foreground(responder, metrics)
