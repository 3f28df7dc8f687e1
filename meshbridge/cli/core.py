"""Shared CLI application context and setup helpers."""

from __future__ import annotations

import typer
from dotenv import load_dotenv
from rich.console import Console

from meshbridge import __logo__, __version__
from meshbridge.utils.helpers import get_data_path

app = typer.Typer(
    name="meshbridge",
    help=f"{__logo__} meshbridge - Meshtastic LoRa mesh bridge",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} meshbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
) -> None:
    """meshbridge - Meshtastic LoRa mesh bridge."""
    # Variables already set in the environment win over the .env file.
    load_dotenv(get_data_path() / ".env", override=False)


def make_channel(config, **kwargs):
    """Create a MeshtasticChannel for CLI use."""
    from meshbridge.channels.meshtastic import MeshtasticChannel

    return MeshtasticChannel(config, **kwargs)


def make_pairing_store(config):
    """Create the JSON pairing store from config."""
    from meshbridge.pairing.store import JsonPairingStore

    return JsonPairingStore.from_config(config.pairing)
