"""CLI entry point: registers every command group on the shared app."""

from . import account_commands, gateway_commands, pairing_commands  # noqa: F401
from .core import app

__all__ = ["app"]
