"""Environment overlay for the default account."""

from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MeshtasticEnv(BaseSettings):
    """``MESHTASTIC_*`` variables. They only fill empty fields of the default account."""

    model_config = SettingsConfigDict(
        env_prefix="MESHTASTIC_", extra="ignore", populate_by_name=True
    )

    transport: str | None = None
    serial_port: str | None = None
    tcp_address: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MESHTASTIC_TCP_ADDRESS", "MESHTASTIC_HTTP_ADDRESS"),
    )
    mqtt_broker: str | None = None
    mqtt_topic: str | None = None

    def cleaned(self, value: str | None) -> str:
        return (value or "").strip()

    @property
    def transport_value(self) -> str | None:
        raw = self.cleaned(self.transport).lower()
        if not raw:
            return None
        return "tcp" if raw == "http" else raw


def load_env() -> MeshtasticEnv:
    """Read the overlay from the current process environment."""
    return MeshtasticEnv()
