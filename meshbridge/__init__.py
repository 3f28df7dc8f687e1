"""meshbridge - LoRa mesh (Meshtastic) channel bridge for conversational agents."""

__version__ = "0.3.0"
__logo__ = "📡"
