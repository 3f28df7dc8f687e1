"""First-contact pairing."""

from meshbridge.pairing.store import (
    PAIRING_APPROVED_MESSAGE,
    JsonPairingStore,
    PairingRequest,
    build_pairing_reply,
)

__all__ = ["PAIRING_APPROVED_MESSAGE", "JsonPairingStore", "PairingRequest", "build_pairing_reply"]
