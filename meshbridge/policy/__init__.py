"""Identity normalization and admission policy."""

from meshbridge.policy.engine import AdmissionDecision, evaluate_admission
from meshbridge.policy.identity import (
    match_allowlist,
    normalize_allow_entry,
    normalize_allowlist,
    normalize_messaging_target,
    normalize_node_id,
)

__all__ = [
    "AdmissionDecision",
    "evaluate_admission",
    "match_allowlist",
    "normalize_allow_entry",
    "normalize_allowlist",
    "normalize_messaging_target",
    "normalize_node_id",
]
