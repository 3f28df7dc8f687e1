"""Filesystem and string helpers."""

import os
from pathlib import Path

HOME_ENV = "MESHBRIDGE_HOME"


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """meshbridge state directory: ``$MESHBRIDGE_HOME`` or ``~/.meshbridge``."""
    override = os.environ.get(HOME_ENV, "").strip()
    return ensure_dir(Path(override) if override else Path.home() / ".meshbridge")


def get_pairing_path() -> Path:
    """Pairing store directory, readable by the owner only."""
    path = ensure_dir(get_data_path() / "pairing")
    try:
        path.chmod(0o700)
    except OSError:
        pass
    return path


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """Cut ``s`` to ``max_len`` characters, ending in ``suffix`` when shortened."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix
