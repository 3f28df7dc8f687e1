"""Read and write ``config.json``."""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from meshbridge.config.schema import Config

CONFIG_FILENAME = "config.json"


def get_config_path() -> Path:
    from meshbridge.utils.helpers import get_data_path

    return get_data_path() / CONFIG_FILENAME


def load_config(config_path: Path | None = None) -> Config:
    """
    Load the bridge configuration.

    A missing file yields the defaults. An unreadable or invalid file is
    reported and also yields the defaults, so the CLI still starts and can
    rewrite it.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()
    try:
        return parse_config(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError, ValueError) as e:
        logger.warning("Ignoring invalid config {}: {}", path, e)
        logger.warning("Falling back to default configuration.")
        return Config()


def parse_config(raw: Any) -> Config:
    """Validate a raw (camelCase) config tree."""
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON object")
    return Config.model_validate(raw)


def dump_config(config: Config) -> dict[str, Any]:
    """On-disk camelCase form; unset optionals are left out."""
    return config.model_dump(mode="json", by_alias=True, exclude_none=True)


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Persist ``config`` (default path when ``config_path`` is None)."""
    _write_private_json(config_path or get_config_path(), dump_config(config))


def _chmod_private(path: Path) -> None:
    try:
        path.chmod(0o600)
    except OSError:
        pass


def _write_private_json(path: Path, data: dict[str, Any]) -> None:
    # Written beside the target and swapped in, owner read/write only.
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    staging.write_text(json.dumps(data, indent=2), encoding="utf-8")
    _chmod_private(staging)
    os.replace(staging, path)
    _chmod_private(path)
