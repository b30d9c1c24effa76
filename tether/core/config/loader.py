"""Settings loader: optional YAML file, then env overrides via pydantic-settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from tether.core.config.schema import Settings

CONFIG_ENV = "TETHER_CONFIG"
DEFAULT_FILES = ("tether.yaml", "tether.yml")


def load_config(config_path: str | Path | None = None) -> Settings:
    """
    Build ``Settings`` for this process.

    The YAML file is taken from ``config_path``, else ``$TETHER_CONFIG``, else
    ``tether.yaml`` / ``tether.yml`` in the working directory. A missing file
    means defaults. Env vars (``TETHER_AGENT__MAX_ITERATIONS=5``) and ``.env``
    still win over whatever the file says.
    """
    path = _find_config(config_path)
    data = _read_yaml(path) if path else {}
    return Settings(**data)


def _find_config(config_path: str | Path | None) -> Path | None:
    explicit = config_path or os.environ.get(CONFIG_ENV)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            logger.warning(f"Config file {path} not found, using defaults")
            return None
        return path
    return next((Path(name) for name in DEFAULT_FILES if Path(name).is_file()), None)


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    logger.debug(f"Loaded config from {path}")
    return data
