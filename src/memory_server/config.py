"""Configuration loading for the memory server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable MEMORY_SERVER_CONFIG
3. Fallback to "config/default.yaml"

Any value can be overridden from environment variables with prefix
``MEMORY_SERVER__`` (e.g., MEMORY_SERVER__MEMORY__QDRANT_URL=http://qdrant:6333).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from chat_memory.settings import MemorySettings

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEMORY_SERVER__"
CONFIG_ENV = "MEMORY_SERVER_CONFIG"
DEFAULT_PATH = "config/default.yaml"


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix MEMORY_SERVER__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # MEMORY_SERVER__MEMORY__QDRANT_URL -> cfg["memory"]["qdrant_url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the memory server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``MEMORY_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV, DEFAULT_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides({"memory": {}, "server": {}})

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(cfg)


def settings_from_config(cfg: Dict[str, Any]) -> MemorySettings:
    """The ``memory:`` section as :class:`MemorySettings`."""
    section = cfg.get("memory")
    if section is not None and not isinstance(section, dict):
        raise RuntimeError("Invalid 'memory' section, expected a mapping.")
    return MemorySettings.from_dict(section or {})
