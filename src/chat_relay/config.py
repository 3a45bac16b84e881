"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_RELAY__`` (e.g., CHAT_RELAY__PROVIDER__MODEL=claude-3-haiku-20240307).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "feed_heartbeat_seconds": 15.0,
        "feed_poll_seconds": 1.0,
    },
    "store": {"data_dir": "data"},
    "provider": {
        "kind": "anthropic",
        "base_url": "https://api.anthropic.com",
        "model": "claude-3-haiku-20240307",
        "max_tokens": 500,
        "api_key_env": "CLAUDE_API_KEY",
        "timeout_seconds": 30.0,
        "fallback_reply": "Sorry, no reply.",
    },
    "auth": {"sessions": {}, "cookie_name": "session"},
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    },
    "client": {
        "base_url": "http://127.0.0.1:8000",
        "reply_delay_seconds": 1.0,
        "dedup_tolerance_seconds": 30.0,
    },
}


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``extra`` on top of ``base`` (returns ``base``)."""
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


ENV_PREFIX = "CHAT_RELAY__"

# Tables whose keys are data rather than setting names. Their keys keep the
# case given in the variable name and their values stay strings, so
# CHAT_RELAY__AUTH__SESSIONS__Tok9F=alice maps token "Tok9F" to "alice".
VERBATIM_TABLES = {("auth", "sessions")}


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay ``CHAT_RELAY__SECTION__KEY=value`` variables onto ``cfg``.

    Section and key names are matched case-insensitively, except for the
    keys of :data:`VERBATIM_TABLES`. Values are coerced to bool, int or
    float when they look like one.
    """
    for name, value in os.environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        *sections, leaf = name[len(ENV_PREFIX):].split("__")
        path = tuple(s.lower() for s in sections)
        target = cfg
        for section in path:
            if not isinstance(target.get(section), dict):
                target[section] = {}
            target = target[section]
        if path in VERBATIM_TABLES:
            target[leaf] = value
        else:
            target[leaf.lower()] = _coerce(value)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults merged with the file contents, with environment
        overrides applied last.
    """
    if path is None:
        path = os.environ.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))
