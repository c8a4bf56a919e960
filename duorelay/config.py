"""Configuration loading for the relay server.

Layered lookup:
1. Explicit path argument (highest precedence)
2. Environment variable DUORELAY_CONFIG
3. Fallback to "config/default.yaml"

Values can then be overridden from the environment with the prefix
``DUORELAY__`` (e.g. DUORELAY__STORE__PATH=/var/lib/duorelay/messages.db).
``PORT`` is honoured as a shortcut for the listening port.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

log = logging.getLogger("duorelay.config")

ENV_PREFIX = "DUORELAY__"

DEFAULTS: Dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 8080},
    "store": {"path": ":memory:"},
    "logging": {"level": "INFO"},
}


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # DUORELAY__SERVER__PORT -> cfg["server"]["port"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if not isinstance(sub.get(p), dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)

    port = environ.get("PORT")
    if port:
        cfg["server"]["port"] = int(port)
    return cfg


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Load the YAML config merged over :data:`DEFAULTS`.

    Raises RuntimeError when the file exists but is not a YAML mapping.
    """

    environ = dict(os.environ if environ is None else environ)
    if path is None:
        path = environ.get("DUORELAY_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        log.warning("Config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides(cfg, environ)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected mapping.")

    return _apply_env_overrides(_merge(cfg, loaded), environ)


__all__ = ["load_config", "DEFAULTS"]
