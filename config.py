"""Run configuration for the headless runner.

`load_config` overlays a YAML file or a dict on DEFAULTS, coerces the values
and rejects keys or values the machine cannot use.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

DEFAULTS: dict[str, Any] = {
    "tick_limit": 100000,
    "pause_tick": None,
    "cpu_hz": None,
    "timer_hz": None,
    "seed": None,
    "lenient_log": False,
}


class ConfigError(ValueError):
    """Raised when a run configuration is malformed or unreadable."""


def _optional(cfg: dict[str, Any], key: str, conv: Any) -> None:
    v = cfg.get(key)
    cfg[key] = None if v is None else conv(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Coerce every key to its runtime type in place."""
    try:
        limit = cfg.get("tick_limit")
        cfg["tick_limit"] = int(DEFAULTS["tick_limit"] if limit is None else limit)

        _optional(cfg, "pause_tick", int)
        _optional(cfg, "cpu_hz", float)
        _optional(cfg, "timer_hz", float)
        _optional(cfg, "seed", int)

        cfg["lenient_log"] = bool(cfg.get("lenient_log"))
    except (TypeError, ValueError) as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    if cfg["tick_limit"] <= 0:
        msg = "tick_limit must be positive"
        raise ConfigError(msg)

    if cfg["pause_tick"] is not None and cfg["pause_tick"] < 0:
        msg = "pause_tick must be non-negative or null"
        raise ConfigError(msg)

    for key in ("cpu_hz", "timer_hz"):
        if cfg[key] is not None and cfg[key] <= 0:
            msg = f"{key} must be positive or null"
            raise ConfigError(msg)


def _read_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {path}"
        raise ConfigError(msg)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        msg = f"Failed to load config file {path}: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f"Config file {path} does not contain a mapping"
        raise ConfigError(msg)
    return data


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a fresh, validated config built from DEFAULTS.

    `path_or_dict` is None (defaults only), an overlay dict or a YAML file path.
    Raises ConfigError on unknown keys or bad values.
    """
    if path_or_dict is None:
        overlay: dict[str, Any] = {}
    elif isinstance(path_or_dict, dict):
        overlay = path_or_dict
    elif isinstance(path_or_dict, str):
        overlay = _read_yaml(path_or_dict)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    unknown = sorted(set(overlay) - set(DEFAULTS), key=str)
    if unknown:
        msg = f"Unknown config keys: {', '.join(map(str, unknown))}"
        raise ConfigError(msg)

    cfg = {**DEFAULTS, **overlay}
    _convert_types(cfg)
    _validate_cfg(cfg)
    return cfg
