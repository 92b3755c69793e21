"""YAML configuration loader.

Loads a single YAML file whose ``bridge:`` section overrides the
environment-derived configuration. When no YAML is provided, env vars
work exactly as before.

Example YAML:
    bridge:
      port: 9090
      working_dir: /path/to/project
      user_response_timeout_seconds: 600
      prompt_expiry_seconds: 1800
      allowed_tools: [Read, Grep, Glob, Bash, Write]
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_COERCE = {
    int: int,
    float: float,
    str: str,
}


def _field_types() -> dict[str, Any]:
    return {f.name: f.type for f in dataclasses.fields(BridgeConfig)}


def _coerce(name: str, declared: Any, value: Any) -> Any:
    # Annotations are strings under postponed evaluation.
    declared_name = declared if isinstance(declared, str) else getattr(declared, "__name__", "")
    if declared_name.startswith("list"):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if not isinstance(value, list):
            raise ConfigError(f"bridge.{name} must be a list")
        return [str(v) for v in value]
    for py_type in _COERCE:
        if declared_name == py_type.__name__:
            try:
                return _COERCE[py_type](value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"bridge.{name}: {exc}") from exc
    return value


def apply_overrides(config: BridgeConfig, section: dict[str, Any]) -> BridgeConfig:
    """Return a copy of *config* with known keys from *section* applied."""
    types = _field_types()
    changes: dict[str, Any] = {}
    for key, value in section.items():
        if key not in types:
            logger.warning("apply_overrides: unknown bridge key %r ignored", key)
            continue
        changes[key] = _coerce(key, types[key], value)
    return dataclasses.replace(config, **changes)


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load *path* and layer its ``bridge:`` section over *base*."""
    config_path = Path(path).expanduser()
    base = base or BridgeConfig.from_env()
    if not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML parse error in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")
    section = data.get("bridge") or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{config_path}: 'bridge' must be a mapping")

    config = apply_overrides(base, section)
    logger.info(
        "load_yaml_config: loaded %s (%d overrides)",
        config_path, len(section),
    )
    return config
