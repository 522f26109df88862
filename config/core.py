"""
Configuration loading for the power control service.

Resolution order for the config file:
1. an explicit path passed by the caller
2. ``POWER_CONTROL_CONFIG``
3. ``config.json`` in the working directory

Environment overrides applied after loading:
- ``POWER_CONTROL_API_KEY`` fills ``apiKey`` when the file leaves it empty
- ``POWER_CONTROL_API_PORT`` replaces ``apiPort``
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from .schemas import PowerControlConfig

DEFAULT_CONFIG_PATH = Path("config.json")


class ConfigurationError(Exception):
    """Base configuration error"""


class ConfigurationNotFoundError(ConfigurationError):
    """The configuration file does not exist"""


class ConfigurationValidationError(ConfigurationError):
    """The configuration file could not be parsed or failed validation"""


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get("POWER_CONTROL_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config_from_file(path: str | Path) -> PowerControlConfig:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationNotFoundError(f"no {path} found") from e
    except OSError as e:
        raise ConfigurationError(f"failed to read {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationValidationError(f"failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationValidationError(f"failed to parse {path}: expected a JSON object")

    try:
        return PowerControlConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationValidationError(f"invalid configuration in {path}: {e}") from e


def apply_env_overrides(config: PowerControlConfig) -> PowerControlConfig:
    updates = {}
    env_key = os.environ.get("POWER_CONTROL_API_KEY")
    if env_key and not config.api_key:
        updates["api_key"] = env_key
    env_port = os.environ.get("POWER_CONTROL_API_PORT")
    if env_port:
        try:
            port = int(env_port)
        except ValueError as e:
            raise ConfigurationValidationError(f"POWER_CONTROL_API_PORT is not an integer: {env_port}") from e
        if not 0 < port <= 65535:
            raise ConfigurationValidationError(f"POWER_CONTROL_API_PORT out of range: {port}")
        updates["api_port"] = port
    if not updates:
        return config
    return config.model_copy(update=updates)


def get_config(path: str | Path | None = None) -> PowerControlConfig:
    """Load the configuration file and apply environment overrides."""
    return apply_env_overrides(load_config_from_file(resolve_config_path(path)))
