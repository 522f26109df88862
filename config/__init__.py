"""
Configuration for the power control service

Provides:
- A Pydantic model for the config.json file format
- File resolution with environment overrides
- Typed configuration errors
"""

from .core import (
    DEFAULT_CONFIG_PATH,
    ConfigurationError,
    ConfigurationNotFoundError,
    ConfigurationValidationError,
    apply_env_overrides,
    get_config,
    load_config_from_file,
    resolve_config_path,
)
from .schemas import (
    DEFAULT_API_PORT,
    PowerControlConfig,
    create_default_config,
    save_config_to_file,
)

__all__ = [
    # Schema exports
    "PowerControlConfig",
    "DEFAULT_API_PORT",
    "create_default_config",
    "save_config_to_file",
    # loader helpers
    "DEFAULT_CONFIG_PATH",
    "load_config_from_file",
    "resolve_config_path",
    "apply_env_overrides",
    "get_config",
    # errors
    "ConfigurationError",
    "ConfigurationNotFoundError",
    "ConfigurationValidationError",
]
