"""
Configuration schema for the power control service.

The on-disk format uses camelCase keys (``powerLimit``, ``startAPIServer`` ...);
the model exposes snake_case attributes and accepts either spelling.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator

DEFAULT_API_PORT = 8080


class PowerControlConfig(BaseModel):
    """Process-wide configuration, loaded once at startup."""

    mode: str = Field(default="all", description="'all' or 'manual'")
    power_limit: NonNegativeInt = Field(
        default=250, alias="powerLimit", description="Power limit in watts for 'all' mode"
    )
    manual_limits: dict[int, NonNegativeInt] = Field(
        default_factory=dict, alias="manualLimits", description="GPU index to power limit in watts"
    )
    api_key: str = Field(default="", alias="apiKey", description="Required when the API server starts")
    api_port: int = Field(default=DEFAULT_API_PORT, alias="apiPort", ge=0, le=65535)
    api_host: str = Field(default="0.0.0.0", alias="apiHost")
    start_api_server: bool = Field(default=False, alias="startAPIServer")
    gateway_timeout_seconds: float = Field(default=10.0, alias="gatewayTimeoutSeconds", gt=0)
    log_level: str = Field(default="INFO", alias="logLevel")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("api_port")
    @classmethod
    def _default_port(cls, value: int) -> int:
        # 0 means "not set"
        return value or DEFAULT_API_PORT

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


def create_default_config() -> PowerControlConfig:
    return PowerControlConfig()


def save_config_to_file(config: PowerControlConfig, path: str | Path) -> Path:
    """Write ``config`` in the camelCase file format."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(by_alias=True), indent=2) + "\n", encoding="utf-8")
    return path
