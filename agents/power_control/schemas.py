"""
Power Control Schemas - datatypes shared by the engine, API and CLI.

``DeviceRecord`` serializes with the JSON keys used by existing clients
(``powerLimit``, ``minLimit``, ``powerManagement`` ...), so field names and
wire names differ.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, NonNegativeInt

from .errors import PowerControlError

MODE_ALL = "all"
MODE_MANUAL = "manual"
VALID_MODES = (MODE_ALL, MODE_MANUAL)


@dataclass
class DeviceRecord:
    """State of one GPU as last read from the gateway."""
    index: int
    name: str = "Unknown"
    power_limit_watts: int = 0
    min_limit_watts: int = 0
    max_limit_watts: int = 0
    power_usage_watts: int = 0
    supported: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "powerLimit": self.power_limit_watts,
            "minLimit": self.min_limit_watts,
            "maxLimit": self.max_limit_watts,
            "powerUsage": self.power_usage_watts,
            "powerManagement": self.supported,
        }

    def copy(self) -> DeviceRecord:
        return DeviceRecord(**asdict(self))


@dataclass
class BatchOutcome:
    """Result of applying an operation across several devices.

    ``updated`` holds the records of devices that were written successfully,
    in dispatch order. ``failed`` maps every skipped device index to the error
    that caused the skip, including indices that do not exist.
    """
    updated: list[DeviceRecord] = field(default_factory=list)
    failed: dict[int, PowerControlError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_list(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.updated]


class PowerLimitRequest(BaseModel):
    """Power limit update request.

    ``mode`` is kept as a plain string so unknown modes reach the dispatcher
    and are rejected as ``InvalidMode`` rather than as a malformed body.
    """
    mode: str = ""
    power_limit_watts: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("powerLimitWatts", "powerLimit", "power_limit_watts"),
        description="Power limit in watts applied to every GPU in 'all' mode",
    )
    manual_limits: dict[int, NonNegativeInt] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("manualLimits", "manual_limits"),
        description="GPU index to power limit in watts for 'manual' mode",
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
