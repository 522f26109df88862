"""Exception taxonomy for the power control service."""

from __future__ import annotations


class PowerControlError(Exception):
    """Base class for power control failures."""

    status_code = 500

    def __init__(self, message: str, *, index: int | None = None):
        super().__init__(message)
        self.message = message
        self.index = index


class GatewayError(PowerControlError):
    """Any failure reported by the device-management library."""


class GatewayTimeout(GatewayError):
    """A gateway call did not return within the configured timeout."""


class UnsupportedOperation(PowerControlError):
    """The device does not support power management."""

    status_code = 409


class InvalidMode(PowerControlError):
    status_code = 400


class DeviceNotFound(PowerControlError):
    status_code = 404


class RequestFormatError(PowerControlError):
    status_code = 400


class AuthError(PowerControlError):
    status_code = 401
