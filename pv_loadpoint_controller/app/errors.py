"""Exception hierarchy for the PV Loadpoint Controller."""

from __future__ import annotations


class ControllerError(Exception):
    """Base class for all controller errors."""


class ConfigError(ControllerError):
    """Configuration is invalid and the service cannot start."""


class DeviceError(ControllerError):
    """A device operation failed."""


class TransientError(DeviceError):
    """Timeout or communication failure. Retried on the next cycle."""


class UnsupportedError(DeviceError):
    """The device does not provide this capability. Never retried."""


class InvalidCommandError(ControllerError):
    """A control-surface write was rejected. No state was changed."""
