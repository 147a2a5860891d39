"""Device capability interfaces consumed by the controller.

Every capability method raises UnsupportedError unless a device overrides it,
so the controller branches on the outcome of a call instead of inspecting
device types. Communication problems are reported as TransientError.
"""

from __future__ import annotations

from .errors import UnsupportedError
from .models import ChargeStatus


class Charger:
    """A charging station."""

    async def status(self) -> ChargeStatus:
        raise UnsupportedError("status")

    async def enable(self, enable: bool) -> None:
        raise UnsupportedError("enable")

    async def set_current(self, amps: float) -> None:
        raise UnsupportedError("set_current")

    async def set_phases(self, phases: int) -> None:
        raise UnsupportedError("set_phases")

    async def power(self) -> float:
        raise UnsupportedError("power")

    async def currents(self) -> tuple[float, float, float]:
        raise UnsupportedError("currents")

    async def energy(self) -> float:
        raise UnsupportedError("energy")


class Meter:
    """A power meter (grid, PV, battery or dedicated charge meter)."""

    async def power(self) -> float:
        raise UnsupportedError("power")

    async def currents(self) -> tuple[float, float, float]:
        raise UnsupportedError("currents")

    async def energy(self) -> float:
        raise UnsupportedError("energy")


class Vehicle:
    """A vehicle reporting its battery state."""

    def __init__(self, capacity_wh: float = 0.0) -> None:
        self.capacity_wh = capacity_wh

    async def soc(self) -> float:
        raise UnsupportedError("soc")
