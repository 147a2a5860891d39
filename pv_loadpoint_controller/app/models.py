"""Data models for the PV Loadpoint Controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChargeMode(Enum):
    """Charge mode of a loadpoint."""

    OFF = "off"
    NOW = "now"
    MIN_PV = "minpv"
    PV = "pv"


class ChargeStatus(Enum):
    """Connector status (IEC 61851 state letters)."""

    A = "A"  # Unplugged
    B = "B"  # Connected, not charging
    C = "C"  # Charging
    D = "D"  # Charging with ventilation
    E = "E"  # Error
    F = "F"  # Fault

    @property
    def is_connected(self) -> bool:
        return self in (ChargeStatus.B, ChargeStatus.C, ChargeStatus.D)

    @property
    def is_charging(self) -> bool:
        return self in (ChargeStatus.C, ChargeStatus.D)

    @property
    def is_error(self) -> bool:
        return self in (ChargeStatus.E, ChargeStatus.F)


class LoadpointState(Enum):
    """Controller state of a loadpoint."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CHARGING = "charging"
    SUSPENDED = "suspended"  # Connected, stopped by policy
    FAULT = "fault"


class RemoteDemand(Enum):
    """External override of the mode policy."""

    NONE = ""
    START = "start"
    STOP = "stop"
    SOFT_STOP = "soft-stop"

    @classmethod
    def parse(cls, value: str) -> RemoteDemand:
        """Parse a demand string. 'reset' and 'auto' clear the override."""
        value = (value or "").strip().lower()
        if value in ("reset", "auto"):
            return cls.NONE
        return cls(value)


@dataclass(frozen=True)
class DeviceSnapshot:
    """Device readings of one loadpoint, taken at the start of a cycle.

    Fields that could not be read this cycle carry the last known value and
    are listed in ``unavailable``. A field that was never read is None.
    """

    status: ChargeStatus | None = None
    power: float | None = None  # W
    currents: tuple[float, float, float] | None = None  # A per phase
    energy: float | None = None  # Wh
    vehicle_soc: float | None = None  # %
    unavailable: frozenset[str] = frozenset()

    def is_available(self, name: str) -> bool:
        return getattr(self, name) is not None and name not in self.unavailable


@dataclass(frozen=True)
class PowerBudget:
    """Power offered to a loadpoint by the allocator for one cycle."""

    power: float = 0.0  # W, never negative


@dataclass(frozen=True)
class Command:
    """Charger command computed by a loadpoint for one cycle."""

    enable: bool
    current: float  # A
    phases: int

    @classmethod
    def disabled(cls, phases: int) -> Command:
        return cls(enable=False, current=0.0, phases=phases)


@dataclass(frozen=True)
class ChargePointDemand:
    """Power a loadpoint could use, reported to the allocator."""

    name: str
    demand: float = 0.0  # W it would draw this cycle given unlimited surplus
    max_power: float = 0.0  # W it could draw at most (e.g. after a phase switch)


@dataclass(frozen=True)
class SiteMeasurements:
    """Instantaneous site power, positive grid = import, positive battery = discharge."""

    grid_power: float | None = None
    pv_power: float | None = None
    battery_power: float | None = None
    charge_power: float = 0.0  # Sum over all loadpoints


@dataclass
class AllocationResult:
    """Result of one allocation cycle."""

    surplus: float
    budgets: list[PowerBudget] = field(default_factory=list)

    @property
    def total_allocated(self) -> float:
        return sum(b.power for b in self.budgets)


@dataclass(frozen=True)
class Param:
    """A keyed state update, published for the site (loadpoint=None) or a loadpoint."""

    loadpoint: int | None
    key: str
    value: Any
