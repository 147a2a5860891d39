"""Shared fixtures and fake devices for controller tests."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import AppConfig, LoadpointConfig
from app.devices import Charger, Meter, Vehicle
from app.loadpoint import Loadpoint
from app.models import ChargeStatus, DeviceSnapshot


class FakeCharger(Charger):
    """In-memory charger. Put an exception in ``errors`` to make an operation fail."""

    def __init__(self, status=ChargeStatus.B, power=0.0, energy=0.0):
        self.status_value = status
        self.power_value = power
        self.energy_value = energy
        self.enabled = False
        self.current = None
        self.phases = None
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []

    def _check(self, op):
        if op in self.errors:
            raise self.errors[op]

    async def status(self):
        self._check("status")
        return self.status_value

    async def enable(self, enable):
        self._check("enable")
        self.calls.append(("enable", enable))
        self.enabled = enable

    async def set_current(self, amps):
        self._check("current")
        self.calls.append(("current", amps))
        self.current = amps

    async def set_phases(self, phases):
        self._check("phases")
        self.calls.append(("phases", phases))
        self.phases = phases

    async def power(self):
        self._check("power")
        return self.power_value

    async def energy(self):
        self._check("energy")
        return self.energy_value


class SlowCharger(FakeCharger):
    """Charger whose status read blocks until ``gate`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()

    async def status(self):
        await self.gate.wait()
        return await super().status()


class FakeMeter(Meter):
    def __init__(self, power=0.0):
        self.power_value = power
        self.error: Exception | None = None

    async def power(self):
        if self.error is not None:
            raise self.error
        return self.power_value


class FakeVehicle(Vehicle):
    def __init__(self, soc=50.0, capacity_wh=50000.0):
        super().__init__(capacity_wh)
        self.soc_value = soc

    async def soc(self):
        return self.soc_value


@pytest.fixture
def settings():
    """Application settings with short timeouts."""
    return AppConfig(
        voltage=230,
        pv_debounce=60.0,
        phase_dwell=120.0,
        failure_threshold=3,
        device_timeout=1.0,
        cycle_deadline=1.0,
    )


@pytest.fixture
def lp_config():
    """A single-phase 6..16A loadpoint in PV mode."""
    return LoadpointConfig(name="garage", mode="pv", min_current=6.0, max_current=16.0, phases=1)


@pytest.fixture
def charger():
    return FakeCharger()


@pytest.fixture
def loadpoint(lp_config, settings, charger):
    return Loadpoint(lp_config, settings, charger)


@pytest.fixture
def mock_mqtt():
    """MQTT client double recording publishes."""
    mqtt = MagicMock()
    mqtt.publish = AsyncMock()
    mqtt.publish_json = AsyncMock()
    mqtt.register = MagicMock()
    mqtt.status_topic = "pvlc/status"
    return mqtt


def snap(status=ChargeStatus.B, soc=None, power=0.0, energy=0.0):
    """Build a device snapshot."""
    return DeviceSnapshot(status=status, power=power, energy=energy, vehicle_soc=soc)
