"""Device adapters backed by Home Assistant entities."""

from __future__ import annotations

import logging

from .config import AppConfig, LoadpointConfig
from .devices import Charger, Meter, Vehicle
from .errors import TransientError, UnsupportedError
from .ha_client import HAClient
from .models import ChargeStatus

logger = logging.getLogger(__name__)

# Map charger status strings to connector states
STATUS_MAP: dict[str, ChargeStatus] = {
    "not connected": ChargeStatus.A,
    "disconnected": ChargeStatus.A,
    "connected": ChargeStatus.B,
    "active": ChargeStatus.B,
    "sleeping": ChargeStatus.B,
    "disabled": ChargeStatus.B,
    "charging": ChargeStatus.C,
    "error": ChargeStatus.E,
    "fault": ChargeStatus.F,
}

# Select options used to enable/disable via an override entity
SELECT_ENABLED = "active"
SELECT_DISABLED = "disabled"


def parse_status(value: str) -> ChargeStatus:
    """Parse a status letter (A..F) or a descriptive status string."""
    text = value.strip()
    if len(text) == 1 and text.upper() in ChargeStatus.__members__:
        return ChargeStatus(text.upper())
    try:
        return STATUS_MAP[text.lower()]
    except KeyError:
        raise TransientError(f"unknown charger status {value!r}") from None


async def _read_float(ha: HAClient, entity_id: str, op: str) -> float:
    if not entity_id:
        raise UnsupportedError(op)
    value = await ha.get_float(entity_id)
    if value is None:
        raise TransientError(f"{entity_id} unavailable")
    return value


async def _read_currents(ha: HAClient, entity_ids: list[str]) -> tuple[float, float, float]:
    if not entity_ids:
        raise UnsupportedError("currents")
    l1, l2, l3 = [await _read_float(ha, e, "currents") for e in entity_ids]
    return l1, l2, l3


async def _write_value(ha: HAClient, entity_id: str, value: float, op: str) -> None:
    """Write a numeric value to a number or select entity."""
    if not entity_id:
        raise UnsupportedError(op)
    if entity_id.startswith("number.") or entity_id.startswith("input_number."):
        ok = await ha.set_number(entity_id, value)
    else:
        ok = await ha.set_select(entity_id, str(round(value)))
    if not ok:
        raise TransientError(f"{op} via {entity_id} failed")


class HAEntityCharger(Charger):
    """Charger whose status and controls are exposed as HA entities."""

    def __init__(self, ha: HAClient, config: LoadpointConfig) -> None:
        self._ha = ha
        self._config = config

    async def status(self) -> ChargeStatus:
        if not self._config.status_entity:
            raise UnsupportedError("status")
        value = await self._ha.get_state(self._config.status_entity)
        if value is None:
            raise TransientError(f"{self._config.status_entity} unavailable")
        return parse_status(value)

    async def enable(self, enable: bool) -> None:
        entity_id = self._config.enable_entity
        if not entity_id:
            raise UnsupportedError("enable")
        if entity_id.startswith("select."):
            ok = await self._ha.set_select(entity_id, SELECT_ENABLED if enable else SELECT_DISABLED)
        else:
            ok = await self._ha.set_switch(entity_id, enable)
        if not ok:
            raise TransientError(f"enable via {entity_id} failed")

    async def set_current(self, amps: float) -> None:
        await _write_value(self._ha, self._config.current_entity, amps, "set_current")

    async def set_phases(self, phases: int) -> None:
        await _write_value(self._ha, self._config.phases_entity, phases, "set_phases")

    async def power(self) -> float:
        return await _read_float(self._ha, self._config.power_entity, "power")

    async def currents(self) -> tuple[float, float, float]:
        return await _read_currents(self._ha, self._config.currents_entities)

    async def energy(self) -> float:
        return await _read_float(self._ha, self._config.energy_entity, "energy")


class HAEntityMeter(Meter):
    """Meter reading power (W), energy (Wh) and phase currents from HA sensors."""

    def __init__(
        self,
        ha: HAClient,
        power_entity: str,
        energy_entity: str = "",
        currents_entities: list[str] | None = None,
    ) -> None:
        self._ha = ha
        self._power_entity = power_entity
        self._energy_entity = energy_entity
        self._currents_entities = currents_entities or []

    async def power(self) -> float:
        return await _read_float(self._ha, self._power_entity, "power")

    async def currents(self) -> tuple[float, float, float]:
        return await _read_currents(self._ha, self._currents_entities)

    async def energy(self) -> float:
        return await _read_float(self._ha, self._energy_entity, "energy")


class HAEntityVehicle(Vehicle):
    """Vehicle whose SoC (%) is available as a HA sensor."""

    def __init__(self, ha: HAClient, soc_entity: str, capacity_wh: float) -> None:
        super().__init__(capacity_wh)
        self._ha = ha
        self._soc_entity = soc_entity

    async def soc(self) -> float:
        return await _read_float(self._ha, self._soc_entity, "soc")


def build_loadpoint_devices(
    ha: HAClient, config: LoadpointConfig
) -> tuple[Charger, Meter | None, Vehicle | None]:
    """Create the charger, optional charge meter and optional vehicle of a loadpoint."""
    charger = HAEntityCharger(ha, config)

    meter = None
    if config.charge_meter_entity:
        meter = HAEntityMeter(
            ha, config.charge_meter_entity, config.charge_meter_energy_entity, config.currents_entities
        )

    vehicle = None
    if config.vehicle_soc_entity:
        vehicle = HAEntityVehicle(ha, config.vehicle_soc_entity, config.vehicle_capacity_kwh * 1000.0)

    return charger, meter, vehicle


def build_site_meters(
    ha: HAClient, config: AppConfig
) -> tuple[Meter | None, list[Meter], Meter | None]:
    """Create grid, PV and battery meters.

    Grid power is positive when importing, battery power positive when discharging.
    """
    grid = HAEntityMeter(ha, config.grid_power_entity) if config.grid_power_entity else None
    pv = [HAEntityMeter(ha, entity_id) for entity_id in config.pv_power_entities]
    battery = HAEntityMeter(ha, config.battery_power_entity) if config.battery_power_entity else None
    return grid, pv, battery
