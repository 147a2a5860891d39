"""Tests for Home Assistant entity device adapters."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import AppConfig, LoadpointConfig
from app.errors import TransientError, UnsupportedError
from app.ha_devices import (
    HAEntityCharger,
    HAEntityMeter,
    build_loadpoint_devices,
    build_site_meters,
    parse_status,
)
from app.models import ChargeStatus


@pytest.fixture
def mock_ha():
    """Create a mock HA client."""
    ha = MagicMock()
    ha.get_state = AsyncMock(return_value="charging")
    ha.get_float = AsyncMock(return_value=3680.0)
    ha.set_number = AsyncMock(return_value=True)
    ha.set_select = AsyncMock(return_value=True)
    ha.set_switch = AsyncMock(return_value=True)
    return ha


@pytest.fixture
def wallbox_config():
    return LoadpointConfig(
        name="garage",
        status_entity="sensor.wallbox_status",
        enable_entity="select.wallbox_override",
        current_entity="number.wallbox_current",
        power_entity="sensor.wallbox_power",
    )


class TestParseStatus:

    @pytest.mark.parametrize("value,expected", [
        ("A", ChargeStatus.A),
        ("c", ChargeStatus.C),
        ("Charging", ChargeStatus.C),
        ("sleeping", ChargeStatus.B),
        ("not connected", ChargeStatus.A),
        ("fault", ChargeStatus.F),
    ])
    def test_known(self, value, expected):
        assert parse_status(value) == expected

    def test_unknown(self):
        with pytest.raises(TransientError):
            parse_status("booting")


class TestHAEntityCharger:
    """Test charger reads and writes through HA entities."""

    @pytest.mark.asyncio
    async def test_status(self, mock_ha, wallbox_config):
        charger = HAEntityCharger(mock_ha, wallbox_config)
        assert await charger.status() == ChargeStatus.C
        mock_ha.get_state.assert_called_once_with("sensor.wallbox_status")

    @pytest.mark.asyncio
    async def test_status_unavailable(self, mock_ha, wallbox_config):
        mock_ha.get_state.return_value = None
        with pytest.raises(TransientError):
            await HAEntityCharger(mock_ha, wallbox_config).status()

    @pytest.mark.asyncio
    async def test_enable_via_select(self, mock_ha, wallbox_config):
        charger = HAEntityCharger(mock_ha, wallbox_config)
        await charger.enable(True)
        await charger.enable(False)
        assert [c[0] for c in mock_ha.set_select.call_args_list] == [
            ("select.wallbox_override", "active"),
            ("select.wallbox_override", "disabled"),
        ]

    @pytest.mark.asyncio
    async def test_enable_via_switch(self, mock_ha, wallbox_config):
        wallbox_config.enable_entity = "switch.wallbox_charging"
        await HAEntityCharger(mock_ha, wallbox_config).enable(True)
        mock_ha.set_switch.assert_called_once_with("switch.wallbox_charging", True)

    @pytest.mark.asyncio
    async def test_set_current_number(self, mock_ha, wallbox_config):
        await HAEntityCharger(mock_ha, wallbox_config).set_current(10.0)
        mock_ha.set_number.assert_called_once_with("number.wallbox_current", 10.0)

    @pytest.mark.asyncio
    async def test_set_current_select(self, mock_ha, wallbox_config):
        wallbox_config.current_entity = "select.wallbox_current"
        await HAEntityCharger(mock_ha, wallbox_config).set_current(10.0)
        mock_ha.set_select.assert_called_once_with("select.wallbox_current", "10")

    @pytest.mark.asyncio
    async def test_failed_write(self, mock_ha, wallbox_config):
        mock_ha.set_number.return_value = False
        with pytest.raises(TransientError):
            await HAEntityCharger(mock_ha, wallbox_config).set_current(10.0)

    @pytest.mark.asyncio
    async def test_missing_entities_unsupported(self, mock_ha, wallbox_config):
        charger = HAEntityCharger(mock_ha, wallbox_config)
        with pytest.raises(UnsupportedError):
            await charger.set_phases(3)
        with pytest.raises(UnsupportedError):
            await charger.energy()
        with pytest.raises(UnsupportedError):
            await charger.currents()

    @pytest.mark.asyncio
    async def test_power(self, mock_ha, wallbox_config):
        assert await HAEntityCharger(mock_ha, wallbox_config).power() == 3680.0


class TestHAEntityMeter:

    @pytest.mark.asyncio
    async def test_unavailable_power(self, mock_ha):
        mock_ha.get_float.return_value = None
        with pytest.raises(TransientError):
            await HAEntityMeter(mock_ha, "sensor.grid").power()

    @pytest.mark.asyncio
    async def test_currents(self, mock_ha):
        mock_ha.get_float = AsyncMock(side_effect=[10.0, 11.0, 12.0])
        meter = HAEntityMeter(mock_ha, "sensor.power", currents_entities=["sensor.l1", "sensor.l2", "sensor.l3"])
        assert await meter.currents() == (10.0, 11.0, 12.0)


class TestBuilders:

    def test_loadpoint_devices(self, mock_ha, wallbox_config):
        wallbox_config.vehicle_soc_entity = "sensor.car_soc"
        wallbox_config.vehicle_capacity_kwh = 58
        charger, meter, vehicle = build_loadpoint_devices(mock_ha, wallbox_config)
        assert isinstance(charger, HAEntityCharger)
        assert meter is None
        assert vehicle.capacity_wh == 58000

    def test_charge_meter(self, mock_ha, wallbox_config):
        wallbox_config.charge_meter_entity = "sensor.meter_power"
        _, meter, vehicle = build_loadpoint_devices(mock_ha, wallbox_config)
        assert isinstance(meter, HAEntityMeter)
        assert vehicle is None

    def test_site_meters(self, mock_ha):
        config = AppConfig(grid_power_entity="sensor.grid", pv_power_entities=["sensor.pv1", "sensor.pv2"])
        grid, pv, battery = build_site_meters(mock_ha, config)
        assert grid is not None
        assert len(pv) == 2
        assert battery is None
