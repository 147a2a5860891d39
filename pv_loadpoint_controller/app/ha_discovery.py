"""HA MQTT Discovery: publish auto-discovery configs for Home Assistant entities."""

from __future__ import annotations

import json
import logging

from .config import AppConfig
from .const import (
    DEVICE_IDENTIFIER,
    DEVICE_MANUFACTURER,
    DEVICE_MODEL,
    DEVICE_NAME,
    TOPIC_LOADPOINT,
    TOPIC_LOADPOINT_SET,
    TOPIC_SITE,
    TOPIC_STATUS,
)
from .models import ChargeMode
from .mqtt_client import MQTTClient

logger = logging.getLogger(__name__)


def _device_info() -> dict:
    """Common device info block for all entities."""
    return {
        "identifiers": [DEVICE_IDENTIFIER],
        "name": DEVICE_NAME,
        "manufacturer": DEVICE_MANUFACTURER,
        "model": DEVICE_MODEL,
    }


# key, name, unit, device_class, state_class, icon
LOADPOINT_SENSORS = [
    ("status", "Connector Status", None, None, None, "mdi:ev-plug-type2"),
    ("state", "State", None, None, None, "mdi:ev-station"),
    ("chargePower", "Charge Power", "W", "power", "measurement", "mdi:flash"),
    ("chargeCurrent", "Charge Current", "A", "current", "measurement", "mdi:current-ac"),
    ("phases", "Phases", None, None, "measurement", "mdi:sine-wave"),
    ("vehicleSoC", "Vehicle SoC", "%", "battery", "measurement", "mdi:car-battery"),
    ("chargedEnergy", "Charged Energy", "Wh", "energy", "total_increasing", "mdi:battery-charging"),
]

SITE_SENSORS = [
    ("gridPower", "Grid Power", "mdi:transmission-tower"),
    ("pvPower", "PV Power", "mdi:solar-power-variant"),
    ("batteryPower", "Battery Power", "mdi:home-battery"),
    ("surplus", "Surplus", "mdi:solar-power"),
]


class HADiscoveryPublisher:
    """Publishes MQTT Discovery configs so HA auto-creates entities."""

    def __init__(self, config: AppConfig, mqtt: MQTTClient) -> None:
        self._config = config
        self._mqtt = mqtt
        self._prefix = config.ha_discovery_prefix
        self._topic_prefix = config.topic_prefix

    async def publish_on_connect(self, mqtt: MQTTClient) -> None:
        """Wait for MQTT connection, then publish all discovery configs."""
        await mqtt.connected.wait()
        await self.publish_all()

    async def publish_all(self) -> None:
        """Publish discovery configs for all entities."""
        logger.info("Publishing HA MQTT Discovery configs")

        await self._publish_status_sensor()
        await self._publish_site_sensors()

        for index, lp in enumerate(self._config.loadpoints, start=1):
            await self._publish_mode_select(index, lp.name)
            await self._publish_soc_numbers(index, lp.name)
            await self._publish_current_number(index, lp.name)
            await self._publish_loadpoint_sensors(index, lp.name)

        logger.info("HA Discovery configs published (%d loadpoints)", len(self._config.loadpoints))

    async def _publish(self, component: str, config: dict) -> None:
        config["device"] = _device_info()
        topic = f"{self._prefix}/{component}/{config['unique_id']}/config"
        await self._mqtt.publish(topic, json.dumps(config), retain=True)

    async def _publish_status_sensor(self) -> None:
        """Publish discovery config for the controller status sensor."""
        await self._publish("sensor", {
            "name": "Controller Status",
            "unique_id": f"{DEVICE_IDENTIFIER}_status",
            "state_topic": TOPIC_STATUS.format(self._topic_prefix),
            "icon": "mdi:information-outline",
        })

    async def _publish_site_sensors(self) -> None:
        for key, name, icon in SITE_SENSORS:
            await self._publish("sensor", {
                "name": name,
                "unique_id": f"{DEVICE_IDENTIFIER}_site_{key}",
                "state_topic": TOPIC_SITE.format(self._topic_prefix, key),
                "unit_of_measurement": "W",
                "device_class": "power",
                "state_class": "measurement",
                "icon": icon,
            })

    async def _publish_mode_select(self, index: int, name: str) -> None:
        """Publish discovery config for a loadpoint's charge mode select."""
        await self._publish("select", {
            "name": f"{name} Mode",
            "unique_id": f"{DEVICE_IDENTIFIER}_lp{index}_mode",
            "command_topic": TOPIC_LOADPOINT_SET.format(self._topic_prefix, index, "mode"),
            "state_topic": TOPIC_LOADPOINT.format(self._topic_prefix, index, "mode"),
            "options": [mode.value for mode in ChargeMode],
            "icon": "mdi:solar-power-variant",
        })

    async def _publish_soc_numbers(self, index: int, name: str) -> None:
        for key, label, icon in (
            ("targetSoC", "Target SoC", "mdi:battery-charging-high"),
            ("minSoC", "Minimum SoC", "mdi:battery-charging-low"),
        ):
            await self._publish("number", {
                "name": f"{name} {label}",
                "unique_id": f"{DEVICE_IDENTIFIER}_lp{index}_{key}",
                "command_topic": TOPIC_LOADPOINT_SET.format(self._topic_prefix, index, key),
                "state_topic": TOPIC_LOADPOINT.format(self._topic_prefix, index, key),
                "min": 0,
                "max": 100,
                "step": 5,
                "unit_of_measurement": "%",
                "icon": icon,
            })

    async def _publish_current_number(self, index: int, name: str) -> None:
        """Publish discovery config for a loadpoint's maximum current."""
        await self._publish("number", {
            "name": f"{name} Max Current",
            "unique_id": f"{DEVICE_IDENTIFIER}_lp{index}_maxCurrent",
            "command_topic": TOPIC_LOADPOINT_SET.format(self._topic_prefix, index, "maxCurrent"),
            "state_topic": TOPIC_LOADPOINT.format(self._topic_prefix, index, "maxCurrent"),
            "min": 6,
            "max": self._config.max_current_limit,
            "step": 1,
            "unit_of_measurement": "A",
            "icon": "mdi:current-ac",
        })

    async def _publish_loadpoint_sensors(self, index: int, name: str) -> None:
        """Publish discovery configs for a single loadpoint's sensors."""
        for key, label, unit, device_class, state_class, icon in LOADPOINT_SENSORS:
            config = {
                "name": f"{name} {label}",
                "unique_id": f"{DEVICE_IDENTIFIER}_lp{index}_{key}",
                "state_topic": TOPIC_LOADPOINT.format(self._topic_prefix, index, key),
                "icon": icon,
            }
            if unit:
                config["unit_of_measurement"] = unit
            if device_class:
                config["device_class"] = device_class
            if state_class:
                config["state_class"] = state_class
            await self._publish("sensor", config)
