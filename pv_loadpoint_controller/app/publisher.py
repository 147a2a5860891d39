"""State publisher: exposes each cycle's state on MQTT topics."""

from __future__ import annotations

import logging
from typing import Any

from .config import AppConfig
from .const import TOPIC_LOADPOINT, TOPIC_SITE
from .models import Param
from .mqtt_client import MQTTClient

logger = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


class StatePublisher:
    """Publishes site and loadpoint parameters as retained topics, changes only."""

    def __init__(self, config: AppConfig, mqtt: MQTTClient) -> None:
        self._prefix = config.topic_prefix
        self._mqtt = mqtt
        self._last_sent: dict[str, str] = {}

    def topic(self, param: Param) -> str:
        if param.loadpoint is None:
            return TOPIC_SITE.format(self._prefix, param.key)
        return TOPIC_LOADPOINT.format(self._prefix, param.loadpoint, param.key)

    async def publish(self, params: list[Param]) -> None:
        for param in params:
            topic = self.topic(param)
            payload = format_value(param.value)
            if self._last_sent.get(topic) == payload:
                continue
            await self._mqtt.publish(topic, payload, retain=True)
            self._last_sent[topic] = payload
