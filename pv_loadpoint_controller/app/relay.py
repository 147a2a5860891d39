"""Relay bridge: carries gateway requests, responses and state updates over MQTT."""

from __future__ import annotations

import json
import logging

from .config import AppConfig
from .const import RELAY_TOPIC_REQUEST, RELAY_TOPIC_RESPONSE, RELAY_TOPIC_UPDATE
from .errors import InvalidCommandError
from .gateway import EdgeRequest, EdgeResponse, handle_request
from .models import Param
from .mqtt_client import MQTTClient
from .site import Site

logger = logging.getLogger(__name__)


class RelayBridge:
    """Mirrors the control surface to a remote process.

    Requests arrive as JSON on <relay_prefix>/request and are answered on
    <relay_prefix>/response. Every cycle's state is forwarded on
    <relay_prefix>/update. The bridge never retries; errors go back to the
    caller in the response.
    """

    def __init__(self, config: AppConfig, mqtt: MQTTClient, site: Site) -> None:
        self._mqtt = mqtt
        self._site = site
        self._source = config.relay_source
        self._request_topic = RELAY_TOPIC_REQUEST.format(config.relay_prefix)
        self._response_topic = RELAY_TOPIC_RESPONSE.format(config.relay_prefix)
        self._update_topic = RELAY_TOPIC_UPDATE.format(config.relay_prefix)

    def setup_subscriptions(self) -> None:
        self._mqtt.register(self._request_topic, self._on_request)
        self._site.add_listener(self.send_updates)

    async def _on_request(self, topic: str, payload: str) -> None:
        await self._mqtt.publish_json(self._response_topic, self.handle(payload).to_dict())

    def handle(self, payload: str) -> EdgeResponse:
        """Decode and execute one request."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Invalid relay request: %s", e)
            return EdgeResponse(id=0, error=f"invalid request: {e}")
        if not isinstance(data, dict):
            return EdgeResponse(id=0, error="invalid request: expected a JSON object")

        try:
            request = EdgeRequest.from_dict(data)
        except InvalidCommandError as e:
            logger.warning("Invalid relay request: %s", e)
            request_id = data.get("id")
            return EdgeResponse(id=request_id if isinstance(request_id, int) else 0, error=str(e))

        return handle_request(self._site, request, self._source)

    async def send_updates(self, params: list[Param]) -> None:
        """Forward a cycle's state updates to the relay."""
        updates = [
            {"loadpoint": p.loadpoint or 0, "key": p.key, "val": p.value}
            for p in params
        ]
        await self._mqtt.publish_json(self._update_topic, updates)
