"""MQTT transport for the control surface, state topics and relay."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

import aiomqtt

from .config import AppConfig
from .const import MQTT_RECONNECT_DELAY, TOPIC_STATUS

logger = logging.getLogger(__name__)

# Async handler(topic, payload) for subscribed topics
MessageHandler = Callable[[str, str], Coroutine[Any, Any, None]]

# Commands must not be lost between broker and controller
SUBSCRIBE_QOS = 1

# Non-retained messages kept while disconnected
MAX_PENDING = 500


class MQTTClient:
    """aiomqtt connection with reconnect, offline buffering and topic dispatch.

    Retained messages are state: while disconnected only the latest payload per
    topic is kept. Other messages (relay responses, errors) are buffered in
    order, oldest dropped first. The broker publishes 'offline' on the status
    topic through the last will when the connection drops.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._connected = asyncio.Event()
        self._client: aiomqtt.Client | None = None
        self._pending_state: dict[str, str] = {}
        self._pending_messages: deque[tuple[str, str]] = deque(maxlen=MAX_PENDING)
        self.status_topic = TOPIC_STATUS.format(config.topic_prefix)

    @property
    def connected(self) -> asyncio.Event:
        """Set while a broker connection is up."""
        return self._connected

    def register(self, topic: str, callback: MessageHandler) -> None:
        """Subscribe a handler to a topic pattern (+ and # wildcards allowed)."""
        self._handlers.setdefault(topic, []).append(callback)
        logger.debug("Registered handler for topic: %s", topic)

    async def publish(self, topic: str, payload: str, retain: bool = False) -> None:
        """Publish now, or buffer until the next connection."""
        if self._client is not None and self._connected.is_set():
            try:
                await self._client.publish(topic, payload, retain=retain)
                return
            except aiomqtt.MqttError as e:
                logger.warning("Publish to %s failed, buffering: %s", topic, e)
        self._buffer(topic, payload, retain)

    async def publish_json(self, topic: str, data: Any, retain: bool = False) -> None:
        await self.publish(topic, json.dumps(data, default=str), retain=retain)

    def _buffer(self, topic: str, payload: str, retain: bool) -> None:
        if retain:
            self._pending_state[topic] = payload
        else:
            self._pending_messages.append((topic, payload))

    async def start(self) -> None:
        """Run the connection forever, reconnecting after broker errors."""
        while True:
            try:
                logger.info(
                    "Connecting to MQTT broker at %s:%d",
                    self._config.mqtt_host,
                    self._config.mqtt_port,
                )
                async with aiomqtt.Client(
                    hostname=self._config.mqtt_host,
                    port=self._config.mqtt_port,
                    username=self._config.mqtt_username or None,
                    password=self._config.mqtt_password or None,
                    will=aiomqtt.Will(self.status_topic, "offline", retain=True),
                ) as client:
                    await self._on_connected(client)
                    async for message in client.messages:
                        await self._dispatch(str(message.topic), _decode(message.payload))

            except aiomqtt.MqttError as e:
                self._connected.clear()
                self._client = None
                logger.warning(
                    "MQTT connection lost: %s. Reconnecting in %ds...",
                    e,
                    MQTT_RECONNECT_DELAY,
                )
                await asyncio.sleep(MQTT_RECONNECT_DELAY)

    async def _on_connected(self, client: aiomqtt.Client) -> None:
        self._client = client
        for topic in self._handlers:
            await client.subscribe(topic, qos=SUBSCRIBE_QOS)
        await client.publish(self.status_topic, "online", retain=True)
        self._connected.set()
        logger.info("MQTT connected, %d topics subscribed", len(self._handlers))
        await self._flush()

    async def _flush(self) -> None:
        """Send what was buffered while disconnected."""
        state, self._pending_state = self._pending_state, {}
        messages = list(self._pending_messages)
        self._pending_messages.clear()
        if state or messages:
            logger.debug("Flushing %d state and %d buffered messages", len(state), len(messages))

        for topic, payload in state.items():
            await self.publish(topic, payload, retain=True)
        for topic, payload in messages:
            await self.publish(topic, payload)

    async def _dispatch(self, topic: str, payload: str) -> None:
        for pattern, handlers in self._handlers.items():
            if not topic_matches(pattern, topic):
                continue
            for handler in handlers:
                try:
                    await handler(topic, payload)
                except Exception:
                    logger.exception("Error handling %s (pattern %s)", topic, pattern)


def _decode(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    return "" if payload is None else str(payload)


def topic_matches(pattern: str, topic: str) -> bool:
    """MQTT wildcard match: + is one level, # the remaining levels."""
    levels = topic.split("/")
    filters = pattern.split("/")
    for i, part in enumerate(filters):
        if part == "#":
            return True
        if i == len(levels) or part not in ("+", levels[i]):
            return False
    return len(filters) == len(levels)
