"""Tests for MQTT buffering and dispatch."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import AppConfig
from app.mqtt_client import MQTTClient


@pytest.fixture
def client():
    return MQTTClient(AppConfig())


@pytest.fixture
def broker():
    """aiomqtt client double."""
    broker = MagicMock()
    broker.publish = AsyncMock()
    broker.subscribe = AsyncMock()
    return broker


class TestBuffering:
    """Test messages published while disconnected."""

    @pytest.mark.asyncio
    async def test_latest_state_sent_after_connect(self, client, broker):
        await client.publish("pvlc/loadpoints/1/mode", "pv", retain=True)
        await client.publish("pvlc/loadpoints/1/mode", "now", retain=True)
        await client.publish("pvlc/error", "oops")

        await client._on_connected(broker)

        published = [(c[0][0], c[0][1]) for c in broker.publish.call_args_list]
        assert published == [
            ("pvlc/status", "online"),
            ("pvlc/loadpoints/1/mode", "now"),
            ("pvlc/error", "oops"),
        ]
        assert client.connected.is_set()

    @pytest.mark.asyncio
    async def test_subscribes_registered_topics(self, client, broker):
        client.register("pvlc/relay/request", AsyncMock())
        await client._on_connected(broker)
        broker.subscribe.assert_called_once_with("pvlc/relay/request", qos=1)

    @pytest.mark.asyncio
    async def test_publish_json_when_connected(self, client, broker):
        await client._on_connected(broker)
        await client.publish_json("pvlc/relay/response", {"id": 1})
        broker.publish.assert_called_with("pvlc/relay/response", '{"id": 1}', retain=False)


class TestDispatch:

    @pytest.mark.asyncio
    async def test_matching_handlers_called(self, client):
        first, second, other = AsyncMock(), AsyncMock(), AsyncMock()
        client.register("pvlc/loadpoints/+/mode/set", first)
        client.register("pvlc/loadpoints/+/mode/set", second)
        client.register("pvlc/relay/request", other)

        await client._dispatch("pvlc/loadpoints/1/mode/set", "now")

        first.assert_called_once_with("pvlc/loadpoints/1/mode/set", "now")
        second.assert_called_once()
        other.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_error_contained(self, client):
        failing, ok = AsyncMock(side_effect=RuntimeError("boom")), AsyncMock()
        client.register("pvlc/#", failing)
        client.register("pvlc/status", ok)
        await client._dispatch("pvlc/status", "x")
        ok.assert_called_once()
