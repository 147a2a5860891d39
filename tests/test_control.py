"""Tests for the local MQTT control surface and state publishing."""
import json

import pytest

from app.config import AppConfig
from app.control import LocalControl
from app.models import ChargeMode, Param, RemoteDemand
from app.mqtt_client import topic_matches
from app.publisher import StatePublisher, format_value
from app.site import Site


@pytest.fixture
def control(loadpoint, mock_mqtt):
    return LocalControl(AppConfig(), mock_mqtt, Site(AppConfig(), [loadpoint]))


class TestLocalControl:
    """Test writes on loadpoint set topics."""

    def test_set_mode(self, control, loadpoint):
        assert control.execute(1, "mode", "now") == ""
        loadpoint.apply_intents(0)
        assert loadpoint.mode == ChargeMode.NOW

    def test_numeric_payloads(self, control, loadpoint):
        assert control.execute(1, "targetSoC", "80") == ""
        assert control.execute(1, "maxCurrent", "12.5") == ""
        loadpoint.apply_intents(0)
        assert loadpoint.target_soc == 80
        assert loadpoint.max_current == 12.5

    @pytest.mark.parametrize("key,payload", [
        ("targetSoC", "lots"),
        ("targetSoC", "80.5"),
        ("phases", "2"),
        ("mode", "turbo"),
        ("targetCharge", "{\"soc\": 80}"),
        ("remoteDemand", "pause"),
    ])
    def test_rejected(self, control, key, payload):
        assert control.execute(1, key, payload) != ""

    def test_target_charge(self, control, loadpoint):
        payload = json.dumps({"time": "2026-05-01T07:00:00+02:00", "soc": 70})
        assert control.execute(1, "targetCharge", payload) == ""
        loadpoint.apply_intents(0)
        assert loadpoint.target_soc == 70

    def test_remote_demand_source(self, control, loadpoint):
        control.execute(1, "remoteDemand", "stop")
        loadpoint.apply_intents(0)
        assert loadpoint.remote_demand == RemoteDemand.STOP
        assert loadpoint.remote_source == "local"

    def test_subscriptions(self, control, mock_mqtt):
        control.setup_subscriptions()
        topics = [c[0][0] for c in mock_mqtt.register.call_args_list]
        assert "pvlc/loadpoints/1/mode/set" in topics
        assert "pvlc/loadpoints/1/targetCharge/set" in topics

    @pytest.mark.asyncio
    async def test_error_published(self, control, mock_mqtt):
        handler = control._make_handler(1, "mode")
        await handler("pvlc/loadpoints/1/mode/set", "turbo")
        topic, data = mock_mqtt.publish_json.call_args[0]
        assert topic == "pvlc/error"
        assert data["key"] == "mode"

    @pytest.mark.asyncio
    async def test_no_error_on_success(self, control, mock_mqtt):
        await control._make_handler(1, "mode")("pvlc/loadpoints/1/mode/set", "now")
        mock_mqtt.publish_json.assert_not_called()


class TestStatePublisher:
    """Test retained state topics."""

    def test_format_value(self):
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value(3680.0) == "3680.0"
        assert format_value(16) == "16"

    def test_topics(self, mock_mqtt):
        publisher = StatePublisher(AppConfig(), mock_mqtt)
        assert publisher.topic(Param(None, "surplus", 0)) == "pvlc/site/surplus"
        assert publisher.topic(Param(2, "mode", "pv")) == "pvlc/loadpoints/2/mode"

    @pytest.mark.asyncio
    async def test_only_changes_published(self, mock_mqtt):
        publisher = StatePublisher(AppConfig(), mock_mqtt)
        await publisher.publish([Param(1, "mode", "pv"), Param(1, "phases", 1)])
        await publisher.publish([Param(1, "mode", "now"), Param(1, "phases", 1)])

        published = [c[0][:2] for c in mock_mqtt.publish.call_args_list]
        assert published == [
            ("pvlc/loadpoints/1/mode", "pv"),
            ("pvlc/loadpoints/1/phases", "1"),
            ("pvlc/loadpoints/1/mode", "now"),
        ]


class TestTopicMatches:

    @pytest.mark.parametrize("pattern,topic,expected", [
        ("pvlc/relay/request", "pvlc/relay/request", True),
        ("pvlc/loadpoints/+/mode/set", "pvlc/loadpoints/2/mode/set", True),
        ("pvlc/#", "pvlc/loadpoints/2/mode", True),
        ("pvlc/loadpoints/+/mode/set", "pvlc/loadpoints/2/phases/set", False),
        ("pvlc/status", "pvlc/status/extra", False),
    ])
    def test_patterns(self, pattern, topic, expected):
        assert topic_matches(pattern, topic) is expected
