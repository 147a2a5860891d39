"""Tests for the remote control gateway and its MQTT relay."""
import json

import pytest

from app.config import AppConfig
from app.gateway import ApiCall, EdgeRequest, Payload, handle_request
from app.models import ChargeMode, RemoteDemand
from app.relay import RelayBridge
from app.site import Site


@pytest.fixture
def site(loadpoint):
    return Site(AppConfig(), [loadpoint])


def request(api, loadpoint=1, **payload):
    return EdgeRequest(id=7, loadpoint=loadpoint, api=api, payload=Payload(**payload))


class TestHandleRequest:
    """Test dispatch of enumerated API calls."""

    def test_name(self, site):
        response = handle_request(site, request(ApiCall.NAME), "relay")
        assert response.id == 7
        assert response.error == ""
        assert response.payload.stringval == "garage"

    def test_get_mode(self, site):
        assert handle_request(site, request(ApiCall.GET_MODE), "relay").payload.stringval == "pv"

    def test_set_mode_deferred(self, site, loadpoint):
        response = handle_request(site, request(ApiCall.SET_MODE, stringval="now"), "relay")
        assert response.error == ""
        assert loadpoint.mode == ChargeMode.PV
        loadpoint.apply_intents(0)
        assert loadpoint.mode == ChargeMode.NOW

    def test_invalid_value_reported(self, site):
        response = handle_request(site, request(ApiCall.SET_TARGET_SOC, intval=150), "relay")
        assert "0..100" in response.error

    def test_unknown_api(self, site):
        assert handle_request(site, request(99), "relay").error == "unknown api call 99"

    def test_unknown_loadpoint(self, site):
        response = handle_request(site, request(ApiCall.NAME, loadpoint=3), "relay")
        assert "does not exist" in response.error

    def test_min_max_power(self, site):
        assert handle_request(site, request(ApiCall.GET_MIN_POWER), "relay").payload.floatval == pytest.approx(1380)
        assert handle_request(site, request(ApiCall.GET_MAX_POWER), "relay").payload.floatval == pytest.approx(3680)

    def test_remaining_energy_unknown(self, site):
        response = handle_request(site, request(ApiCall.GET_REMAINING_ENERGY), "relay")
        assert response.payload.floatval == -1.0

    def test_remote_control_records_source(self, site, loadpoint):
        handle_request(site, request(ApiCall.REMOTE_CONTROL, stringval="stop"), "relay")
        loadpoint.apply_intents(0)
        assert loadpoint.remote_demand == RemoteDemand.STOP
        assert loadpoint.remote_source == "relay"

    def test_set_target_charge(self, site, loadpoint):
        response = handle_request(
            site, request(ApiCall.SET_TARGET_CHARGE, timeval="2026-05-01T07:00:00+00:00", intval=80), "relay"
        )
        assert response.error == ""
        loadpoint.apply_intents(0)
        assert loadpoint.target_soc == 80
        assert loadpoint.target_time is not None

    def test_set_target_charge_bad_time(self, site):
        response = handle_request(site, request(ApiCall.SET_TARGET_CHARGE, timeval="tomorrow", intval=80), "relay")
        assert "invalid time" in response.error


class TestRelayBridge:
    """Test JSON request handling over MQTT."""

    @pytest.fixture
    def bridge(self, site, mock_mqtt):
        return RelayBridge(AppConfig(), mock_mqtt, site)

    def test_handle_json(self, bridge):
        response = bridge.handle(json.dumps({"id": 5, "loadpoint": 1, "api": 1}))
        assert response.to_dict()["payload"]["stringval"] == "garage"
        assert response.id == 5

    def test_invalid_json(self, bridge):
        assert "invalid request" in bridge.handle("{not json").error

    def test_not_an_object(self, bridge):
        assert bridge.handle("[1, 2]").error.startswith("invalid request")

    def test_malformed_request_keeps_id(self, bridge):
        response = bridge.handle(json.dumps({"id": 9, "loadpoint": 1}))
        assert response.id == 9
        assert "malformed" in response.error

    def test_subscriptions(self, bridge, mock_mqtt, site):
        bridge.setup_subscriptions()
        mock_mqtt.register.assert_called_once()
        assert mock_mqtt.register.call_args[0][0] == "pvlc/relay/request"

    @pytest.mark.asyncio
    async def test_response_published(self, bridge, mock_mqtt):
        await bridge._on_request("pvlc/relay/request", json.dumps({"id": 1, "loadpoint": 1, "api": 4}))
        topic, data = mock_mqtt.publish_json.call_args[0]
        assert topic == "pvlc/relay/response"
        assert data["payload"]["stringval"] == "pv"

    @pytest.mark.asyncio
    async def test_updates_forwarded(self, bridge, mock_mqtt, site):
        await bridge.send_updates(site.params())
        topic, updates = mock_mqtt.publish_json.call_args[0]
        assert topic == "pvlc/relay/update"
        assert {"loadpoint": 1, "key": "mode", "val": "pv"} in updates
        assert {"loadpoint": 0, "key": "surplus", "val": 0} in updates
