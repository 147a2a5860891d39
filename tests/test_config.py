"""Tests for configuration loading and validation."""
import json
import logging

import pytest

from app.config import AppConfig, LoadpointConfig, load_config, validate_config
from app.errors import ConfigError


def write_options(tmp_path, options):
    path = tmp_path / "options.json"
    path.write_text(json.dumps(options))
    return str(path)


class TestLoadConfig:
    """Test options.json and environment loading."""

    def test_options_file(self, tmp_path):
        path = write_options(tmp_path, {
            "mqtt_host": "broker",
            "grid_power_entity": "sensor.grid",
            "pv_power_entities": ["sensor.pv_east", "sensor.pv_west"],
            "residual_power": -100,
            "loadpoints": [
                {"name": "garage", "mode": "minpv", "phases": 1, "max_current": 20},
                {"status_entity": "sensor.wallbox_status", "phases_switchable": True},
            ],
        })
        config = load_config(path)
        assert config.mqtt_host == "broker"
        assert config.pv_power_entities == ["sensor.pv_east", "sensor.pv_west"]
        assert config.residual_power == -100
        assert [lp.name for lp in config.loadpoints] == ["garage", "lp2"]
        assert config.loadpoints[0].max_current == 20.0
        assert config.loadpoints[1].phases_switchable is True

    def test_env_fallback(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MQTT_HOST", "envbroker")
        monkeypatch.setenv("PV_POWER_ENTITIES", "sensor.a, sensor.b")
        monkeypatch.setenv("LOADPOINTS", json.dumps([{"name": "carport"}]))
        config = load_config(str(tmp_path / "missing.json"))
        assert config.mqtt_host == "envbroker"
        assert config.pv_power_entities == ["sensor.a", "sensor.b"]
        assert config.loadpoints[0].name == "carport"

    def test_corrupt_options_fall_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MQTT_HOST", "envbroker")
        path = tmp_path / "options.json"
        path.write_text("{broken")
        assert load_config(str(path)).mqtt_host == "envbroker"

    def test_invalid_loadpoints_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOADPOINTS", "[{")
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "missing.json"))

    def test_invalid_options_rejected(self, tmp_path):
        path = write_options(tmp_path, {"loadpoints": [{"name": "a", "phases": 2}]})
        with pytest.raises(ConfigError):
            load_config(path)


class TestValidateConfig:
    """Test rejected configurations."""

    @pytest.mark.parametrize("loadpoint", [
        LoadpointConfig(name="a", mode="turbo"),
        LoadpointConfig(name="a", phases=2),
        LoadpointConfig(name="a", min_current=0),
        LoadpointConfig(name="a", min_current=16, max_current=10),
        LoadpointConfig(name="a", max_current=40),
        LoadpointConfig(name="a", target_soc=120),
        LoadpointConfig(name="a", currents_entities=["sensor.l1"]),
    ])
    def test_invalid_loadpoint(self, loadpoint):
        with pytest.raises(ConfigError):
            validate_config(AppConfig(loadpoints=[loadpoint]))

    def test_duplicate_names(self):
        config = AppConfig(loadpoints=[LoadpointConfig(name="a"), LoadpointConfig(name="a")])
        with pytest.raises(ConfigError, match="duplicate"):
            validate_config(config)

    def test_failure_threshold(self):
        with pytest.raises(ConfigError):
            validate_config(AppConfig(failure_threshold=0))

    def test_deadline_beyond_interval(self):
        with pytest.raises(ConfigError, match="cycle_deadline"):
            validate_config(AppConfig(cycle_interval=5.0, cycle_deadline=8.0))

    def test_short_deadline_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="app.config"):
            validate_config(AppConfig(cycle_deadline=4.0, device_timeout=2.0))
        assert "slow devices may miss cycles" in caplog.text

    def test_defaults_leave_room_for_reads(self, caplog):
        with caplog.at_level(logging.WARNING, logger="app.config"):
            validate_config(AppConfig())
        assert caplog.text == ""

    def test_valid(self):
        validate_config(AppConfig(loadpoints=[LoadpointConfig(name="a"), LoadpointConfig(name="b")]))
