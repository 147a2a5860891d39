"""Configuration loading for the PV Loadpoint Controller."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from .const import (
    DEFAULT_CURRENT_STEP,
    DEFAULT_CYCLE_DEADLINE,
    DEFAULT_CYCLE_INTERVAL,
    DEFAULT_DEVICE_TIMEOUT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HA_DISCOVERY_PREFIX,
    DEFAULT_MAX_CURRENT,
    DEFAULT_MAX_CURRENT_LIMIT,
    DEFAULT_MIN_CURRENT,
    DEFAULT_MIN_SOC,
    DEFAULT_PHASE_DWELL,
    DEFAULT_PHASES,
    DEFAULT_PV_DEBOUNCE,
    DEFAULT_RELAY_PREFIX,
    DEFAULT_RELAY_SOURCE,
    DEFAULT_RESIDUAL_POWER,
    DEFAULT_TARGET_SOC,
    DEFAULT_TOPIC_PREFIX,
    DEFAULT_VOLTAGE,
    MAX_DEVICE_READS,
    VALID_PHASES,
)
from .errors import ConfigError
from .models import ChargeMode

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"


@dataclass
class LoadpointConfig:
    """Configuration of a single loadpoint."""

    name: str
    mode: str = ChargeMode.PV.value
    min_current: float = DEFAULT_MIN_CURRENT
    max_current: float = DEFAULT_MAX_CURRENT
    phases: int = DEFAULT_PHASES
    phases_switchable: bool = False
    # Loadpoints on the same physical link (e.g. a shared serial bus) are serialised
    link: str = ""

    # Charger entities
    status_entity: str = ""
    enable_entity: str = ""
    current_entity: str = ""
    phases_entity: str = ""
    power_entity: str = ""
    energy_entity: str = ""
    currents_entities: list[str] = field(default_factory=list)

    # Separate charge meter
    charge_meter_entity: str = ""
    charge_meter_energy_entity: str = ""

    # Vehicle
    vehicle_soc_entity: str = ""
    vehicle_capacity_kwh: float = 0.0

    target_soc: int = DEFAULT_TARGET_SOC
    min_soc: int = DEFAULT_MIN_SOC


@dataclass
class AppConfig:
    """Application configuration."""

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""

    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    relay_prefix: str = DEFAULT_RELAY_PREFIX
    relay_source: str = DEFAULT_RELAY_SOURCE

    # Site meters (HA sensor entity IDs)
    grid_power_entity: str = ""
    pv_power_entities: list[str] = field(default_factory=list)
    battery_power_entity: str = ""

    # Limits
    voltage: int = DEFAULT_VOLTAGE
    residual_power: float = DEFAULT_RESIDUAL_POWER
    max_current_limit: float = DEFAULT_MAX_CURRENT_LIMIT
    current_step: float = DEFAULT_CURRENT_STEP

    # Cycle timing
    cycle_interval: float = DEFAULT_CYCLE_INTERVAL
    cycle_deadline: float = DEFAULT_CYCLE_DEADLINE
    device_timeout: float = DEFAULT_DEVICE_TIMEOUT

    # Algorithm tuning
    pv_debounce: float = DEFAULT_PV_DEBOUNCE
    phase_dwell: float = DEFAULT_PHASE_DWELL
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD

    loadpoints: list[LoadpointConfig] = field(default_factory=list)

    # HA Discovery
    ha_discovery_prefix: str = DEFAULT_HA_DISCOVERY_PREFIX


def load_config(path: str = OPTIONS_PATH) -> AppConfig:
    """Load configuration from HA add-on options or environment variables."""
    config = AppConfig()

    # Try loading from HA add-on options.json
    if os.path.exists(path):
        try:
            with open(path) as f:
                options = json.load(f)
            logger.info("Loaded configuration from %s", path)
            _apply_options(config, options)
            validate_config(config)
            return config
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load %s: %s, falling back to env vars", path, e)
            config = AppConfig()

    # Fallback: environment variables
    _apply_env(config)
    validate_config(config)
    return config


def _apply_options(config: AppConfig, options: dict) -> None:
    """Apply options.json values to config."""
    if options.get("mqtt_host"):
        config.mqtt_host = options["mqtt_host"]
    if options.get("mqtt_port"):
        config.mqtt_port = int(options["mqtt_port"])
    if options.get("mqtt_username"):
        config.mqtt_username = options["mqtt_username"]
    if options.get("mqtt_password"):
        config.mqtt_password = options["mqtt_password"]
    if options.get("topic_prefix"):
        config.topic_prefix = options["topic_prefix"].rstrip("/")
    if options.get("relay_prefix"):
        config.relay_prefix = options["relay_prefix"].rstrip("/")
    if options.get("relay_source"):
        config.relay_source = options["relay_source"]
    if options.get("grid_power_entity"):
        config.grid_power_entity = options["grid_power_entity"]
    if options.get("pv_power_entities"):
        config.pv_power_entities = list(options["pv_power_entities"])
    if options.get("battery_power_entity"):
        config.battery_power_entity = options["battery_power_entity"]
    if options.get("voltage"):
        config.voltage = int(options["voltage"])
    if options.get("residual_power") is not None:
        config.residual_power = float(options["residual_power"])
    if options.get("max_current_limit"):
        config.max_current_limit = float(options["max_current_limit"])
    if options.get("current_step"):
        config.current_step = float(options["current_step"])
    if options.get("cycle_interval") is not None:
        config.cycle_interval = float(options["cycle_interval"])
    if options.get("cycle_deadline") is not None:
        config.cycle_deadline = float(options["cycle_deadline"])
    if options.get("device_timeout") is not None:
        config.device_timeout = float(options["device_timeout"])
    if options.get("pv_debounce") is not None:
        config.pv_debounce = float(options["pv_debounce"])
    if options.get("phase_dwell") is not None:
        config.phase_dwell = float(options["phase_dwell"])
    if options.get("failure_threshold"):
        config.failure_threshold = int(options["failure_threshold"])
    if options.get("loadpoints"):
        config.loadpoints = [_parse_loadpoint(i, lp) for i, lp in enumerate(options["loadpoints"])]
    if options.get("ha_discovery_prefix"):
        config.ha_discovery_prefix = options["ha_discovery_prefix"]


def _apply_env(config: AppConfig) -> None:
    """Apply environment variables to config."""
    config.mqtt_host = os.environ.get("MQTT_HOST", config.mqtt_host)
    config.mqtt_port = int(os.environ.get("MQTT_PORT", config.mqtt_port))
    config.mqtt_username = os.environ.get("MQTT_USERNAME", config.mqtt_username)
    config.mqtt_password = os.environ.get("MQTT_PASSWORD", config.mqtt_password)

    config.grid_power_entity = os.environ.get("GRID_POWER_ENTITY", config.grid_power_entity)
    pv_entities_env = os.environ.get("PV_POWER_ENTITIES")
    if pv_entities_env:
        config.pv_power_entities = [e.strip() for e in pv_entities_env.split(",") if e.strip()]
    config.battery_power_entity = os.environ.get(
        "BATTERY_POWER_ENTITY", config.battery_power_entity
    )

    config.voltage = int(os.environ.get("VOLTAGE", config.voltage))
    config.residual_power = float(os.environ.get("RESIDUAL_POWER", config.residual_power))
    config.cycle_interval = float(os.environ.get("CYCLE_INTERVAL", config.cycle_interval))

    loadpoints_env = os.environ.get("LOADPOINTS")
    if loadpoints_env:
        try:
            raw = json.loads(loadpoints_env)
        except json.JSONDecodeError as e:
            raise ConfigError(f"LOADPOINTS is not valid JSON: {e}") from e
        config.loadpoints = [_parse_loadpoint(i, lp) for i, lp in enumerate(raw)]


def _parse_loadpoint(index: int, raw: dict[str, Any]) -> LoadpointConfig:
    """Build a LoadpointConfig from an options dictionary."""
    if not isinstance(raw, dict):
        raise ConfigError(f"loadpoint {index + 1}: expected a mapping, got {type(raw).__name__}")

    lp = LoadpointConfig(name=str(raw.get("name") or f"lp{index + 1}"))
    try:
        for key in (
            "mode", "link", "status_entity", "enable_entity", "current_entity",
            "phases_entity", "power_entity", "energy_entity", "charge_meter_entity",
            "charge_meter_energy_entity", "vehicle_soc_entity",
        ):
            if raw.get(key):
                setattr(lp, key, str(raw[key]))
        for key in ("min_current", "max_current", "vehicle_capacity_kwh"):
            if raw.get(key) is not None:
                setattr(lp, key, float(raw[key]))
        for key in ("phases", "target_soc", "min_soc"):
            if raw.get(key) is not None:
                setattr(lp, key, int(raw[key]))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"loadpoint {lp.name}: {e}") from e

    if raw.get("phases_switchable") is not None:
        lp.phases_switchable = bool(raw["phases_switchable"])
    if raw.get("currents_entities"):
        lp.currents_entities = list(raw["currents_entities"])
    return lp


def validate_config(config: AppConfig) -> None:
    """Reject configurations the controller cannot run with."""
    names = set()
    for lp in config.loadpoints:
        if lp.name in names:
            raise ConfigError(f"duplicate loadpoint name: {lp.name}")
        names.add(lp.name)

        try:
            ChargeMode(lp.mode)
        except ValueError:
            raise ConfigError(f"loadpoint {lp.name}: unknown mode {lp.mode!r}") from None
        if lp.phases not in VALID_PHASES:
            raise ConfigError(f"loadpoint {lp.name}: phases must be 1 or 3, got {lp.phases}")
        if lp.min_current <= 0 or lp.min_current > lp.max_current:
            raise ConfigError(
                f"loadpoint {lp.name}: invalid current range "
                f"{lp.min_current}A..{lp.max_current}A"
            )
        if lp.max_current > config.max_current_limit:
            raise ConfigError(
                f"loadpoint {lp.name}: max current {lp.max_current}A exceeds "
                f"limit {config.max_current_limit}A"
            )
        if not 0 <= lp.min_soc <= 100 or not 0 <= lp.target_soc <= 100:
            raise ConfigError(f"loadpoint {lp.name}: SoC values must be within 0..100")
        if len(lp.currents_entities) not in (0, 3):
            raise ConfigError(f"loadpoint {lp.name}: currents_entities needs 3 entries")

    if config.failure_threshold < 1:
        raise ConfigError("failure_threshold must be at least 1")
    if config.cycle_interval <= 0:
        raise ConfigError("cycle_interval must be positive")
    if not 0 < config.cycle_deadline <= config.cycle_interval:
        raise ConfigError(
            f"cycle_deadline {config.cycle_deadline}s must be within 0..{config.cycle_interval}s"
        )
    if config.cycle_deadline < MAX_DEVICE_READS * config.device_timeout:
        logger.warning(
            "cycle_deadline %.1fs is shorter than %d reads of device_timeout %.1fs; "
            "slow devices may miss cycles",
            config.cycle_deadline, MAX_DEVICE_READS, config.device_timeout,
        )
