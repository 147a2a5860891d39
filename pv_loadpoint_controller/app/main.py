"""Entry point for the PV Loadpoint Controller."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from .config import AppConfig, load_config
from .control import LocalControl
from .errors import ConfigError
from .ha_client import HAClient
from .ha_devices import build_loadpoint_devices, build_site_meters
from .ha_discovery import HADiscoveryPublisher
from .loadpoint import Loadpoint
from .mqtt_client import MQTTClient
from .persistence import Persistence
from .publisher import StatePublisher
from .relay import RelayBridge
from .site import Site

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def build_site(config: AppConfig, ha: HAClient, persistence: Persistence) -> Site:
    """Create loadpoints and site meters from configuration."""
    # Loadpoints naming the same link share one lock
    links: dict[str, asyncio.Lock] = {}
    loadpoints = []
    for lp_config in config.loadpoints:
        charger, meter, vehicle = build_loadpoint_devices(ha, lp_config)
        lock = links.setdefault(lp_config.link, asyncio.Lock()) if lp_config.link else None
        loadpoints.append(Loadpoint(lp_config, config, charger, meter, vehicle, lock))
        logger.info(
            "Loadpoint %s: mode=%s, %.0f-%.0fA, %dp%s",
            lp_config.name, lp_config.mode, lp_config.min_current, lp_config.max_current,
            lp_config.phases, " (switchable)" if lp_config.phases_switchable else "",
        )

    grid, pv, battery = build_site_meters(ha, config)
    return Site(config, loadpoints, grid=grid, pv=pv, battery=battery, persistence=persistence)


async def shutdown(site: Site, mqtt: MQTTClient, ha: HAClient) -> None:
    """Leave every charger disabled and announce that the controller is gone."""
    logger.info("Shutting down: disabling chargers")
    await site.shutdown()
    await mqtt.publish(mqtt.status_topic, "offline", retain=True)
    # Give the broker a moment to receive it
    await asyncio.sleep(1)
    await ha.close()


async def main() -> int:
    """Run the controller until SIGTERM/SIGINT. Returns the exit code."""
    logger.info("Starting PV Loadpoint Controller")

    try:
        config = load_config()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    logger.info(
        "Config: %d loadpoints, residual=%.0fW, interval=%.0fs, grid=%s, %d PV meters",
        len(config.loadpoints),
        config.residual_power,
        config.cycle_interval,
        config.grid_power_entity or "none",
        len(config.pv_power_entities),
    )

    mqtt = MQTTClient(config)
    ha = HAClient()
    persistence = Persistence()
    site = build_site(config, ha, persistence)

    saved = persistence.load()
    if saved:
        site.restore_state(saved)

    # State goes to the local topics and to the relay
    site.add_listener(StatePublisher(config, mqtt).publish)
    LocalControl(config, mqtt, site).setup_subscriptions()
    RelayBridge(config, mqtt, site).setup_subscriptions()
    discovery = HADiscoveryPublisher(config, mqtt)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    cycle = asyncio.create_task(site.run(), name="site")
    tasks = [
        cycle,
        asyncio.create_task(mqtt.start(), name="mqtt"),
        asyncio.create_task(discovery.publish_on_connect(mqtt), name="discovery"),
    ]
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
        cycle.cancel()
        await asyncio.gather(cycle, return_exceptions=True)
        await shutdown(site, mqtt, ha)
    except Exception:
        logger.exception("Unexpected error in main loop")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("PV Loadpoint Controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
