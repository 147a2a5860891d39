"""Local control surface: per-loadpoint MQTT set topics."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from .config import AppConfig
from .const import TOPIC_ERROR, TOPIC_LOADPOINT_SET
from .errors import InvalidCommandError
from .loadpoint import Loadpoint
from .mqtt_client import MQTTClient
from .site import Site

logger = logging.getLogger(__name__)

LOCAL_SOURCE = "local"


def _number(payload: str) -> float:
    try:
        return float(payload)
    except ValueError:
        raise InvalidCommandError(f"not a number: {payload!r}") from None


def _integer(payload: str) -> int:
    value = _number(payload)
    if value != int(value):
        raise InvalidCommandError(f"not an integer: {payload!r}")
    return int(value)


def _target_charge(lp: Loadpoint, payload: str) -> None:
    """Payload: {"time": "<ISO-8601>", "soc": <percent>}."""
    try:
        data = json.loads(payload)
        time = datetime.fromisoformat(data["time"])
        soc = data["soc"]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise InvalidCommandError(f"invalid target charge {payload!r}: {e}") from None
    lp.set_target_charge(time, soc)


# Topic key -> operation
COMMANDS: dict[str, Callable[[Loadpoint, str], None]] = {
    "mode": lambda lp, payload: lp.set_mode(payload.strip()),
    "targetSoC": lambda lp, payload: lp.set_target_soc(_integer(payload)),
    "minSoC": lambda lp, payload: lp.set_min_soc(_integer(payload)),
    "phases": lambda lp, payload: lp.set_phases(_integer(payload)),
    "minCurrent": lambda lp, payload: lp.set_min_current(_number(payload)),
    "maxCurrent": lambda lp, payload: lp.set_max_current(_number(payload)),
    "targetCharge": _target_charge,
    "remoteDemand": lambda lp, payload: lp.remote_control(LOCAL_SOURCE, payload),
}


class LocalControl:
    """Accepts writes on <prefix>/loadpoints/<n>/<key>/set.

    Rejected writes are logged and reported on <prefix>/error.
    """

    def __init__(self, config: AppConfig, mqtt: MQTTClient, site: Site) -> None:
        self._prefix = config.topic_prefix
        self._mqtt = mqtt
        self._site = site

    def setup_subscriptions(self) -> None:
        for index in range(1, len(self._site.loadpoints) + 1):
            for key in COMMANDS:
                self._mqtt.register(
                    TOPIC_LOADPOINT_SET.format(self._prefix, index, key),
                    self._make_handler(index, key),
                )

    def _make_handler(self, index: int, key: str):
        """Create a topic handler bound to a loadpoint and setting."""

        async def _handler(topic: str, payload: str) -> None:
            error = self.execute(index, key, payload)
            if error:
                await self._mqtt.publish_json(
                    TOPIC_ERROR.format(self._prefix),
                    {"loadpoint": index, "key": key, "error": error},
                )

        return _handler

    def execute(self, index: int, key: str, payload: str) -> str:
        """Run a write. Returns an error text, empty on success."""
        lp = self._site.loadpoint(index)
        try:
            COMMANDS[key](lp, payload)
        except InvalidCommandError as e:
            logger.warning("%s: %s=%r rejected: %s", lp.name, key, payload, e)
            return str(e)
        logger.debug("%s: %s=%r accepted", lp.name, key, payload)
        return ""
