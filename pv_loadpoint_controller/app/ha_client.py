"""Home Assistant Supervisor API client."""

from __future__ import annotations

import logging
import os
from typing import Any

import aiohttp

from .const import HA_API_SERVICES, HA_API_STATES, HA_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

UNAVAILABLE_STATES = ("unavailable", "unknown")


class HAClient:
    """Client for the HA Supervisor REST API.

    Reads return None and writes return False when the API cannot be reached
    or the entity has no usable state; the device adapters decide how to
    report that to the controller.
    """

    def __init__(self, token: str | None = None) -> None:
        self._token = token if token is not None else os.environ.get("SUPERVISOR_TOKEN", "")
        self._session: aiohttp.ClientSession | None = None
        if not self._token:
            logger.warning("SUPERVISOR_TOKEN not set - HA API calls will fail")

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=HA_REQUEST_TIMEOUT),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, url: str, payload: dict | None = None) -> tuple[int, Any]:
        """Perform a request, returning status and decoded JSON body (or None).

        Raises ValueError if a successful response does not carry JSON.
        """
        async with self._get_session().request(method, url, json=payload) as resp:
            if resp.status not in (200, 201):
                return resp.status, None
            return resp.status, await resp.json(content_type=None)

    async def get_state(self, entity_id: str) -> str | None:
        """Get the state value of an entity.

        Returns the state string, or None on error.
        """
        try:
            status, data = await self._request("GET", HA_API_STATES.format(entity_id))
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.warning("Failed to get %s: %s", entity_id, e)
            return None

        if status != 200 or not isinstance(data, dict):
            logger.warning("GET %s returned %d", entity_id, status)
            return None
        state = data.get("state")
        if state is None or state in UNAVAILABLE_STATES:
            logger.debug("Entity %s is %s", entity_id, state)
            return None
        return str(state)

    async def get_float(self, entity_id: str) -> float | None:
        """Get entity state as a float."""
        state = await self.get_state(entity_id)
        if state is None:
            return None
        try:
            return float(state)
        except ValueError:
            logger.warning("Entity %s has non-numeric state: %s", entity_id, state)
            return None

    async def call_service(self, domain: str, service: str, data: dict) -> bool:
        """Call a HA service.

        Returns True on success.
        """
        try:
            status, _ = await self._request("POST", HA_API_SERVICES.format(domain, service), data)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.warning("Service call %s.%s failed: %s", domain, service, e)
            return False

        if status not in (200, 201):
            logger.warning("Service %s.%s returned %d", domain, service, status)
            return False
        return True

    async def set_number(self, entity_id: str, value: float) -> bool:
        """Set a number or input_number entity value."""
        domain = entity_id.split(".", 1)[0]
        return await self.call_service(domain, "set_value", {"entity_id": entity_id, "value": value})

    async def set_select(self, entity_id: str, option: str) -> bool:
        """Set a select entity option."""
        return await self.call_service("select", "select_option", {"entity_id": entity_id, "option": option})

    async def set_switch(self, entity_id: str, on: bool) -> bool:
        """Turn a switch or input_boolean on or off."""
        domain = entity_id.split(".", 1)[0]
        return await self.call_service(domain, "turn_on" if on else "turn_off", {"entity_id": entity_id})
