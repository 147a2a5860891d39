"""Remote control gateway: maps enumerated relay API calls onto loadpoint operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any

from .errors import InvalidCommandError
from .loadpoint import Loadpoint
from .site import Site

logger = logging.getLogger(__name__)


class ApiCall(IntEnum):
    """Operation ids carried by the relay."""

    NAME = 1
    HAS_CHARGE_METER = 2
    GET_STATUS = 3
    GET_MODE = 4
    SET_MODE = 5
    GET_TARGET_SOC = 6
    SET_TARGET_SOC = 7
    GET_MIN_SOC = 8
    SET_MIN_SOC = 9
    GET_PHASES = 10
    SET_PHASES = 11
    SET_TARGET_CHARGE = 12
    GET_CHARGE_POWER = 13
    GET_MIN_CURRENT = 14
    SET_MIN_CURRENT = 15
    GET_MAX_CURRENT = 16
    SET_MAX_CURRENT = 17
    GET_MIN_POWER = 18
    GET_MAX_POWER = 19
    GET_REMAINING_DURATION = 20
    GET_REMAINING_ENERGY = 21
    REMOTE_CONTROL = 22


@dataclass
class Payload:
    """Typed value slots of a request or response; only the relevant one is set."""

    stringval: str = ""
    boolval: bool = False
    intval: int = 0
    floatval: float = 0.0
    timeval: str = ""  # ISO-8601
    durationval: float = 0.0  # seconds

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Payload:
        data = data or {}
        return cls(
            stringval=str(data.get("stringval") or ""),
            boolval=bool(data.get("boolval", False)),
            intval=int(data.get("intval") or 0),
            floatval=float(data.get("floatval") or 0.0),
            timeval=str(data.get("timeval") or ""),
            durationval=float(data.get("durationval") or 0.0),
        )


@dataclass
class EdgeRequest:
    id: int
    loadpoint: int  # 1-based
    api: int
    payload: Payload = field(default_factory=Payload)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EdgeRequest:
        try:
            return cls(
                id=int(data["id"]),
                loadpoint=int(data.get("loadpoint") or 0),
                api=int(data["api"]),
                payload=Payload.from_dict(data.get("payload")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidCommandError(f"malformed request: {e}") from e


@dataclass
class EdgeResponse:
    id: int
    payload: Payload = field(default_factory=Payload)
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_time(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidCommandError(f"invalid time: {value!r}") from None


def _set_target_charge(lp: Loadpoint, req: Payload, res: Payload) -> None:
    lp.set_target_charge(_parse_time(req.timeval), req.intval)


def _remaining_duration(lp: Loadpoint, req: Payload, res: Payload) -> None:
    duration = lp.get_remaining_duration()
    res.durationval = -1.0 if duration is None else duration.total_seconds()


def _remaining_energy(lp: Loadpoint, req: Payload, res: Payload) -> None:
    energy = lp.get_remaining_energy()
    res.floatval = -1.0 if energy is None else energy


def _status(lp: Loadpoint, req: Payload, res: Payload) -> None:
    status = lp.get_status()
    res.stringval = status.value if status else ""


Handler = Callable[[Loadpoint, Payload, Payload], None]

HANDLERS: dict[ApiCall, Handler] = {
    ApiCall.NAME: lambda lp, req, res: setattr(res, "stringval", lp.name),
    ApiCall.HAS_CHARGE_METER: lambda lp, req, res: setattr(res, "boolval", lp.has_charge_meter()),
    ApiCall.GET_STATUS: _status,
    ApiCall.GET_MODE: lambda lp, req, res: setattr(res, "stringval", lp.get_mode().value),
    ApiCall.SET_MODE: lambda lp, req, res: lp.set_mode(req.stringval),
    ApiCall.GET_TARGET_SOC: lambda lp, req, res: setattr(res, "intval", lp.get_target_soc()),
    ApiCall.SET_TARGET_SOC: lambda lp, req, res: lp.set_target_soc(req.intval),
    ApiCall.GET_MIN_SOC: lambda lp, req, res: setattr(res, "intval", lp.get_min_soc()),
    ApiCall.SET_MIN_SOC: lambda lp, req, res: lp.set_min_soc(req.intval),
    ApiCall.GET_PHASES: lambda lp, req, res: setattr(res, "intval", lp.get_phases()),
    ApiCall.SET_PHASES: lambda lp, req, res: lp.set_phases(req.intval),
    ApiCall.SET_TARGET_CHARGE: _set_target_charge,
    ApiCall.GET_CHARGE_POWER: lambda lp, req, res: setattr(res, "floatval", lp.get_charge_power()),
    ApiCall.GET_MIN_CURRENT: lambda lp, req, res: setattr(res, "floatval", lp.get_min_current()),
    ApiCall.SET_MIN_CURRENT: lambda lp, req, res: lp.set_min_current(req.floatval),
    ApiCall.GET_MAX_CURRENT: lambda lp, req, res: setattr(res, "floatval", lp.get_max_current()),
    ApiCall.SET_MAX_CURRENT: lambda lp, req, res: lp.set_max_current(req.floatval),
    ApiCall.GET_MIN_POWER: lambda lp, req, res: setattr(res, "floatval", lp.get_min_power()),
    ApiCall.GET_MAX_POWER: lambda lp, req, res: setattr(res, "floatval", lp.get_max_power()),
    ApiCall.GET_REMAINING_DURATION: _remaining_duration,
    ApiCall.GET_REMAINING_ENERGY: _remaining_energy,
}


def handle_request(site: Site, request: EdgeRequest, source: str) -> EdgeResponse:
    """Execute one relay request. Errors are returned in the response, never raised."""
    response = EdgeResponse(id=request.id)

    try:
        api = ApiCall(request.api)
    except ValueError:
        response.error = f"unknown api call {request.api}"
        return response

    try:
        lp = site.loadpoint(request.loadpoint)
    except IndexError as e:
        response.error = str(e)
        return response

    try:
        if api == ApiCall.REMOTE_CONTROL:
            lp.remote_control(source, request.payload.stringval)
        else:
            HANDLERS[api](lp, request.payload, response.payload)
    except InvalidCommandError as e:
        logger.warning("%s: %s rejected: %s", lp.name, api.name, e)
        response.error = str(e)
    return response
