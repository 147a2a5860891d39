"""Loadpoint: per-charge-point state machine, charge policy and charger commands."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from . import planner
from .config import AppConfig, LoadpointConfig
from .const import VALID_PHASES
from .devices import Charger, Meter, Vehicle
from .errors import InvalidCommandError
from .health import FAILED, FailureTracker
from .models import (
    ChargeMode,
    ChargePointDemand,
    ChargeStatus,
    Command,
    DeviceSnapshot,
    LoadpointState,
    Param,
    PowerBudget,
    RemoteDemand,
)

logger = logging.getLogger(__name__)

# Reads whose repeated failure faults the loadpoint; energy and soc only go stale
READ_OPS = ("status", "power", "currents")
WRITE_OPS = ("enable", "current", "phases")

# Settings that survive a restart
PERSISTED_SETTINGS = ("mode", "target_soc", "min_soc", "min_current", "max_current", "phases")


class Loadpoint:
    """A single charge point and its optional vehicle.

    Each cycle the site calls, in order: apply_intents(), read_snapshot(),
    observe(), demand(), decide() and start_apply(). Control-surface writes
    are validated immediately but only buffered; they take effect at the
    next apply_intents().
    """

    def __init__(
        self,
        config: LoadpointConfig,
        settings: AppConfig,
        charger: Charger,
        charge_meter: Meter | None = None,
        vehicle: Vehicle | None = None,
        link_lock: asyncio.Lock | None = None,
    ) -> None:
        self._config = config
        self._charger = charger
        self._charge_meter = charge_meter
        self._vehicle = vehicle
        self._link = link_lock or asyncio.Lock()

        self._voltage = float(settings.voltage)
        self._current_step = settings.current_step
        self._max_current_limit = settings.max_current_limit
        self._pv_debounce = settings.pv_debounce
        self._phase_dwell = settings.phase_dwell
        self._failures = FailureTracker(config.name, settings.failure_threshold, settings.device_timeout)

        # User settings
        self.mode = ChargeMode(config.mode)
        self.min_current = config.min_current
        self.max_current = config.max_current
        self.phases = config.phases  # Commanded phase count
        self.target_soc = config.target_soc
        self.min_soc = config.min_soc
        self.target_time: datetime | None = None
        self.remote_demand = RemoteDemand.NONE
        self.remote_source = ""

        # Control-surface writes waiting for the next cycle
        self._intents: dict[str, Any] = {}

        self._state = LoadpointState.DISCONNECTED
        self._snapshot = DeviceSnapshot()
        self._budget = PowerBudget()
        self._command = Command.disabled(self.phases)

        # Last values successfully written to the charger
        self._enabled: bool | None = None
        self._applied_current: float | None = None
        self._applied_phases = config.phases
        self._write_task: asyncio.Task | None = None

        # PV hysteresis
        self._pv_enabled = False
        self._pv_timer: float | None = None

        # Phase switching
        self._phase_timer: float | None = None
        self._phase_timer_target: int | None = None
        self._last_phase_switch = -math.inf

        self._session_start_energy: float | None = None

    # ------------------------------------------------------------------
    # Properties

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def state(self) -> LoadpointState:
        return self._state

    @property
    def snapshot(self) -> DeviceSnapshot:
        return self._snapshot

    @property
    def command(self) -> Command:
        return self._command

    @property
    def budget(self) -> PowerBudget:
        return self._budget

    @property
    def enabled(self) -> bool:
        return bool(self._enabled)

    @property
    def capacity_wh(self) -> float:
        return self._vehicle.capacity_wh if self._vehicle else 0.0

    def _power(self, current: float, phases: int) -> float:
        return current * phases * self._voltage

    def _can_switch_phases(self) -> bool:
        return self._config.phases_switchable and self._failures.is_supported("phases")

    def _max_phases(self) -> int:
        return 3 if self._can_switch_phases() else self.phases

    # ------------------------------------------------------------------
    # Device I/O

    async def read_snapshot(self) -> DeviceSnapshot:
        """Read all device values. Failed reads keep the last known value."""
        if self._write_task is not None and not self._write_task.done():
            # Commands of the previous cycle complete before the next read
            await asyncio.shield(self._write_task)

        meter = self._charge_meter or self._charger
        reads = [
            ("status", self._charger.status),
            ("power", meter.power),
            ("currents", meter.currents),
            ("energy", meter.energy),
        ]
        if self._vehicle is not None:
            reads.append(("soc", self._vehicle.soc))

        previous = self._snapshot
        values: dict[str, Any] = {}
        unavailable = set()

        async with self._link:
            for field_name, func in reads:
                value = await self._failures.call(field_name, func)
                if value is FAILED:
                    unavailable.add(field_name)
                    value = getattr(previous, _SNAPSHOT_FIELDS[field_name])
                values[_SNAPSHOT_FIELDS[field_name]] = value

        if self._vehicle is None:
            unavailable.add("soc")

        return DeviceSnapshot(
            status=values["status"],
            power=values["power"],
            currents=values["currents"],
            energy=values["energy"],
            vehicle_soc=values.get("vehicle_soc"),
            unavailable=frozenset(_SNAPSHOT_FIELDS[f] for f in unavailable),
        )

    def start_apply(self, command: Command) -> asyncio.Task:
        """Send a command to the charger in the background."""
        self._write_task = asyncio.create_task(self.apply(command), name=f"apply-{self.name}")
        return self._write_task

    async def apply(self, command: Command) -> None:
        """Write a command to the charger, skipping values already in effect.

        A failed write leaves the applied value unchanged, so the next cycle
        retries it with whatever target it computes.
        """
        async with self._link:
            if command.phases != self._applied_phases and self._can_switch_phases():
                result = await self._failures.call(
                    "phases", lambda: self._charger.set_phases(command.phases)
                )
                if result is FAILED:
                    return
                logger.info("%s: switched to %dp", self.name, command.phases)
                self._applied_phases = command.phases

            if command.enable:
                if command.current != self._applied_current and self._failures.is_supported("current"):
                    result = await self._failures.call(
                        "current", lambda: self._charger.set_current(command.current)
                    )
                    if result is not FAILED:
                        logger.info("%s: set current to %.1fA", self.name, command.current)
                        self._applied_current = command.current
                    elif self._failures.is_supported("current"):
                        return
                if self._enabled is not True:
                    result = await self._failures.call("enable", lambda: self._charger.enable(True))
                    if result is not FAILED:
                        logger.info("%s: charging enabled", self.name)
                        self._enabled = True
            elif self._enabled is not False:
                result = await self._failures.call("enable", lambda: self._charger.enable(False))
                if result is not FAILED:
                    logger.info("%s: charging disabled", self.name)
                    self._enabled = False

    async def shutdown(self) -> None:
        """Disable the charger unconditionally."""
        async with self._link:
            result = await self._failures.call("enable", lambda: self._charger.enable(False))
        if result is not FAILED:
            self._enabled = False
            logger.info("%s: disabled (shutdown)", self.name)

    # ------------------------------------------------------------------
    # Cycle

    def tick(self, snapshot: DeviceSnapshot, budget: PowerBudget, now: float) -> Command:
        """Update the state machine from a snapshot and compute the command."""
        self.observe(snapshot, now)
        return self.decide(budget, now)

    def observe(self, snapshot: DeviceSnapshot, now: float) -> LoadpointState:
        """Advance the state machine with the readings of this cycle."""
        self._snapshot = snapshot
        status = snapshot.status
        failing = self._failures.exceeded(READ_OPS)
        if (
            self._state == LoadpointState.FAULT
            and not failing
            and snapshot.is_available("status")
            and status is not None
            and not status.is_error
        ):
            # Healthy again: write failures get a fresh count once commands resume
            self._failures.reset(WRITE_OPS)
        failing += self._failures.exceeded(WRITE_OPS)

        if failing:
            new_state = LoadpointState.FAULT
        elif status is None:
            new_state = LoadpointState.DISCONNECTED
        elif status.is_error:
            new_state = LoadpointState.FAULT
        elif status == ChargeStatus.A:
            new_state = LoadpointState.DISCONNECTED
        elif self._state in (LoadpointState.DISCONNECTED, LoadpointState.FAULT):
            new_state = LoadpointState.CONNECTED
        elif status.is_charging and self._enabled:
            new_state = LoadpointState.CHARGING
        elif self._state == LoadpointState.CHARGING:
            # Vehicle stopped drawing on its own
            new_state = LoadpointState.CONNECTED
        else:
            new_state = self._state

        if new_state != self._state:
            self._transition(new_state, snapshot, failing)
        return self._state

    def _transition(self, new_state: LoadpointState, snapshot: DeviceSnapshot, failing: list[str]) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == LoadpointState.FAULT:
            if failing:
                logger.warning("%s: %s -> fault (failing: %s)", self.name, old_state.value, ", ".join(failing))
            else:
                logger.warning("%s: %s -> fault (status %s)", self.name, old_state.value, snapshot.status.value)
            return

        logger.info("%s: %s -> %s", self.name, old_state.value, new_state.value)

        if new_state == LoadpointState.DISCONNECTED:
            self.target_time = None
            self._session_start_energy = None
            self._reset_timers()
            self._pv_enabled = False
        elif old_state == LoadpointState.DISCONNECTED:
            self._session_start_energy = snapshot.energy

    def _reset_timers(self) -> None:
        self._pv_timer = None
        self._phase_timer = None
        self._phase_timer_target = None

    def demand(self) -> ChargePointDemand:
        """Power this loadpoint could use this cycle if it were offered."""
        if self._state in (LoadpointState.DISCONNECTED, LoadpointState.FAULT):
            return ChargePointDemand(self.name)
        if self.remote_demand == RemoteDemand.STOP:
            return ChargePointDemand(self.name)

        demand = self._power(self.max_current, self.phases)
        max_power = self._power(self.max_current, self._max_phases())

        if self.remote_demand == RemoteDemand.START:
            return ChargePointDemand(self.name, demand, max_power)
        if self.mode == ChargeMode.OFF or self._soc_limit_reached():
            return ChargePointDemand(self.name)
        if self.remote_demand == RemoteDemand.SOFT_STOP and self.mode != ChargeMode.NOW and not self._below_min_soc():
            return ChargePointDemand(self.name)
        return ChargePointDemand(self.name, demand, max_power)

    def decide(self, budget: PowerBudget, now: float) -> Command:
        """Compute the charger command for this cycle."""
        self._budget = budget
        command = self._decide(budget, now)

        if not command.enable and self._state == LoadpointState.CHARGING:
            logger.info("%s: charging -> suspended", self.name)
            self._state = LoadpointState.SUSPENDED

        self._command = command
        return command

    def _decide(self, budget: PowerBudget, now: float) -> Command:
        if self._state in (LoadpointState.DISCONNECTED, LoadpointState.FAULT):
            self._reset_timers()
            return Command.disabled(self.phases)

        # Remote demand overrides the mode policy
        if self.remote_demand == RemoteDemand.STOP:
            return Command.disabled(self.phases)
        if self.remote_demand == RemoteDemand.START:
            return self._full_power(now)

        if self.mode == ChargeMode.OFF:
            self._pv_enabled = False
            self._reset_timers()
            return Command.disabled(self.phases)
        if self._soc_limit_reached():
            return Command.disabled(self.phases)
        if self.mode == ChargeMode.NOW or self._below_min_soc():
            return self._full_power(now)

        soft_stop = self.remote_demand == RemoteDemand.SOFT_STOP
        surplus = 0.0 if soft_stop else budget.power
        phases = self.phases if soft_stop else self._select_phases(surplus, now)
        surplus_current = self._to_current(surplus, phases)

        if soft_stop:
            self._pv_enabled = False
            self._pv_timer = None
            enable = False
        elif self.mode == ChargeMode.MIN_PV:
            self._pv_enabled = True
            self._pv_timer = None
            enable = True
        else:
            enable = self._pv_hysteresis(surplus_current >= self.min_current, now)

        target = max(surplus_current, self.min_current) if enable else 0.0

        floor = self._plan_floor(phases, now)
        if floor > 0:
            floor_current = self._to_current(floor, phases, round_up=True)
            target = max(target, floor_current, self.min_current)
            enable = True

        if not enable:
            return Command.disabled(phases)
        return Command(enable=True, current=min(target, self.max_current), phases=phases)

    def _full_power(self, now: float) -> Command:
        """Charge at maximum current, preferring the highest phase count."""
        self._pv_enabled = True
        self._pv_timer = None
        if self._can_switch_phases() and self.phases != 3:
            if now - self._last_phase_switch >= self._phase_dwell:
                self._switch_phases(3, now)
        return Command(enable=True, current=self.max_current, phases=self.phases)

    def _to_current(self, power: float, phases: int, round_up: bool = False) -> float:
        """Convert power to per-phase current in steps of the allocation granularity."""
        steps = power / (self._voltage * phases) / self._current_step
        steps = math.ceil(steps) if round_up else math.floor(steps)
        return max(0.0, steps * self._current_step)

    def _pv_hysteresis(self, sufficient: bool, now: float) -> bool:
        """Enable/disable only after the surplus condition held for the debounce time."""
        if sufficient == self._pv_enabled:
            self._pv_timer = None
            return self._pv_enabled

        if self._pv_timer is None:
            self._pv_timer = now
            logger.debug(
                "%s: PV %s timer started", self.name, "enable" if sufficient else "disable"
            )
        if now - self._pv_timer >= self._pv_debounce:
            self._pv_enabled = sufficient
            self._pv_timer = None
            logger.info(
                "%s: PV surplus %s", self.name, "sufficient, enabling" if sufficient else "insufficient, disabling"
            )
        return self._pv_enabled

    def _select_phases(self, surplus: float, now: float) -> int:
        """Pick the phase count for the surplus, switching only after the dwell time."""
        if not self._can_switch_phases():
            return self.phases

        desired = 3 if surplus >= self._power(self.min_current, 3) else 1
        if desired == self.phases:
            self._phase_timer = None
            self._phase_timer_target = None
            return self.phases

        if self._phase_timer is None or self._phase_timer_target != desired:
            self._phase_timer = now
            self._phase_timer_target = desired
            logger.debug("%s: phase switch to %dp timer started", self.name, desired)

        if (
            now - self._phase_timer >= self._phase_dwell
            and now - self._last_phase_switch >= self._phase_dwell
        ):
            self._switch_phases(desired, now)
        return self.phases

    def _switch_phases(self, phases: int, now: float) -> None:
        logger.info("%s: phase switch %dp -> %dp", self.name, self.phases, phases)
        self.phases = phases
        self._last_phase_switch = now
        self._phase_timer = None
        self._phase_timer_target = None

    def _plan_floor(self, phases: int, now: float) -> float:
        if self.target_time is None:
            return 0.0
        return planner.plan(
            self._snapshot.vehicle_soc,
            self.target_soc,
            self.capacity_wh,
            self.target_time,
            self._power(self.max_current, phases),
            datetime.fromtimestamp(now, tz=timezone.utc),
        )

    def _soc_limit_reached(self) -> bool:
        soc = self._snapshot.vehicle_soc
        return soc is not None and soc >= self.target_soc

    def _below_min_soc(self) -> bool:
        soc = self._snapshot.vehicle_soc
        return soc is not None and self.min_soc > 0 and soc < self.min_soc

    # ------------------------------------------------------------------
    # Buffered control-surface writes

    def _pending(self, key: str) -> Any:
        return self._intents.get(key, getattr(self, key))

    def _buffer(self, key: str, value: Any) -> None:
        # Re-insert so intents apply in the order they were last written
        self._intents.pop(key, None)
        self._intents[key] = value

    def apply_intents(self, now: float) -> bool:
        """Apply buffered writes. Returns True if a persisted setting changed."""
        if not self._intents:
            return False
        intents, self._intents = self._intents, {}

        changed = False
        for key, value in intents.items():
            if key == "remote_demand":
                source, demand = value
                if demand != self.remote_demand:
                    logger.info(
                        "%s: remote demand %r from %s", self.name, demand.value or "reset", source or "-"
                    )
                self.remote_demand = demand
                self.remote_source = source if demand != RemoteDemand.NONE else ""
            elif key == "target_charge":
                self.target_time, self.target_soc = value
                logger.info("%s: target charge %d%% by %s", self.name, self.target_soc, self.target_time)
                changed = True
            elif key == "phases":
                if value != self.phases:
                    self._switch_phases(value, now)
                changed = True
            else:
                if getattr(self, key) != value:
                    logger.info("%s: %s %s -> %s", self.name, key, _fmt(getattr(self, key)), _fmt(value))
                setattr(self, key, value)
                changed = True
        return changed

    def set_mode(self, mode: ChargeMode | str) -> None:
        if not isinstance(mode, ChargeMode):
            try:
                mode = ChargeMode(str(mode).lower())
            except ValueError:
                raise InvalidCommandError(f"invalid mode: {mode}") from None
        self._buffer("mode", mode)

    def set_target_soc(self, soc: int) -> None:
        self._buffer("target_soc", _validate_soc(soc))

    def set_min_soc(self, soc: int) -> None:
        self._buffer("min_soc", _validate_soc(soc))

    def set_phases(self, phases: int) -> None:
        if phases not in VALID_PHASES:
            raise InvalidCommandError(f"invalid phases: {phases}")
        if phases != self._pending("phases") and not self._can_switch_phases():
            raise InvalidCommandError("charger does not support phase switching")
        self._buffer("phases", phases)

    def set_target_charge(self, time: datetime, soc: int) -> None:
        soc = _validate_soc(soc)
        self._buffer("target_charge", (time.astimezone(), soc))

    def set_min_current(self, current: float) -> None:
        if current <= 0 or current > self._pending("max_current"):
            raise InvalidCommandError(
                f"min current {current}A must be within 0..{self._pending('max_current')}A"
            )
        self._buffer("min_current", float(current))

    def set_max_current(self, current: float) -> None:
        if current < self._pending("min_current") or current > self._max_current_limit:
            raise InvalidCommandError(
                f"max current {current}A must be within "
                f"{self._pending('min_current')}..{self._max_current_limit}A"
            )
        self._buffer("max_current", float(current))

    def remote_control(self, source: str, demand: RemoteDemand | str) -> None:
        if not isinstance(demand, RemoteDemand):
            try:
                demand = RemoteDemand.parse(demand)
            except ValueError:
                raise InvalidCommandError(f"invalid remote demand: {demand}") from None
        self._buffer("remote_demand", (source, demand))

    # ------------------------------------------------------------------
    # Control-surface reads

    def has_charge_meter(self) -> bool:
        return self._failures.is_supported("power")

    def get_status(self) -> ChargeStatus | None:
        return self._snapshot.status

    def get_mode(self) -> ChargeMode:
        return self.mode

    def get_target_soc(self) -> int:
        return self.target_soc

    def get_min_soc(self) -> int:
        return self.min_soc

    def get_phases(self) -> int:
        return self.phases

    def get_charge_power(self) -> float:
        return self._snapshot.power or 0.0

    def get_min_current(self) -> float:
        return self.min_current

    def get_max_current(self) -> float:
        return self.max_current

    def get_min_power(self) -> float:
        return self._power(self.min_current, self.phases)

    def get_max_power(self) -> float:
        return self._power(self.max_current, self.phases)

    def get_remaining_energy(self) -> float | None:
        """Wh still needed to reach the target SoC, None without vehicle SoC."""
        if self._snapshot.vehicle_soc is None or self.capacity_wh <= 0:
            return None
        return planner.remaining_energy(self._snapshot.vehicle_soc, self.target_soc, self.capacity_wh)

    def get_remaining_duration(self) -> timedelta | None:
        energy = self.get_remaining_energy()
        if energy is None:
            return None
        return planner.remaining_duration(energy, self.get_charge_power())

    def get_charged_energy(self) -> float:
        if self._session_start_energy is None or self._snapshot.energy is None:
            return 0.0
        return max(0.0, self._snapshot.energy - self._session_start_energy)

    # ------------------------------------------------------------------
    # Persistence and publishing

    def settings(self) -> dict[str, Any]:
        data = {key: getattr(self, key) for key in PERSISTED_SETTINGS}
        data["mode"] = self.mode.value
        return data

    def restore(self, data: dict[str, Any]) -> None:
        """Restore persisted settings, ignoring values that are no longer valid."""
        for key, setter in (
            ("max_current", self.set_max_current),
            ("min_current", self.set_min_current),
            ("mode", self.set_mode),
            ("target_soc", self.set_target_soc),
            ("min_soc", self.set_min_soc),
            ("phases", self.set_phases),
        ):
            if key not in data:
                continue
            try:
                setter(data[key])
            except (InvalidCommandError, TypeError) as e:
                logger.warning("%s: ignoring persisted %s: %s", self.name, key, e)
        self.apply_intents(-math.inf)

    def params(self, index: int) -> list[Param]:
        snapshot = self._snapshot
        values = {
            "status": snapshot.status.value if snapshot.status else None,
            "state": self._state.value,
            "mode": self.mode.value,
            "chargePower": snapshot.power,
            "chargeCurrent": self._command.current,
            "phases": self.phases,
            "minCurrent": self.min_current,
            "maxCurrent": self.max_current,
            "enabled": self.enabled,
            "budget": round(self._budget.power),
            "targetSoC": self.target_soc,
            "minSoC": self.min_soc,
            "targetTime": self.target_time.isoformat() if self.target_time else None,
            "vehicleSoC": snapshot.vehicle_soc,
            "remoteDemand": self.remote_demand.value,
            "chargedEnergy": round(self.get_charged_energy()),
        }
        return [Param(index, key, value) for key, value in values.items()]


# Device operation -> snapshot field
_SNAPSHOT_FIELDS = {
    "status": "status",
    "power": "power",
    "currents": "currents",
    "energy": "energy",
    "soc": "vehicle_soc",
}


def _validate_soc(soc: Any) -> int:
    try:
        value = int(soc)
    except (TypeError, ValueError):
        raise InvalidCommandError(f"invalid SoC: {soc}") from None
    if not 0 <= value <= 100:
        raise InvalidCommandError(f"SoC {value}% must be within 0..100")
    return value


def _fmt(value: Any) -> Any:
    return value.value if isinstance(value, ChargeMode) else value
