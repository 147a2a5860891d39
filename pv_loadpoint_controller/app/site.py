"""Site: power measurement, surplus allocation and the control cycle."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from .config import AppConfig
from .devices import Meter
from .health import FAILED, FailureTracker
from .loadpoint import Loadpoint
from .models import (
    AllocationResult,
    ChargePointDemand,
    DeviceSnapshot,
    Param,
    PowerBudget,
    SiteMeasurements,
)
from .persistence import Persistence

logger = logging.getLogger(__name__)

# Receives the state updates of a cycle
Listener = Callable[[list[Param]], Awaitable[None]]


def compute_surplus(measurements: SiteMeasurements, residual_power: float) -> float:
    """Power available for charging in W.

    surplus = pv + battery - baseline - residual, where the baseline is the site
    consumption without loadpoints, derived from the grid meter when present.
    """
    pv = measurements.pv_power or 0.0
    battery = measurements.battery_power or 0.0

    if measurements.grid_power is not None:
        # grid = baseline + charge - pv - battery
        baseline = measurements.grid_power + pv + battery - measurements.charge_power
    else:
        baseline = 0.0

    return max(0.0, pv + battery - baseline - residual_power)


def allocate(surplus: float, demands: list[ChargePointDemand]) -> list[PowerBudget]:
    """Distribute surplus over loadpoints in configuration order.

    The first pass satisfies each demand in turn, a second pass offers what is
    left to loadpoints still below their maximum. Later loadpoints may get
    nothing under persistent shortage.
    """
    remaining = max(0.0, surplus)
    given = [0.0] * len(demands)

    for i, demand in enumerate(demands):
        share = min(max(0.0, demand.demand), remaining)
        given[i] = share
        remaining -= share

    for i, demand in enumerate(demands):
        if remaining <= 0:
            break
        share = min(max(0.0, demand.max_power - given[i]), remaining)
        given[i] += share
        remaining -= share

    return [PowerBudget(power) for power in given]


class Site:
    """Aggregates site power and drives all loadpoints once per cycle."""

    def __init__(
        self,
        config: AppConfig,
        loadpoints: list[Loadpoint],
        grid: Meter | None = None,
        pv: list[Meter] | None = None,
        battery: Meter | None = None,
        persistence: Persistence | None = None,
    ) -> None:
        self._config = config
        self.loadpoints = loadpoints
        self._grid = grid
        self._pv = pv or []
        self._battery = battery
        self._persistence = persistence
        self._failures = FailureTracker("site", config.failure_threshold, config.device_timeout)
        self._last_values: dict[str, float] = {}
        self._listeners: list[Listener] = []

        # Device reads still running from a previous cycle
        self._reads: dict[str, asyncio.Task] = {}

        self.measurements = SiteMeasurements()
        self.result = AllocationResult(surplus=0.0)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def loadpoint(self, index: int) -> Loadpoint:
        """Loadpoint by 1-based index."""
        if not 1 <= index <= len(self.loadpoints):
            raise IndexError(f"loadpoint {index} does not exist")
        return self.loadpoints[index - 1]

    # ------------------------------------------------------------------
    # Measurements

    async def _read_meter(self, op: str, meter: Meter) -> float | None:
        value = await self._failures.call(op, meter.power)
        if value is not FAILED:
            self._last_values[op] = value
            return value
        if not self._failures.is_supported(op) or self._failures.exceeded((op,)):
            self._last_values.pop(op, None)
            return None
        return self._last_values.get(op)

    async def measure(self) -> SiteMeasurements:
        """Read grid, PV and battery meters."""
        grid = None
        if self._grid is not None:
            grid = await self._read_meter("grid", self._grid)
            if grid is None:
                logger.warning("Grid power unavailable, assuming no surplus")

        pv = None
        for i, meter in enumerate(self._pv):
            value = await self._read_meter(f"pv{i + 1}", meter)
            if value is not None:
                pv = (pv or 0.0) + value

        battery = None
        if self._battery is not None:
            battery = await self._read_meter("battery", self._battery)

        return SiteMeasurements(
            grid_power=grid,
            pv_power=pv,
            battery_power=battery,
        )

    def _surplus(self, measurements: SiteMeasurements) -> float:
        if self._grid is not None and measurements.grid_power is None:
            return 0.0
        if self._grid is None and measurements.pv_power is None:
            return 0.0
        return compute_surplus(measurements, self._config.residual_power)

    def allocate(self, measurements: SiteMeasurements, demands: list[ChargePointDemand]) -> AllocationResult:
        """Compute per-loadpoint budgets for this cycle."""
        surplus = self._surplus(measurements)
        budgets = allocate(surplus, demands)
        result = AllocationResult(surplus=surplus, budgets=budgets)

        for demand, budget in zip(demands, budgets):
            logger.debug(
                "  %s: demand=%.0fW max=%.0fW budget=%.0fW",
                demand.name, demand.demand, demand.max_power, budget.power,
            )
        logger.debug("Surplus %.0fW, allocated %.0fW", surplus, result.total_allocated)
        return result

    # ------------------------------------------------------------------
    # Cycle

    async def run(self) -> None:
        """Main control loop."""
        logger.info(
            "Site starting with %d loadpoints (interval=%.0fs)",
            len(self.loadpoints), self._config.cycle_interval,
        )

        while True:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Error in control cycle")

            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self._config.cycle_interval - elapsed))

    async def run_cycle(self, now: float | None = None) -> AllocationResult:
        """Read, allocate, command and publish once."""
        if now is None:
            now = time.time()
        started = time.monotonic()

        changed = [lp.apply_intents(now) for lp in self.loadpoints]
        if any(changed):
            self._save_state()

        # Read all loadpoints and site meters concurrently, up to the cycle deadline
        measure = asyncio.create_task(self.measure(), name="measure-site")
        for lp in self.loadpoints:
            if lp.name not in self._reads:
                task = asyncio.create_task(lp.read_snapshot(), name=f"read-{lp.name}")
                task.add_done_callback(_log_task_error)
                self._reads[lp.name] = task
        await asyncio.wait([measure, *self._reads.values()], timeout=self._config.cycle_deadline)

        ready: list[Loadpoint] = []
        for lp in self.loadpoints:
            task = self._reads[lp.name]
            if not task.done():
                logger.warning("%s: device read still pending, skipped this cycle", lp.name)
                continue
            del self._reads[lp.name]
            if task.cancelled() or task.exception() is not None:
                continue
            snapshot: DeviceSnapshot = task.result()
            lp.observe(snapshot, now)
            ready.append(lp)

        charge_power = sum(lp.snapshot.power or 0.0 for lp in self.loadpoints)
        self.measurements = replace(await measure, charge_power=charge_power)

        demands = [
            lp.demand() if lp in ready else ChargePointDemand(lp.name)
            for lp in self.loadpoints
        ]
        self.result = self.allocate(self.measurements, demands)

        writes = []
        for lp, budget in zip(self.loadpoints, self.result.budgets):
            if lp not in ready:
                continue
            command = lp.decide(budget, now)
            task = lp.start_apply(command)
            task.add_done_callback(_log_task_error)
            writes.append(task)

        remaining = self._config.cycle_deadline - (time.monotonic() - started)
        if writes:
            # Writes still running continue into the next cycle
            await asyncio.wait(writes, timeout=max(0.0, remaining))

        await self._publish()
        return self.result

    async def shutdown(self) -> None:
        """Disable all chargers."""
        for task in self._reads.values():
            task.cancel()
        await asyncio.gather(*(lp.shutdown() for lp in self.loadpoints), return_exceptions=True)

    # ------------------------------------------------------------------
    # Publishing and persistence

    def params(self) -> list[Param]:
        m = self.measurements
        params = [
            Param(None, "gridPower", m.grid_power),
            Param(None, "pvPower", m.pv_power),
            Param(None, "batteryPower", m.battery_power),
            Param(None, "chargePower", m.charge_power),
            Param(None, "surplus", round(self.result.surplus)),
        ]
        for index, lp in enumerate(self.loadpoints, start=1):
            params.extend(lp.params(index))
        return params

    async def _publish(self) -> None:
        if not self._listeners:
            return
        params = self.params()
        for listener in self._listeners:
            try:
                await listener(params)
            except Exception:
                logger.exception("Error publishing state")

    def restore_state(self, state: dict[str, Any]) -> None:
        """Restore persisted loadpoint settings."""
        saved = state.get("loadpoints") or {}
        for lp in self.loadpoints:
            if isinstance(saved.get(lp.name), dict):
                lp.restore(saved[lp.name])
                logger.info("%s: restored settings (mode=%s)", lp.name, lp.mode.value)

    def _save_state(self) -> None:
        if self._persistence is None:
            return
        self._persistence.save({
            "loadpoints": {lp.name: lp.settings() for lp in self.loadpoints},
        })


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Task %s failed: %r", task.get_name(), error, exc_info=error)
