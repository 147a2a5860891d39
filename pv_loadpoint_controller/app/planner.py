"""Target-charge planning: minimum power needed to reach a SoC by a deadline."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


def remaining_energy(current_soc: float | None, target_soc: float, capacity_wh: float) -> float:
    """Energy in Wh still needed to bring the vehicle from current to target SoC.

    A target below the current SoC is not an error, it just needs nothing.
    """
    if current_soc is None or capacity_wh <= 0:
        return 0.0
    return max(0.0, capacity_wh * (target_soc - current_soc) / 100.0)


def remaining_duration(energy_wh: float, charge_power_w: float) -> timedelta | None:
    """Time to deliver energy_wh at the present charge power, None if not charging."""
    if energy_wh <= 0:
        return timedelta(0)
    if charge_power_w <= 0:
        return None
    return timedelta(hours=energy_wh / charge_power_w)


def plan(
    current_soc: float | None,
    target_soc: float | None,
    capacity_wh: float,
    deadline: datetime | None,
    charger_max_power_w: float,
    now: datetime,
) -> float:
    """Return the average charge power in W required to meet the deadline.

    No deadline or target means no floor. Once the deadline has passed and
    energy is still missing, the charger has to run at full power.
    """
    if deadline is None or target_soc is None:
        return 0.0

    energy = remaining_energy(current_soc, target_soc, capacity_wh)
    if energy <= 0:
        return 0.0

    hours = (deadline - now).total_seconds() / 3600.0
    if hours <= 0:
        logger.debug("Target time passed with %.0fWh missing, charging at full power", energy)
        return charger_max_power_w

    required = energy / hours
    logger.debug(
        "Target charge: %.0fWh in %.2fh requires %.0fW (max %.0fW)",
        energy, hours, required, charger_max_power_w,
    )
    return min(required, charger_max_power_w)
