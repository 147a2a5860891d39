"""Persistence: user-set loadpoint settings survive a restart."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from .const import STATE_FILE

logger = logging.getLogger(__name__)

# Bumped when the layout of the state file changes
STATE_VERSION = 1


def _write_atomic(path: str, data: dict[str, Any]) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class Persistence:
    """Versioned JSON state file.

    Layout: {"version": 1, "loadpoints": {<name>: {<setting>: <value>}}}.
    A file that is missing, unreadable or of another version is treated as
    no saved state; the loadpoints then start from configuration.
    """

    def __init__(self, path: str = STATE_FILE) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def save(self, state: dict[str, Any]) -> None:
        """Write the state file. Failures are logged, never raised."""
        try:
            _write_atomic(self._path, {"version": STATE_VERSION, **state})
        except OSError as e:
            logger.warning("Failed to save state to %s: %s", self._path, e)
            return
        logger.debug("State saved to %s", self._path)

    def load(self) -> dict[str, Any] | None:
        """Read the state file, or None if there is nothing usable."""
        try:
            with open(self._path) as f:
                state = json.load(f)
        except FileNotFoundError:
            logger.info("No persisted state found at %s", self._path)
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self._path, e)
            return None

        version = state.get("version") if isinstance(state, dict) else None
        if version != STATE_VERSION:
            logger.warning("Ignoring state file %s with version %s", self._path, version)
            return None

        logger.info("Loaded persisted state for %d loadpoints", len(state.get("loadpoints") or {}))
        return state
