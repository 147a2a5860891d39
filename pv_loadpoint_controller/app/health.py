"""Per-operation failure counting shared by loadpoints and site meters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .errors import DeviceError, TransientError, UnsupportedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sentinel returned by FailureTracker.call when the operation did not succeed
FAILED: Any = object()


class FailureTracker:
    """Counts consecutive failures per device operation.

    An operation that raises UnsupportedError is remembered as absent and
    never called again. Any other failure increments its counter; a success
    resets it.
    """

    def __init__(self, owner: str, threshold: int, timeout: float) -> None:
        self._owner = owner
        self._threshold = threshold
        self._timeout = timeout
        self._failures: dict[str, int] = {}
        self._unsupported: set[str] = set()

    def is_supported(self, op: str) -> bool:
        return op not in self._unsupported

    def failures(self, op: str) -> int:
        return self._failures.get(op, 0)

    def exceeded(self, ops: tuple[str, ...] | None = None) -> list[str]:
        """Operations whose consecutive failures reached the threshold."""
        return [
            op for op, count in self._failures.items()
            if count >= self._threshold and (ops is None or op in ops)
        ]

    def record_success(self, op: str) -> None:
        if self._failures.get(op):
            logger.info("%s: %s recovered after %d failures", self._owner, op, self._failures[op])
        self._failures[op] = 0

    def record_failure(self, op: str, error: Exception) -> None:
        count = self._failures.get(op, 0) + 1
        self._failures[op] = count
        if count == self._threshold:
            logger.warning("%s: %s failed %d times in a row: %s", self._owner, op, count, error)
        else:
            logger.debug("%s: %s failed (%d): %s", self._owner, op, count, error)

    def reset(self, ops: tuple[str, ...]) -> None:
        """Clear the failure counters of the given operations."""
        for op in ops:
            self._failures.pop(op, None)

    def mark_unsupported(self, op: str) -> None:
        if op not in self._unsupported:
            logger.info("%s: %s not supported by device", self._owner, op)
        self._unsupported.add(op)
        self._failures.pop(op, None)

    async def call(self, op: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run a device operation under the timeout and record its outcome.

        Returns FAILED if the operation is unsupported or failed.
        """
        if op in self._unsupported:
            return FAILED
        try:
            result = await asyncio.wait_for(func(), timeout=self._timeout)
        except UnsupportedError:
            self.mark_unsupported(op)
            return FAILED
        except asyncio.TimeoutError:
            self.record_failure(op, TransientError(f"timeout after {self._timeout}s"))
            return FAILED
        except DeviceError as e:
            self.record_failure(op, e)
            return FAILED
        except Exception as e:
            logger.warning("%s: %s raised unexpected %r", self._owner, op, e)
            self.record_failure(op, TransientError(str(e)))
            return FAILED
        self.record_success(op)
        return result
