"""Per-device serialization of composite-state fetches.

A dingz answers a full state snapshot, a shade position or a motion
report by assembling several internal registers.  Two such requests
overlapping on the same device can return torn data, so every
composite read goes through :class:`DeviceLocks`, keyed by device MAC.
Different devices never share a lock and are polled concurrently.

Single-value writes (set a dimmer level, move a blind) do not take the
lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class DeviceLocks:
    """Registry of one :class:`asyncio.Lock` per device id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    @contextlib.asynccontextmanager
    async def hold(self, device_id: str) -> AsyncIterator[None]:
        """Hold the lock of *device_id* for the ``async with`` body.

        The lock is released on every exit path, including timeouts
        and cancellation.
        """
        lock = self._lock_for(device_id)
        async with lock:
            yield

    async def with_lock(
        self,
        device_id: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *fn* while holding the lock of *device_id*."""
        async with self.hold(device_id):
            return await fn()

    def in_flight(self, device_id: str) -> bool:
        """Whether a locked section is currently running for *device_id*."""
        lock = self._locks.get(device_id)
        return lock is not None and lock.locked()

    def forget(self, device_id: str) -> None:
        """Drop the lock of a deregistered device."""
        lock = self._locks.pop(device_id, None)
        if lock is not None and lock.locked():
            logger.debug("Forgetting lock of %s while held", device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._locks
