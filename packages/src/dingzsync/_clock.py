"""Monotonic clock port and system adapter.

The circuit breaker measures its cool-down window against a
:class:`ClockPort` rather than wall-clock time, so an NTP step on the
host never opens or closes a breaker early.  Only *differences* between
two ``now()`` readings are meaningful.

Tests inject :class:`dingzsync.testing.FakeClock` to step through a
cool-down without sleeping.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic time source in seconds."""

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``.

    Satisfies :class:`ClockPort` structurally.
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()
