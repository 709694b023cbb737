"""Deterministic fake clock for testing.

Satisfies :class:`~dingzsync._clock.ClockPort` structurally with a
manually controlled time value.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class FakeClock:
    """Test double for ClockPort.

    Example::

        clock = FakeClock(42.0)
        clock.advance(10)
        assert clock.now() == 52.0
    """

    _time: float = 0.0

    def now(self) -> float:
        """Return the manually set time value."""
        return self._time

    def advance(self, seconds: float) -> None:
        """Move time forward by *seconds*."""
        self._time += seconds
