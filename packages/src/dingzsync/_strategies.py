"""Publish strategies for poll results.

A poll task asks its strategy whether a freshly fetched reading should
be written to live state and announced on the event bus:

- :class:`Always`: output-class resources (dimmers, blinds, LED).
  Their value may have been changed out of band, so every successful
  fetch is announced.
- :class:`OnChange`: sensor-class resources (motion, temperature).
  Only a reading that differs from the cached one is announced,
  optionally with a numeric dead-band.
"""

from __future__ import annotations

import math
from typing import Protocol, runtime_checkable


@runtime_checkable
class PublishStrategy(Protocol):
    """Publish-decision contract for poll tasks."""

    def should_publish(self, current: object, previous: object | None) -> bool:
        """Decide whether *current* is announced.

        Args:
            current: The reading just fetched.
            previous: The cached reading, ``None`` before the first one.
        """
        ...


class Always:
    """Announce every reading."""

    def should_publish(self, current: object, previous: object | None) -> bool:  # noqa: ARG002
        return True

    def __repr__(self) -> str:
        return "Always()"


class OnChange:
    """Announce a reading only when it differs from the cached one.

    With *threshold* set, two numbers count as different only when
    they are more than *threshold* apart (strict ``>``).  Booleans and
    other values always use equality.  The first reading is always
    announced.
    """

    def __init__(self, *, threshold: float | None = None) -> None:
        if isinstance(threshold, bool):
            msg = "Threshold must be a number, got bool"
            raise TypeError(msg)
        if threshold is not None and threshold < 0:
            msg = f"Threshold must be non-negative, got {threshold}"
            raise ValueError(msg)
        self._threshold = threshold

    def should_publish(self, current: object, previous: object | None) -> bool:
        if previous is None:
            return True
        if (
            self._threshold is not None
            and _is_number(current)
            and _is_number(previous)
        ):
            delta = abs(float(current) - float(previous))  # type: ignore[arg-type]
            if math.isnan(delta):
                return True
            return delta > self._threshold
        return current != previous

    def __repr__(self) -> str:
        return f"OnChange(threshold={self._threshold})"


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
