"""Logical channel layout of a dingz.

A dingz has four physical outputs.  The mode (DIP) switch on its base
decides how they are used: as individual dimmers, or in pairs driving
a motorised window covering.  :func:`resolve_channels` turns that
hardware configuration into an ordered tuple of :class:`Channel`
values.

The function is pure and table-driven: the same inputs always give
the same channels in the same order with the same ids.  MQTT topics
and external capability ids are keyed by :attr:`Channel.key`, so an
id must never move between outputs.

======  ==========================================================
mode    channels (kind id -> output index)
======  ==========================================================
3       dimmer 0 -> 0, dimmer 1 -> 1, dimmer 2 -> 2, dimmer 3 -> 3
2       blind 0 -> 0, dimmer 0 -> 2, dimmer 1 -> 3
1       dimmer 0 -> 0, dimmer 1 -> 1, blind 0 -> 2
0       blind 0 -> 0, blind 1 -> 2
======  ==========================================================

An active input 1 takes over output 0, so the dimmer wired to output
0 disappears from the layout.  Dimmer ids index the per-dimmer output
kind array of ``/api/v1/dimmer_config``.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass


class ChannelKind(enum.StrEnum):
    """What a logical channel controls."""

    DIMMER = "dimmer"
    WINDOW_COVERING = "blind"


class OutputKind(enum.StrEnum):
    """Load type configured for a dimmer output."""

    NON_DIMMABLE = "non_dimmable"
    LINEAR = "linear"
    INCANDESCENT = "incandescent"
    HALOGEN = "halogen"
    LED = "led"
    PULSE = "pulse"
    OHMIC = "ohmic"
    NOT_CONNECTED = "not_connected"

    @classmethod
    def parse(cls, value: str | None) -> OutputKind:
        """Map a device string to a kind; unknown loads count as linear."""
        try:
            return cls(value) if value is not None else cls.LINEAR
        except ValueError:
            return cls.LINEAR


@dataclass(frozen=True, slots=True)
class Channel:
    """One logical channel of a device.

    Attributes:
        kind: Dimmer or window covering.
        id: Stable id within the kind, used in device API paths.
        output: Index of the (first) physical output it drives.
        dimmable: ``False`` for non-dimmable loads; such a dimmer keeps
            on/off control but has no brightness.
    """

    kind: ChannelKind
    id: int
    output: int
    dimmable: bool = True

    @property
    def key(self) -> str:
        """Stable string id, e.g. ``"dimmer-1"`` or ``"blind-0"``."""
        return f"{self.kind.value}-{self.id}"


_D = ChannelKind.DIMMER
_W = ChannelKind.WINDOW_COVERING

_LAYOUTS: dict[int, tuple[tuple[ChannelKind, int, int], ...]] = {
    3: ((_D, 0, 0), (_D, 1, 1), (_D, 2, 2), (_D, 3, 3)),
    2: ((_W, 0, 0), (_D, 0, 2), (_D, 1, 3)),
    1: ((_D, 0, 0), (_D, 1, 1), (_W, 0, 2)),
    0: ((_W, 0, 0), (_W, 1, 2)),
}

_INPUT_OUTPUT = 0
"""Physical output taken over by an active input."""


def resolve_channels(
    mode: int,
    *,
    input_active: bool = False,
    outputs: Sequence[OutputKind] | None = None,
) -> tuple[Channel, ...]:
    """Compute the channel layout for a hardware configuration.

    Args:
        mode: Mode switch value, 0 to 3.
        input_active: Whether input 1 is configured as active.
        outputs: Output kind per dimmer id.  Missing entries count as
            dimmable.  ``NOT_CONNECTED`` dimmers are left out.

    Returns:
        The channels in layout order.

    Raises:
        ValueError: For a mode outside 0 to 3.
    """
    try:
        layout = _LAYOUTS[mode]
    except KeyError:
        msg = f"Unknown mode switch value {mode!r}, expected 0-3"
        raise ValueError(msg) from None

    kinds = tuple(outputs) if outputs is not None else ()
    channels: list[Channel] = []
    for kind, channel_id, output in layout:
        if kind is _D:
            if input_active and output == _INPUT_OUTPUT:
                continue
            load = kinds[channel_id] if channel_id < len(kinds) else OutputKind.LINEAR
            if load is OutputKind.NOT_CONNECTED:
                continue
            channels.append(
                Channel(kind, channel_id, output, load is not OutputKind.NON_DIMMABLE)
            )
        else:
            channels.append(Channel(kind, channel_id, output))
    return tuple(channels)


def has_input_dimmer(mode: int) -> bool:
    """Whether *mode* places a dimmer on the output an input can take over."""
    return any(
        kind is _D and output == _INPUT_OUTPUT for kind, _, output in _LAYOUTS.get(mode, ())
    )
