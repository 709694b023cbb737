"""Device identity, hardware configuration and live state.

Identity and hardware configuration are frozen value objects: an
address change produces a new :class:`DeviceIdentity` via
:meth:`DeviceIdentity.moved_to`, and every reconfiguration fetch
produces a whole new :class:`HardwareConfig`.

Live state classes are plain mutable dataclasses owned by exactly one
device session.  They are written by that session's poll tasks and,
optimistically, by its setters.
"""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dingzsync._errors import InvalidTypeError
from dingzsync._settings import DeviceFamily
from dingzsync._topology import OutputKind

# ---------------------------------------------------------------------------
# Device identity
# ---------------------------------------------------------------------------


class DeviceType(enum.IntEnum):
    """Type codes used in UDP announcements and myStrom info payloads."""

    MYSTROM_SWITCH_CHV1 = 101
    MYSTROM_BULB = 102
    MYSTROM_BUTTON_PLUS = 103
    MYSTROM_BUTTON = 104
    MYSTROM_LEDSTRIP = 105
    MYSTROM_SWITCH_CHV2 = 106
    MYSTROM_SWITCH_EU = 107
    DINGZ = 108
    MYSTROM_PIR = 110


FAMILY_TYPES: dict[DeviceFamily, frozenset[int]] = {
    DeviceFamily.DINGZ: frozenset({DeviceType.DINGZ}),
    DeviceFamily.MYSTROM_SWITCH: frozenset(
        {
            DeviceType.MYSTROM_SWITCH_CHV1,
            DeviceType.MYSTROM_SWITCH_CHV2,
            DeviceType.MYSTROM_SWITCH_EU,
        }
    ),
    DeviceFamily.MYSTROM_BULB: frozenset(
        {DeviceType.MYSTROM_BULB, DeviceType.MYSTROM_LEDSTRIP}
    ),
    DeviceFamily.MYSTROM_PIR: frozenset({DeviceType.MYSTROM_PIR}),
}


def normalize_mac(mac: str) -> str:
    """Upper-case hex without separators, the devices' own notation."""
    return mac.replace(":", "").replace("-", "").upper()


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Who a device is.  The MAC is the primary key."""

    mac: str
    address: str
    family: DeviceFamily
    name: str
    token: str | None = field(default=None, repr=False)
    model: str = ""
    fw_version: str = ""

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    def moved_to(self, address: str) -> DeviceIdentity:
        """Same device, new network address."""
        return dataclasses.replace(self, address=address)


# ---------------------------------------------------------------------------
# Hardware configuration
# ---------------------------------------------------------------------------


def _device_entry(device_info: Mapping[str, Any]) -> tuple[str, Mapping[str, Any]]:
    """Split ``{mac: {...}}`` into its only key and value."""
    if len(device_info) != 1:
        msg = f"Expected a single device entry, got {len(device_info)}"
        raise InvalidTypeError(msg)
    mac, entry = next(iter(device_info.items()))
    if not isinstance(entry, Mapping):
        msg = f"Malformed device entry for {mac}"
        raise InvalidTypeError(msg)
    return normalize_mac(mac), entry


@dataclass(frozen=True, slots=True)
class HardwareConfig:
    """Snapshot of a dingz's hardware configuration.

    Built from ``/api/v1/device``, ``/api/v1/input_config`` and
    ``/api/v1/dimmer_config``; replaced as a whole on every
    reconfiguration fetch.
    """

    mode: int
    has_pir: bool
    fw_version: str = ""
    hw_version: str = ""
    fw_version_puck: str = ""
    hw_version_puck: str = ""
    outputs: tuple[OutputKind, ...] = ()
    dimmer_names: tuple[str, ...] = ()
    inputs_active: tuple[bool, ...] = ()

    @property
    def input_active(self) -> bool:
        """Whether input 1 (the one sharing output 0) is active."""
        return bool(self.inputs_active) and self.inputs_active[0]

    @classmethod
    def from_api(
        cls,
        device_info: Mapping[str, Any],
        input_config: Mapping[str, Any] | None = None,
        dimmer_config: Mapping[str, Any] | None = None,
    ) -> tuple[str, HardwareConfig]:
        """Parse the three configuration payloads.

        Returns:
            ``(mac, config)``.

        Raises:
            InvalidTypeError: If the device is not a dingz.
        """
        mac, entry = _device_entry(device_info)
        if entry.get("type") != "dingz":
            msg = f"Device {mac} is a {entry.get('type')!r}, not a dingz"
            raise InvalidTypeError(msg)
        inputs = (input_config or {}).get("inputs") or []
        dimmers = (dimmer_config or {}).get("dimmers") or []
        return mac, cls(
            mode=int(entry.get("dip_config", 3)),
            has_pir=bool(entry.get("has_pir", False)),
            fw_version=str(entry.get("fw_version", "")),
            hw_version=str(entry.get("hw_version", "")),
            fw_version_puck=str(entry.get("fw_version_puck", "")),
            hw_version_puck=str(entry.get("hw_version_puck", "")),
            outputs=tuple(OutputKind.parse(d.get("output")) for d in dimmers),
            dimmer_names=tuple(str(d.get("name") or "") for d in dimmers),
            inputs_active=tuple(bool(i.get("active", False)) for i in inputs),
        )


# ---------------------------------------------------------------------------
# Live state
# ---------------------------------------------------------------------------


class Direction(enum.StrEnum):
    """Derived movement of a window covering."""

    INCREASING = "increasing"
    DECREASING = "decreasing"
    STOPPED = "stopped"


def moving_direction(target: float, current: float) -> Direction:
    """Direction a covering moves from *current* toward *target*."""
    if target > current:
        return Direction.INCREASING
    if target < current:
        return Direction.DECREASING
    return Direction.STOPPED


@dataclass(slots=True)
class DimmerState:
    on: bool = False
    level: int = 0


@dataclass(slots=True)
class WindowCoveringState:
    """Blind position and lamella angle, both in percent."""

    target_blind: int = 0
    target_lamella: int = 0
    current_blind: int = 0
    current_lamella: int = 0

    @property
    def direction(self) -> Direction:
        return moving_direction(self.target_blind, self.current_blind)


@dataclass(slots=True)
class LedState:
    on: bool = False
    hue: int = 0
    saturation: int = 0
    value: int = 100


@dataclass(slots=True)
class SensorState:
    """Last sensor readings; ``None`` until first read."""

    motion: bool | None = None
    temperature: float | None = None
    light_level: float | None = None


@dataclass(slots=True)
class SwitchState:
    """A myStrom switch relay."""

    on: bool = False
    power: float = 0.0
