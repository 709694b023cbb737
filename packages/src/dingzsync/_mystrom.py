"""Sessions for myStrom switches, bulbs and motion sensors.

myStrom devices have a fixed, single-resource layout, so their
sessions need no topology resolution and no reconciler: registration
performs one guarded fetch and starts a single ``state`` poll.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from dingzsync._api import MyStromApi
from dingzsync._clock import ClockPort
from dingzsync._color import HSV, parse_hsv, rgb_to_hsv
from dingzsync._errors import InvalidCommandError
from dingzsync._events import EventBus, MotionPush
from dingzsync._locks import DeviceLocks
from dingzsync._models import DeviceIdentity, LedState, SwitchState
from dingzsync._policies import Sleep
from dingzsync._session import DeviceSession, coerce_bool, coerce_percent
from dingzsync._settings import DeviceFamily, Settings
from dingzsync._transport import TransportClient

logger = logging.getLogger(__name__)

TEMPERATURE_RANGE = (-273.5, 100.0)
LIGHT_RANGE = (0.0001, 100000.0)

# Models without a temperature sensor
_NO_TEMPERATURE_MODELS = frozenset({"Zero", "CH v1"})


def clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


class MyStromSession(DeviceSession):
    """Common wiring of the myStrom sessions."""

    def __init__(
        self,
        identity: DeviceIdentity,
        *,
        settings: Settings,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
        clock: ClockPort | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(
            identity,
            settings=settings,
            transport=transport,
            bus=bus,
            locks=locks,
            clock=clock,
            sleep=sleep,
        )
        self.api = MyStromApi(lambda: self.identity, transport, locks, self.reachability)

    async def _setup(self) -> None:
        await self.startup_policy.execute(self._fetch_and_apply)
        self.tasks.start_poll("state", self.settings.polling.state_interval, self.poll)
        if self.settings.callback_url and self.callback_endpoints():
            self.tasks.spawn("callback", self.register_callback())

    async def poll(self) -> None:
        await self._guarded(self._fetch_and_apply)

    async def _fetch_and_apply(self) -> None:
        raise NotImplementedError


class MyStromSwitchSession(MyStromSession):
    """A myStrom smart plug: one relay, power metering, temperature."""

    family = DeviceFamily.MYSTROM_SWITCH

    def __init__(self, identity: DeviceIdentity, **kwargs: Any) -> None:
        super().__init__(identity, **kwargs)
        self.state = SwitchState()

    @property
    def has_temperature(self) -> bool:
        return self.identity.model not in _NO_TEMPERATURE_MODELS

    async def _fetch_and_apply(self) -> None:
        report = await self.api.get_report()
        self.state.on = bool(report.get("relay", self.state.on))
        self.state.power = float(report.get("power") or 0.0)
        self._publish("relay")
        temperature = report.get("temperature")
        if self.has_temperature and temperature is not None:
            self._update_sensor("temperature", round(float(temperature), 1))

    def get_on(self) -> bool:
        return self.state.on

    def get_in_use(self) -> bool:
        """Whether the load draws power."""
        return self.state.power > 0

    async def set_on(self, on: bool) -> None:
        self.state.on = on
        self._publish("relay")
        await self.api.set_relay(on)

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["relay"] = {
            "on": self.state.on,
            "power": self.state.power,
            "in_use": self.get_in_use(),
        }
        if self.has_temperature:
            data["sensors"] = {"temperature": self.sensors.temperature}
        return data

    async def apply_command(self, channel: str, values: Mapping[str, Any]) -> None:
        if channel != "relay" or "on" not in values:
            msg = "Switch commands are {'on': ...} on channel 'relay'"
            raise InvalidCommandError(msg)
        await self.set_on(coerce_bool(values["on"]))


class MyStromBulbSession(MyStromSession):
    """A myStrom bulb or LED strip: on/off and HSV colour."""

    family = DeviceFamily.MYSTROM_BULB

    def __init__(self, identity: DeviceIdentity, **kwargs: Any) -> None:
        super().__init__(identity, **kwargs)
        self.light = LedState()

    async def _fetch_and_apply(self) -> None:
        report = await self.api.get_bulb()
        self.light.on = bool(report.get("on", self.light.on))
        hsv = _bulb_hsv(report)
        if hsv is not None:
            self.light.hue, self.light.saturation, self.light.value = hsv
        self._publish("light")

    def get_on(self) -> bool:
        return self.light.on

    def get_hue(self) -> int:
        return self.light.hue

    def get_saturation(self) -> int:
        return self.light.saturation

    def get_brightness(self) -> int:
        return self.light.value

    async def set_light(
        self,
        *,
        on: bool | None = None,
        hue: int | None = None,
        saturation: int | None = None,
        value: int | None = None,
    ) -> None:
        light = self.light
        if on is not None:
            light.on = on
        if hue is not None:
            light.hue = hue % 360
        if saturation is not None:
            light.saturation = max(0, min(100, saturation))
        if value is not None:
            light.value = max(0, min(100, value))
        self._publish("light")
        await self.api.set_bulb(light.on, (light.hue, light.saturation, light.value))

    async def set_on(self, on: bool) -> None:
        await self.set_light(on=on)

    async def set_hue(self, hue: int) -> None:
        await self.set_light(hue=hue)

    async def set_saturation(self, saturation: int) -> None:
        await self.set_light(saturation=saturation)

    async def set_brightness(self, value: int) -> None:
        await self.set_light(value=value)

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["light"] = {
            "on": self.light.on,
            "hue": self.light.hue,
            "saturation": self.light.saturation,
            "brightness": self.light.value,
        }
        return data

    async def apply_command(self, channel: str, values: Mapping[str, Any]) -> None:
        known = {"on", "hue", "saturation", "brightness"}
        if channel != "light" or not known & values.keys():
            msg = "Bulb commands need one of on/hue/saturation/brightness on channel 'light'"
            raise InvalidCommandError(msg)
        await self.set_light(
            on=coerce_bool(values["on"]) if "on" in values else None,
            hue=coerce_percent(values["hue"], upper=359) if "hue" in values else None,
            saturation=(
                coerce_percent(values["saturation"]) if "saturation" in values else None
            ),
            value=coerce_percent(values["brightness"]) if "brightness" in values else None,
        )


class MyStromPirSession(MyStromSession):
    """A myStrom motion sensor with temperature and light sensors.

    Motion comes from the poll in polling mode and from push callbacks
    otherwise; temperature and light level always come from the poll.
    """

    family = DeviceFamily.MYSTROM_PIR

    async def _setup(self) -> None:
        self._subscribe(MotionPush, self._on_motion_push)
        await super()._setup()

    def callback_endpoints(self) -> tuple[str, ...]:
        return ("pir/generic",)

    async def _fetch_and_apply(self) -> None:
        report = await self.api.get_sensors()
        if self.motion_polling and report.get("motion") is not None:
            self._update_sensor("motion", bool(report["motion"]))
        self._update_sensor(
            "temperature",
            clamp(float(report.get("temperature") or 0.0), TEMPERATURE_RANGE),
        )
        self._update_sensor(
            "light_level",
            clamp(float(report.get("light") or 0.0), LIGHT_RANGE),
        )

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["sensors"] = {
            "motion": self.sensors.motion,
            "temperature": self.sensors.temperature,
            "light_level": self.sensors.light_level,
        }
        return data


def _bulb_hsv(report: Mapping[str, Any]) -> HSV | None:
    color = report.get("color")
    if not color:
        return None
    if report.get("mode") == "rgb":
        # strips report WWRRGGBB
        return rgb_to_hsv(str(color)[-6:])
    if report.get("mode") == "hsv":
        return parse_hsv(str(color))
    return None
