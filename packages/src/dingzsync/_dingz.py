"""Session for dingz multi-output controllers.

Registration fetches the hardware configuration once (bounded retry
around the circuit breaker), derives the channel layout with
:func:`~dingzsync._topology.resolve_channels` and starts the polls:

=================  =============================  ==========
poll               fetch                          announce
=================  =============================  ==========
``state``          ``/api/v1/state`` (bulk)       always
``blind-<id>``     ``/api/v1/shade/<id>``         always
``led``            ``/api/v1/led/get``            always
``temperature``    ``/api/v1/temp``               on change
``motion``         ``/api/v1/motion``             on change
=================  =============================  ==========

``motion`` only runs with a motion sensor fitted and
``polling.motion_poller`` enabled; otherwise motion arrives as
:class:`~dingzsync._events.MotionPush` events.

Setters write optimistically: live state changes first, then the
device is told.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Mapping
from typing import Any

from dingzsync._api import DingzApi
from dingzsync._clock import ClockPort
from dingzsync._color import HSV, parse_hsv, rgb_to_hsv
from dingzsync._errors import InvalidCommandError, InvalidTypeError, UnknownChannelError
from dingzsync._events import (
    ButtonPress,
    EventBus,
    MotionPush,
    ReconfigurationRequest,
)
from dingzsync._locks import DeviceLocks
from dingzsync._models import (
    DeviceIdentity,
    DimmerState,
    Direction,
    HardwareConfig,
    LedState,
    WindowCoveringState,
)
from dingzsync._policies import Sleep, build_slow_policy
from dingzsync._reconciler import Reconciler
from dingzsync._session import DeviceSession, coerce_bool, coerce_percent
from dingzsync._settings import DeviceFamily, Settings
from dingzsync._topology import Channel, ChannelKind, resolve_channels
from dingzsync._transport import TransportClient

logger = logging.getLogger(__name__)

BUTTONS = ("1", "2", "3", "4")
_LEGACY_PIR_FIRMWARE = ("1.0.", "1.1.")


class DingzSession(DeviceSession):
    """One dingz: its channels, live state and polls."""

    family = DeviceFamily.DINGZ

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
        self.api = DingzApi(lambda: self.identity, transport, locks, self.reachability)
        self.config: HardwareConfig | None = None
        self.channels: dict[str, Channel] = {}
        self.dimmers: dict[int, DimmerState] = {}
        self.coverings: dict[int, WindowCoveringState] = {}
        self.led = LedState()
        self.buttons: dict[str, bool] = dict.fromkeys(BUTTONS, False)
        self.has_motion = False
        self.layout_mode: int | None = None
        self.reconciler = Reconciler(
            self,
            build_slow_policy(settings.resilience, sleep=sleep, name=f"{identity.mac} reconcile"),
        )

    # -- lifecycle ----------------------------------------------------------

    async def _setup(self) -> None:
        mac, config = await self.startup_policy.execute(self.api.fetch_config)
        if mac != self.mac:
            msg = f"Device at {self.identity.address} reports MAC {mac}, expected {self.mac}"
            raise InvalidTypeError(msg)
        self.config = config
        polling = self.settings.polling

        await self.sync_channels(config)
        self.tasks.start_poll("state", polling.state_interval, self.poll_state)
        self.tasks.start_poll("led", polling.led_interval, self.poll_led)
        self.tasks.start_poll(
            "temperature", polling.temperature_interval, self.poll_temperature
        )
        if config.has_pir:
            self.enable_motion()

        self._subscribe(ButtonPress, self._on_button)
        self._subscribe(MotionPush, self._on_motion_push)
        self._subscribe(ReconfigurationRequest, self._on_reconfiguration_request)

        if self.settings.callback_url:
            self.tasks.spawn("callback", self.register_callback())
        self.tasks.spawn("reconcile", self.reconciler.run_forever())

    def callback_endpoints(self) -> tuple[str, ...]:
        if self.config is not None and self.config.has_pir:
            return ("generic", "pir/single")
        return ("generic",)

    async def register_callback(self) -> int:
        rewritten = await super().register_callback()
        config = self.config
        if (
            config is not None
            and config.has_pir
            and not self.motion_polling
            and config.fw_version.startswith(_LEGACY_PIR_FIRMWARE)
        ):
            await self.api.enable_pir_callback()
        return rewritten

    # -- topology -----------------------------------------------------------

    async def sync_channels(
        self, config: HardwareConfig
    ) -> tuple[list[Channel], list[Channel]]:
        """Bring the channel map in line with *config*.

        The layout stays on the mode the channels were first resolved
        for; a later mode switch position is never applied.  Polls of
        removed channels are cancelled before the channels and their
        live state are dropped.

        Returns:
            ``(added, removed)`` channels.
        """
        if self.layout_mode is None:
            self.layout_mode = config.mode
        wanted = resolve_channels(
            self.layout_mode,
            input_active=config.input_active,
            outputs=config.outputs,
        )
        wanted_keys = {channel.key for channel in wanted}
        removed = [c for key, c in self.channels.items() if key not in wanted_keys]
        added = [c for c in wanted if c.key not in self.channels]

        for channel in removed:
            if channel.kind is ChannelKind.WINDOW_COVERING:
                await self.tasks.cancel(channel.key)
                self.coverings.pop(channel.id, None)
            else:
                self.dimmers.pop(channel.id, None)
            logger.info("[%s] removed channel %s", self.name, channel.key)

        self.channels = {channel.key: channel for channel in wanted}

        for channel in added:
            if channel.kind is ChannelKind.WINDOW_COVERING:
                self.coverings[channel.id] = WindowCoveringState()
                self.tasks.start_poll(
                    channel.key,
                    self.settings.polling.window_covering_interval,
                    functools.partial(self.poll_window_covering, channel.id),
                )
            else:
                self.dimmers[channel.id] = DimmerState()
            if self.started:
                logger.info("[%s] added channel %s", self.name, channel.key)
        return added, removed

    def enable_motion(self) -> None:
        """Add the motion channel, polled unless pushes are configured."""
        self.has_motion = True
        if self.motion_polling and "motion" not in self.tasks:
            self.tasks.start_poll(
                "motion", self.settings.polling.motion_interval, self.poll_motion
            )

    async def disable_motion(self) -> None:
        """Remove the motion channel and its poll."""
        await self.tasks.cancel("motion")
        self.has_motion = False
        self.sensors.motion = None

    def _on_motion_push(self, event: MotionPush) -> None:
        if not self.has_motion:
            return
        super()._on_motion_push(event)

    # -- polls --------------------------------------------------------------

    async def poll_state(self) -> None:
        """Fetch the bulk state and spread it over the dimmer channels."""
        state = await self._guarded(self.api.get_state)
        entries = _dimmer_entries(state.get("dimmers") or [])
        for dimmer_id, live in self.dimmers.items():
            entry = entries.get(dimmer_id)
            if entry is None:
                continue
            live.on = bool(entry.get("on", live.on))
            live.level = int(entry.get("output", live.level) or 0)
        sensors = state.get("sensors") or {}
        if sensors.get("brightness") is not None:
            self.sensors.light_level = float(sensors["brightness"])
        self._publish("state")

    async def poll_window_covering(self, covering_id: int) -> None:
        body = await self._guarded(lambda: self.api.get_window_covering(covering_id))
        live = self.coverings.get(covering_id)
        if live is None:
            return
        target = body.get("target") or {}
        current = body.get("current") or {}
        live.target_blind = int(target.get("blind", live.target_blind))
        live.target_lamella = int(target.get("lamella", live.target_lamella))
        live.current_blind = int(current.get("blind", live.current_blind))
        live.current_lamella = int(current.get("lamella", live.current_lamella))
        self._publish(f"blind-{covering_id}")

    async def poll_led(self) -> None:
        body = await self._guarded(self.api.get_led)
        self.led.on = bool(body.get("on", self.led.on))
        hsv = _led_hsv(body)
        if hsv is not None:
            self.led.hue, self.led.saturation, self.led.value = hsv
        self._publish("led")

    async def poll_motion(self) -> None:
        motion = await self._guarded(self.api.get_motion)
        self._update_sensor("motion", motion)

    async def poll_temperature(self) -> None:
        temperature = await self._guarded(self.api.get_temperature)
        self._update_sensor("temperature", round(temperature, 1))

    async def refresh(self) -> None:
        """Out-of-band bulk state fetch."""
        await self.poll_state()

    # -- event handlers -----------------------------------------------------

    def _on_button(self, event: ButtonPress) -> None:
        if event.mac != self.mac:
            return
        if event.button in self.buttons:
            self.buttons[event.button] = not self.buttons[event.button]
        logger.debug("[%s] button %s: %s", self.name, event.button, event.action.name)
        self._publish(f"button-{event.button}")
        self.tasks.spawn("refresh", self.refresh())

    def _on_reconfiguration_request(self, event: ReconfigurationRequest) -> None:
        if event.mac == self.mac:
            self.tasks.spawn("reconcile-now", self.reconciler.run_once())

    # -- dimmers ------------------------------------------------------------

    def _dimmer(self, dimmer_id: int) -> tuple[Channel, DimmerState]:
        channel = self.channels.get(f"{ChannelKind.DIMMER.value}-{dimmer_id}")
        if channel is None:
            msg = f"{self.mac} has no dimmer {dimmer_id}"
            raise UnknownChannelError(msg)
        return channel, self.dimmers[dimmer_id]

    def get_on(self, dimmer_id: int) -> bool:
        return self._dimmer(dimmer_id)[1].on

    async def set_on(self, dimmer_id: int, on: bool) -> None:
        channel, live = self._dimmer(dimmer_id)
        live.on = on
        self._publish(channel.key)
        level = live.level if channel.dimmable and on else None
        await self.api.set_dimmer(dimmer_id, on, level)

    def get_brightness(self, dimmer_id: int) -> int:
        channel, live = self._dimmer(dimmer_id)
        if not channel.dimmable:
            msg = f"Dimmer {dimmer_id} of {self.mac} is not dimmable"
            raise UnknownChannelError(msg)
        return live.level

    async def set_brightness(self, dimmer_id: int, level: int) -> None:
        channel, live = self._dimmer(dimmer_id)
        if not channel.dimmable:
            msg = f"Dimmer {dimmer_id} of {self.mac} is not dimmable"
            raise UnknownChannelError(msg)
        live.level = max(0, min(100, level))
        live.on = live.level > 0
        self._publish(channel.key)
        await self.api.set_dimmer(dimmer_id, live.on, live.level)

    # -- window coverings ---------------------------------------------------

    def _covering(self, covering_id: int) -> tuple[Channel, WindowCoveringState]:
        channel = self.channels.get(f"{ChannelKind.WINDOW_COVERING.value}-{covering_id}")
        if channel is None:
            msg = f"{self.mac} has no window covering {covering_id}"
            raise UnknownChannelError(msg)
        return channel, self.coverings[covering_id]

    def get_target_position(self, covering_id: int) -> int:
        return self._covering(covering_id)[1].target_blind

    def get_current_position(self, covering_id: int) -> int:
        return self._covering(covering_id)[1].current_blind

    def get_target_tilt(self, covering_id: int) -> int:
        return self._covering(covering_id)[1].target_lamella

    def get_current_tilt(self, covering_id: int) -> int:
        return self._covering(covering_id)[1].current_lamella

    def get_position_state(self, covering_id: int) -> Direction:
        return self._covering(covering_id)[1].direction

    async def set_target_position(self, covering_id: int, blind: int) -> None:
        channel, live = self._covering(covering_id)
        live.target_blind = max(0, min(100, blind))
        self._publish(channel.key)
        await self.api.set_window_covering(covering_id, live.target_blind, live.target_lamella)

    async def set_target_tilt(self, covering_id: int, lamella: int) -> None:
        channel, live = self._covering(covering_id)
        live.target_lamella = max(0, min(100, lamella))
        self._publish(channel.key)
        await self.api.set_window_covering(covering_id, live.target_blind, live.target_lamella)

    # -- LED ----------------------------------------------------------------

    def get_led_on(self) -> bool:
        return self.led.on

    def get_hue(self) -> int:
        return self.led.hue

    def get_saturation(self) -> int:
        return self.led.saturation

    def get_led_brightness(self) -> int:
        return self.led.value

    async def set_led(
        self,
        *,
        on: bool | None = None,
        hue: int | None = None,
        saturation: int | None = None,
        value: int | None = None,
    ) -> None:
        """Update any LED field; one request carries the whole state."""
        led = self.led
        if on is not None:
            led.on = on
        if hue is not None:
            led.hue = hue % 360
        if saturation is not None:
            led.saturation = max(0, min(100, saturation))
        if value is not None:
            led.value = max(0, min(100, value))
        self._publish("led")
        await self.api.set_led(led.on, (led.hue, led.saturation, led.value))

    async def set_led_on(self, on: bool) -> None:
        await self.set_led(on=on)

    async def set_hue(self, hue: int) -> None:
        await self.set_led(hue=hue)

    async def set_saturation(self, saturation: int) -> None:
        await self.set_led(saturation=saturation)

    async def set_led_brightness(self, value: int) -> None:
        await self.set_led(value=value)

    # -- observer surface ---------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        channels: dict[str, dict[str, Any]] = {}
        for key, channel in self.channels.items():
            if channel.kind is ChannelKind.DIMMER:
                dimmer = self.dimmers[channel.id]
                entry: dict[str, Any] = {"on": dimmer.on}
                if channel.dimmable:
                    entry["brightness"] = dimmer.level
            else:
                covering = self.coverings[channel.id]
                entry = {
                    "position": covering.current_blind,
                    "target_position": covering.target_blind,
                    "tilt": covering.current_lamella,
                    "target_tilt": covering.target_lamella,
                    "direction": covering.direction.value,
                }
            channels[key] = entry
        data["mode"] = self.config.mode if self.config is not None else None
        data["channels"] = channels
        data["led"] = {
            "on": self.led.on,
            "hue": self.led.hue,
            "saturation": self.led.saturation,
            "brightness": self.led.value,
        }
        data["sensors"] = {
            "temperature": self.sensors.temperature,
            "light_level": self.sensors.light_level,
        }
        if self.has_motion:
            data["sensors"]["motion"] = self.sensors.motion
        data["buttons"] = dict(self.buttons)
        return data

    async def apply_command(self, channel: str, values: Mapping[str, Any]) -> None:
        if channel == "led":
            await self.set_led(
                on=coerce_bool(values["on"]) if "on" in values else None,
                hue=coerce_percent(values["hue"], upper=359) if "hue" in values else None,
                saturation=(
                    coerce_percent(values["saturation"]) if "saturation" in values else None
                ),
                value=coerce_percent(values["brightness"]) if "brightness" in values else None,
            )
            return

        kind, _, raw_id = channel.partition("-")
        if not raw_id.isdigit():
            msg = f"Unknown channel {channel!r}"
            raise InvalidCommandError(msg)
        channel_id = int(raw_id)

        if kind == ChannelKind.DIMMER.value:
            if "brightness" in values:
                await self.set_brightness(channel_id, coerce_percent(values["brightness"]))
            elif "on" in values:
                await self.set_on(channel_id, coerce_bool(values["on"]))
            else:
                msg = "Dimmer commands need 'on' or 'brightness'"
                raise InvalidCommandError(msg)
        elif kind == ChannelKind.WINDOW_COVERING.value:
            if "position" not in values and "tilt" not in values:
                msg = "Blind commands need 'position' or 'tilt'"
                raise InvalidCommandError(msg)
            if "position" in values:
                await self.set_target_position(channel_id, coerce_percent(values["position"]))
            if "tilt" in values:
                await self.set_target_tilt(channel_id, coerce_percent(values["tilt"]))
        else:
            msg = f"Unknown channel {channel!r}"
            raise InvalidCommandError(msg)


def _dimmer_entries(dimmers: list[Mapping[str, Any]]) -> dict[int, Mapping[str, Any]]:
    """Index bulk-state dimmer entries by dimmer id, skipping disabled ones."""
    entries: dict[int, Mapping[str, Any]] = {}
    for position, entry in enumerate(dimmers):
        if entry.get("disabled"):
            continue
        index = entry.get("index") or {}
        entries[int(index.get("relative", position))] = entry
    return entries


def _led_hsv(body: Mapping[str, Any]) -> HSV | None:
    """HSV of an LED report, converting RGB-mode reports."""
    if body.get("mode") == "rgb" and body.get("rgb"):
        return rgb_to_hsv(str(body["rgb"]))
    if body.get("hsv"):
        return parse_hsv(str(body["hsv"]))
    if body.get("rgb"):
        return rgb_to_hsv(str(body["rgb"]))
    return None
