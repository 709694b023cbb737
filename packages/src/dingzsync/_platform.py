"""Device registry and registration.

:class:`Platform` owns one :class:`~dingzsync._session.DeviceSession`
per MAC address.  Registering a device queries its identity endpoint
under bounded retry and a circuit breaker of its own, checks that the
device is of the configured family and starts a session for it.  A
device that is already registered is reused; if it reappeared at a
new address the sessions learn about it through a
:class:`~dingzsync._events.DeviceInfoUpdate`.

Push callbacks from the listener enter here too, and are turned into
:class:`~dingzsync._events.ButtonPress` and
:class:`~dingzsync._events.MotionPush` events.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping
from typing import Any

from dingzsync._api import DingzApi, MyStromApi
from dingzsync._clock import ClockPort
from dingzsync._dingz import DingzSession
from dingzsync._errors import DeviceNotImplementedError, InvalidTypeError
from dingzsync._events import (
    PIR_BUTTON,
    ButtonAction,
    ButtonPress,
    DeviceInfoUpdate,
    EventBus,
    MotionPush,
    StateUpdate,
)
from dingzsync._locks import DeviceLocks
from dingzsync._models import (
    FAMILY_TYPES,
    DeviceIdentity,
    DeviceType,
    _device_entry,
    normalize_mac,
)
from dingzsync._mystrom import MyStromBulbSession, MyStromPirSession, MyStromSwitchSession
from dingzsync._policies import Sleep, build_breaker, build_startup_policy
from dingzsync._session import DeviceSession
from dingzsync._settings import DeviceFamily, DeviceSettings, Settings
from dingzsync._transport import Reachability, TransportClient

logger = logging.getLogger(__name__)

SESSION_TYPES: dict[DeviceFamily, type[DeviceSession]] = {
    DeviceFamily.DINGZ: DingzSession,
    DeviceFamily.MYSTROM_SWITCH: MyStromSwitchSession,
    DeviceFamily.MYSTROM_BULB: MyStromBulbSession,
    DeviceFamily.MYSTROM_PIR: MyStromPirSession,
}


class Platform:
    """Registry of device sessions, keyed by MAC.

    Args:
        settings: Bridge settings.
        transport: Shared HTTP client.
        bus: Event bus shared with the sessions.
        locks: Per-device locks; a fresh registry when omitted.
        clock: Clock for the circuit breakers.
        sleep: Sleep used by retries and poll loops.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks | None = None,
        clock: ClockPort | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.bus = bus
        self.locks = locks if locks is not None else DeviceLocks()
        self._clock = clock
        self._sleep = sleep
        self._sessions: dict[str, DeviceSession] = {}
        self._pending: dict[str, asyncio.Future[DeviceSession]] = {}
        identify_breaker = build_breaker(settings.resilience, clock=clock, name="identify")
        self._identify_policy = build_startup_policy(
            settings.resilience, identify_breaker, sleep=sleep
        )

    # -- registry -----------------------------------------------------------

    def __contains__(self, mac: object) -> bool:
        return isinstance(mac, str) and normalize_mac(mac) in self._sessions

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, mac: str) -> DeviceSession | None:
        return self._sessions.get(normalize_mac(mac))

    # -- registration -------------------------------------------------------

    async def identify(self, device: DeviceSettings) -> DeviceIdentity:
        """Query *device* and return who it is.

        Raises:
            InvalidTypeError: If the device is not of ``device.family``.
            DeviceNotImplementedError: If it is a myStrom button.
            TransportError: If the device stays unreachable.
        """
        token = self.settings.token_for(device)
        provisional = DeviceIdentity(
            mac="",
            address=device.address,
            family=device.family,
            name=device.name,
            token=token,
        )
        reachability = Reachability(f"{device.name} ({device.address})")

        if device.family is DeviceFamily.DINGZ:
            dingz = DingzApi(lambda: provisional, self.transport, self.locks, reachability)
            info = await self._identify_policy.execute(dingz.fetch_device_info)
            return _dingz_identity(info, device, token)

        mystrom = MyStromApi(lambda: provisional, self.transport, self.locks, reachability)
        info = await self._identify_policy.execute(mystrom.get_info)
        return _mystrom_identity(info, device, token)

    async def add_device(self, device: DeviceSettings) -> DeviceSession:
        """Register *device*, or reuse its session if already registered.

        Raises:
            InvalidTypeError: If the device is of the wrong family.
            DeviceNotImplementedError: If it is a myStrom button.
            TransportError: If the device stays unreachable.
        """
        identity = await self.identify(device)
        existing = self._sessions.get(identity.mac)
        if existing is not None:
            if existing.identity.address != identity.address:
                self.bus.publish(DeviceInfoUpdate(identity.mac, identity.address))
            else:
                logger.debug("[%s] already registered", existing.name)
            return existing

        # concurrent registrations of one MAC share a single start
        pending = self._pending.get(identity.mac)
        if pending is None:
            pending = asyncio.ensure_future(self._start_session(identity))
            self._pending[identity.mac] = pending
            pending.add_done_callback(lambda _: self._pending.pop(identity.mac, None))
        return await asyncio.shield(pending)

    async def _start_session(self, identity: DeviceIdentity) -> DeviceSession:
        session = SESSION_TYPES[identity.family](
            identity,
            settings=self.settings,
            transport=self.transport,
            bus=self.bus,
            locks=self.locks,
            clock=self._clock,
            sleep=self._sleep,
        )
        try:
            await session.start()
        except BaseException:
            await session.shutdown()
            raise
        self._sessions[identity.mac] = session
        # updates from the first polls arrived before the session was listed
        self.bus.publish(StateUpdate(identity.mac, "registered"))
        logger.info(
            "Registered %s %s (%s) at %s",
            identity.family.value,
            identity.name,
            identity.mac,
            identity.address,
        )
        return session

    async def start(self) -> None:
        """Register all configured devices concurrently.

        A device that fails to register is logged and skipped.
        """
        devices = self.settings.devices
        results = await asyncio.gather(
            *(self.add_device(device) for device in devices),
            return_exceptions=True,
        )
        for device, result in zip(devices, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Could not register %s at %s: %s",
                    device.name,
                    device.address,
                    result,
                )

    async def remove_device(self, mac: str) -> bool:
        """Shut down and forget the session of *mac*."""
        session = self._sessions.pop(normalize_mac(mac), None)
        if session is None:
            return False
        await session.shutdown()
        return True

    async def shutdown(self) -> None:
        """Shut down every session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        results = await asyncio.gather(
            *(session.shutdown() for session in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Error shutting down %s: %s", session.name, result)

    # -- push callbacks -----------------------------------------------------

    def handle_action(self, mac: str, action: str, button: str | None = None) -> bool:
        """Turn a push callback into a bus event.

        Returns:
            ``False`` if the device or the action is unknown.
        """
        normalized = normalize_mac(mac)
        if normalized not in self._sessions:
            logger.debug("Push from unknown device %s ignored", mac)
            return False
        try:
            kind = ButtonAction(action)
        except ValueError:
            logger.warning("Unknown action %r from %s", action, mac)
            return False

        if kind in (ButtonAction.MOTION_START, ButtonAction.MOTION_STOP):
            self.bus.publish(MotionPush(normalized, kind is ButtonAction.MOTION_START))
        elif button == PIR_BUTTON:
            # motion sensor pushes without a start/stop code mean motion
            self.bus.publish(MotionPush(normalized, True))
        else:
            self.bus.publish(ButtonPress(normalized, button or "1", kind))
        return True


def _dingz_identity(
    info: Mapping[str, Any],
    device: DeviceSettings,
    token: str | None,
) -> DeviceIdentity:
    mac, entry = _device_entry(info)
    if entry.get("type") != "dingz":
        msg = (
            f"Device {device.name} at {device.address} is of the wrong type "
            f"({entry.get('type')} instead of \"dingz\")"
        )
        raise InvalidTypeError(msg)
    return DeviceIdentity(
        mac=mac,
        address=device.address,
        family=DeviceFamily.DINGZ,
        name=device.name,
        token=token,
        model="dingz+" if entry.get("has_pir") else "dingz",
        fw_version=str(entry.get("fw_version", "")),
    )


def _mystrom_identity(
    info: Mapping[str, Any],
    device: DeviceSettings,
    token: str | None,
) -> DeviceIdentity:
    try:
        type_code = int(info.get("type", 0))
    except (TypeError, ValueError):
        type_code = 0
    if type_code in _UNSUPPORTED_TYPES:
        msg = f"{DeviceType(type_code).name} at {device.address} is not supported"
        raise DeviceNotImplementedError(msg)
    if type_code not in FAMILY_TYPES[device.family]:
        msg = (
            f"Device {device.name} at {device.address} is of the wrong type "
            f"({info.get('type')} is not a {device.family.value})"
        )
        raise InvalidTypeError(msg)
    if not info.get("mac"):
        msg = f"Device {device.name} at {device.address} reports no MAC"
        raise InvalidTypeError(msg)
    return DeviceIdentity(
        mac=normalize_mac(str(info["mac"])),
        address=device.address,
        family=device.family,
        name=device.name,
        token=token,
        model=_MYSTROM_MODELS.get(type_code, ""),
        fw_version=str(info.get("version", "")),
    )


_UNSUPPORTED_TYPES = frozenset({DeviceType.MYSTROM_BUTTON, DeviceType.MYSTROM_BUTTON_PLUS})

_MYSTROM_MODELS: dict[int, str] = {
    DeviceType.MYSTROM_SWITCH_CHV1: "CH v1",
    DeviceType.MYSTROM_SWITCH_CHV2: "CH v2",
    DeviceType.MYSTROM_SWITCH_EU: "EU",
    DeviceType.MYSTROM_BULB: "Bulb",
    DeviceType.MYSTROM_LEDSTRIP: "LED strip",
    DeviceType.MYSTROM_PIR: "PIR",
}
