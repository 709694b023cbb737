"""Per-device session: the single owner of a device's mutable state.

A :class:`DeviceSession` holds, for one physical device:

- its :class:`~dingzsync._models.DeviceIdentity` (replaced when the
  device moves to another address),
- its live state,
- its circuit breaker and reachability flag,
- every task polling it, inside one :class:`~dingzsync._scheduler.TaskScope`,
- its event-bus subscriptions.

No other component writes any of these.  :meth:`DeviceSession.shutdown`
cancels every task and drops every subscription, so nothing keeps
running against a deregistered device.

Subclasses implement one device family (:mod:`dingzsync._dingz`,
:mod:`dingzsync._mystrom`).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, ClassVar, TypeVar

from dingzsync._api import DeviceApi, ensure_callback
from dingzsync._clock import ClockPort
from dingzsync._errors import InvalidCommandError
from dingzsync._events import DeviceInfoUpdate, EventBus, MotionPush, StateUpdate
from dingzsync._locks import DeviceLocks
from dingzsync._models import DeviceIdentity, SensorState
from dingzsync._policies import Sleep, build_breaker, build_startup_policy
from dingzsync._scheduler import TaskScope
from dingzsync._settings import DeviceFamily, Settings
from dingzsync._strategies import OnChange, PublishStrategy
from dingzsync._transport import Reachability, TransportClient

E = TypeVar("E")
T = TypeVar("T")

logger = logging.getLogger(__name__)

_ON_CHANGE = OnChange()


class DeviceSession:
    """Base class of all device sessions.

    Args:
        identity: Who the device is and where it lives.
        settings: Bridge settings (poll cadences, resilience, callback).
        transport: Shared HTTP client.
        bus: Event bus for state updates and inbound events.
        locks: Per-device lock registry shared by all sessions.
        clock: Clock for the circuit breaker.
        sleep: Sleep used by retries and poll loops.
    """

    family: ClassVar[DeviceFamily]
    api: DeviceApi

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
        self.identity = identity
        self.settings = settings
        self._transport = transport
        self._bus = bus
        self._locks = locks
        self.reachability = Reachability(
            f"{identity.name} ({identity.mac})",
            on_recovered=self._on_recovered,
        )
        self.breaker = build_breaker(settings.resilience, clock=clock, name=identity.mac)
        self.startup_policy = build_startup_policy(
            settings.resilience, self.breaker, sleep=sleep
        )
        self.tasks = TaskScope(identity.mac, sleep=sleep)
        self.sensors = SensorState()
        self._sleep = sleep
        self._unsubscribers: list[Callable[[], None]] = []
        self.started = False

    @property
    def mac(self) -> str:
        return self.identity.mac

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def motion_polling(self) -> bool:
        return self.settings.polling.motion_poller

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Fetch what the device needs, start its polls and subscriptions."""
        self._subscribe(DeviceInfoUpdate, self._on_device_info)
        await self._setup()
        self.started = True
        logger.info("[%s] session started at %s", self.name, self.identity.address)

    async def _setup(self) -> None:
        raise NotImplementedError

    async def shutdown(self) -> None:
        """Cancel every owned task and drop every subscription."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.tasks.shutdown()
        self._locks.forget(self.mac)
        self.started = False
        logger.info("[%s] session stopped", self.name)

    def _subscribe(self, kind: type[E], handler: Callable[[E], None]) -> None:
        self._unsubscribers.append(self._bus.subscribe(kind, handler))  # type: ignore[arg-type]

    # -- event handlers ------------------------------------------------------

    def _on_device_info(self, event: DeviceInfoUpdate) -> None:
        if event.mac != self.mac or event.address == self.identity.address:
            return
        logger.info(
            "[%s] address changed %s -> %s",
            self.name,
            self.identity.address,
            event.address,
        )
        self.identity = self.identity.moved_to(event.address)

    def _on_motion_push(self, event: MotionPush) -> None:
        if event.mac != self.mac or self.motion_polling:
            return
        self._update_sensor("motion", event.motion)

    def _on_recovered(self) -> None:
        if self.started and self.settings.callback_url:
            self.tasks.spawn("callback", self.register_callback())

    # -- helpers for subclasses ---------------------------------------------

    async def _guarded(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a poll fetch through the session's circuit breaker."""
        return await self.breaker.execute(fn)

    def _publish(self, resource: str = "") -> None:
        self._bus.publish(StateUpdate(self.mac, resource))

    def _update_sensor(
        self,
        field: str,
        value: object,
        strategy: PublishStrategy = _ON_CHANGE,
    ) -> bool:
        """Store a sensor reading and announce it if *strategy* agrees."""
        previous = getattr(self.sensors, field)
        if not strategy.should_publish(value, previous):
            return False
        setattr(self.sensors, field, value)
        self._publish(field)
        return True

    async def register_callback(self) -> int:
        """Point the device's push actions at the local listener.

        Returns:
            The number of action URLs rewritten.
        """
        url = self.settings.callback_url
        endpoints = self.callback_endpoints()
        if not url or not endpoints:
            return 0
        return await ensure_callback(self.api, endpoints, url)

    def callback_endpoints(self) -> tuple[str, ...]:
        """Action endpoints that push to the listener."""
        return ()

    # -- observer surface ---------------------------------------------------

    def get_motion(self) -> bool | None:
        return self.sensors.motion

    def get_temperature(self) -> float | None:
        return self.sensors.temperature

    def get_light_level(self) -> float | None:
        return self.sensors.light_level

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of identity and live state."""
        return {
            "mac": self.mac,
            "name": self.name,
            "family": self.family.value,
            "address": self.identity.address,
            "reachable": self.reachability.is_reachable,
        }

    async def apply_command(self, channel: str, values: Mapping[str, Any]) -> None:
        """Apply an inbound command to *channel*.

        Raises:
            InvalidCommandError: If the command is not understood.
            UnknownChannelError: If *channel* does not exist.
        """
        msg = f"{self.family.value} devices accept no commands"
        raise InvalidCommandError(msg)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.mac}, {self.identity.address})"


def coerce_bool(value: object) -> bool:
    """Interpret a command value as a boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str) and value.lower() in {"on", "true", "1"}:
        return True
    if isinstance(value, str) and value.lower() in {"off", "false", "0"}:
        return False
    msg = f"Expected a boolean, got {value!r}"
    raise InvalidCommandError(msg)


def coerce_percent(value: object, *, upper: int = 100) -> int:
    """Interpret a command value as an integer in ``0..upper``."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        msg = f"Expected a number, got {value!r}"
        raise InvalidCommandError(msg)
    try:
        number = round(float(value))
    except ValueError:
        msg = f"Expected a number, got {value!r}"
        raise InvalidCommandError(msg) from None
    return max(0, min(upper, number))
