"""In-process event bus.

Events are a closed set of frozen dataclasses joined in the
:data:`Event` union; subscribers register per event class and can
``match`` exhaustively on the union.

Delivery rules:

- synchronous, in the publisher's call stack;
- in subscriber-registration order, against a snapshot of the
  subscriber list taken when :meth:`EventBus.publish` starts;
- each subscriber sees each publish at most once;
- an exception in one subscriber is logged and delivery continues;
- no replay: late subscribers never see earlier events.

The bus holds no device lock while dispatching.  Subscribers that need
to do I/O schedule it themselves (see :class:`~dingzsync._bridge.StateBridge`).
"""

from __future__ import annotations

import contextlib
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

E = TypeVar("E", bound="Event")

logger = logging.getLogger(__name__)


class ButtonAction(enum.StrEnum):
    """Action codes sent by the devices' push callbacks."""

    SINGLE_PRESS = "1"
    DOUBLE_PRESS = "2"
    LONG_PRESS = "3"
    MOTION_START = "8"
    MOTION_STOP = "9"


PIR_BUTTON = "5"
"""Button id the dingz uses for its motion sensor pushes."""

# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StateUpdate:
    """Live state of a device changed; re-read it from the session.

    *resource* names what was refreshed (``"state"``, ``"blind-0"``,
    ``"motion"``, ...) for subscribers that filter.
    """

    mac: str
    resource: str = ""


@dataclass(frozen=True, slots=True)
class ButtonPress:
    """A physical button was pressed on a device."""

    mac: str
    button: str
    action: ButtonAction


@dataclass(frozen=True, slots=True)
class MotionPush:
    """A device pushed a motion start or stop."""

    mac: str
    motion: bool


@dataclass(frozen=True, slots=True)
class DeviceInfoUpdate:
    """A device was seen again, possibly at a new address."""

    mac: str
    address: str


@dataclass(frozen=True, slots=True)
class ReconfigurationRequest:
    """Ask a device session to re-read its hardware configuration now."""

    mac: str


Event = StateUpdate | ButtonPress | MotionPush | DeviceInfoUpdate | ReconfigurationRequest
"""Every event kind the bus carries."""

Handler = Callable[[Any], None]

# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Synchronous fan-out publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = {}

    def subscribe(
        self,
        kind: type[E],
        handler: Callable[[E], None],
    ) -> Callable[[], None]:
        """Register *handler* for events of class *kind*.

        Returns:
            A callable that removes this registration.  Calling it
            more than once is harmless.
        """
        handlers = self._subscribers.setdefault(kind, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver *event* to every subscriber of its class.

        Returns:
            The number of subscribers that handled the event without
            raising.
        """
        delivered = 0
        for handler in tuple(self._subscribers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber %r failed on %r", handler, event)
            else:
                delivered += 1
        return delivered

    def subscriber_count(self, kind: type) -> int:
        return len(self._subscribers.get(kind, ()))
