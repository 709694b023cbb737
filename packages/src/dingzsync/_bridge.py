"""MQTT projection of the device sessions.

Topic layout::

    {prefix}/status          ← "online" / "offline" (retained, LWT)
    {prefix}/{mac}/state     ← session snapshot (retained JSON)
    {prefix}/{mac}/event     ← button presses (JSON, not retained)
    {prefix}/{mac}/set       → commands (subscribed)
    {prefix}/{mac}/error     ← failed commands (via ErrorPublisher)

Bus subscribers run synchronously inside the publisher's call stack,
so the bridge only enqueues there.  A worker task drains the queue and
does the MQTT I/O.  State updates for a device already waiting in the
queue are coalesced: the worker reads the snapshot when it publishes,
not when the update was announced.

Command payloads are JSON objects naming the channel and the values to
set, e.g. ``{"channel": "dimmer-0", "brightness": 40}``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

from dingzsync._errors import ErrorPublisher, InvalidCommandError, UnknownChannelError
from dingzsync._events import ButtonPress, EventBus, StateUpdate
from dingzsync._mqtt import MqttMessageHandler, MqttPort
from dingzsync._platform import Platform

logger = logging.getLogger(__name__)

_STOP = object()


class StateBridge:
    """Publishes device state to MQTT and routes commands back.

    Args:
        platform: Registry of device sessions.
        bus: Event bus the sessions publish on.
        mqtt: MQTT port.
        topic_prefix: Root of every topic.
        errors: Error publisher for failed commands; built from *mqtt*
            and *topic_prefix* when omitted.
    """

    def __init__(
        self,
        platform: Platform,
        bus: EventBus,
        mqtt: MqttPort,
        *,
        topic_prefix: str,
        errors: ErrorPublisher | None = None,
    ) -> None:
        self._platform = platform
        self._bus = bus
        self._mqtt = mqtt
        self._prefix = topic_prefix
        self._errors = errors or ErrorPublisher(mqtt=mqtt, topic_prefix=topic_prefix)
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._queued_states: set[str] = set()
        self._unsubscribers: list[Callable[[], None]] = []
        self._worker: asyncio.Task[None] | None = None
        self.published = 0

    @property
    def status_topic(self) -> str:
        return f"{self._prefix}/status"

    @property
    def command_topic(self) -> str:
        return f"{self._prefix}/+/set"

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        self._unsubscribers.append(self._bus.subscribe(StateUpdate, self._on_state_update))
        self._unsubscribers.append(self._bus.subscribe(ButtonPress, self._on_button_press))
        if isinstance(self._mqtt, MqttMessageHandler):
            self._mqtt.on_message(self.handle_message)
        await self._mqtt.subscribe(self.command_topic)
        self._worker = asyncio.create_task(self._drain(), name="mqtt-bridge")
        await self._safe_publish(self.status_topic, "online", retain=True)

    async def stop(self) -> None:
        """Drop the subscriptions, flush the queue and announce ``offline``."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._worker is not None:
            self._queue.put_nowait(_STOP)
            try:
                await asyncio.wait_for(self._worker, timeout=5.0)
            except TimeoutError:
                self._worker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._worker
            self._worker = None
        await self._safe_publish(self.status_topic, "offline", retain=True)

    # -- bus side (synchronous) ---------------------------------------------

    def _on_state_update(self, event: StateUpdate) -> None:
        if event.mac in self._queued_states:
            return
        self._queued_states.add(event.mac)
        self._queue.put_nowait(event)

    def _on_button_press(self, event: ButtonPress) -> None:
        self._queue.put_nowait(event)

    # -- worker -------------------------------------------------------------

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            match item:
                case StateUpdate(mac=mac):
                    self._queued_states.discard(mac)
                    await self.publish_state(mac)
                case ButtonPress(mac=mac, button=button, action=action):
                    payload = json.dumps(
                        {"type": "button", "button": button, "action": action.name.lower()}
                    )
                    await self._safe_publish(f"{self._prefix}/{mac}/event", payload)
                case _:
                    return

    async def publish_state(self, mac: str) -> None:
        """Publish the retained snapshot of *mac*, if still registered."""
        session = self._platform.get(mac)
        if session is None:
            return
        payload = json.dumps(session.snapshot())
        await self._safe_publish(f"{self._prefix}/{mac}/state", payload, retain=True)

    async def _safe_publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        try:
            await self._mqtt.publish(topic, payload, retain=retain, qos=1)
        except Exception:
            logger.exception("Failed to publish to %s", topic)
        else:
            self.published += 1

    # -- commands -----------------------------------------------------------

    async def handle_message(self, topic: str, payload: str) -> None:
        """Apply a ``{prefix}/{mac}/set`` command; publish failures."""
        mac = self._extract_mac(topic)
        if mac is None:
            return
        session = self._platform.get(mac)
        try:
            if session is None:
                msg = f"No device {mac}"
                raise UnknownChannelError(msg)
            channel, values = _parse_command(payload)
            await session.apply_command(channel, values)
        except Exception as exc:
            await self._errors.publish(exc, device=mac)

    def _extract_mac(self, topic: str) -> str | None:
        prefix = self._prefix + "/"
        suffix = "/set"
        if not (topic.startswith(prefix) and topic.endswith(suffix)):
            return None
        middle = topic[len(prefix) : -len(suffix)]
        if "/" in middle or not middle:
            return None
        return middle


def _parse_command(payload: str) -> tuple[str, dict[str, Any]]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        msg = f"Command is not JSON: {exc}"
        raise InvalidCommandError(msg) from None
    if not isinstance(data, dict) or not isinstance(data.get("channel"), str):
        msg = "Command must be a JSON object with a 'channel' string"
        raise InvalidCommandError(msg)
    channel = data.pop("channel")
    return channel, data
