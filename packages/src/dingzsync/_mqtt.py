"""Broker connection used by the state bridge.

The bridge only needs to publish retained state and error messages,
subscribe to ``{prefix}/+/set`` and receive the commands that arrive
there.  :class:`MqttPort` captures that surface; :class:`MqttClient`
implements it on top of aiomqtt, :class:`MockMqttClient` records it for
tests and :class:`NullMqttClient` stands in when MQTT is disabled.

The broker publishes the :class:`WillConfig` (``offline`` on the status
topic) when the bridge drops off without a clean stop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Protocol, runtime_checkable

from dingzsync._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Receives ``(topic, payload)`` of each command message."""


@dataclass(frozen=True, slots=True)
class WillConfig:
    """Message the broker publishes when the bridge vanishes."""

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


def status_will(topic_prefix: str) -> WillConfig:
    """Retained ``offline`` on ``{topic_prefix}/status``, mirroring StateBridge.stop."""
    return WillConfig(topic=f"{topic_prefix}/status")


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    async def publish(
        self, topic: str, payload: str, *, retain: bool = False, qos: int = 1
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Clients owning a connection that the app starts and stops."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Clients that hand received commands to the bridge."""

    def on_message(self, callback: MessageCallback) -> None: ...


# ---------------------------------------------------------------------------
# Stand-ins
# ---------------------------------------------------------------------------


class NullMqttClient:
    """Drops everything; the bridge still runs its queue."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("MQTT disabled, dropping %d byte(s) for %s", len(payload), topic)

    async def subscribe(self, topic: str) -> None:
        logger.debug("MQTT disabled, not subscribing to %s", topic)


class PublishedMessage(NamedTuple):
    topic: str
    payload: str
    retain: bool
    qos: int


@dataclass
class MockMqttClient:
    """Records what the bridge sends and feeds it commands via :meth:`deliver`."""

    published: list[PublishedMessage] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    _handlers: list[MessageCallback] = field(default_factory=list, init=False, repr=False)

    async def publish(
        self, topic: str, payload: str, *, retain: bool = False, qos: int = 1
    ) -> None:
        self.published.append(PublishedMessage(topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        self._handlers.append(callback)

    async def deliver(self, topic: str, payload: str) -> None:
        """Hand a command to every handler; handler errors propagate."""
        for handler in self._handlers:
            await handler(topic, payload)

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """``(payload, retain, qos)`` of everything sent to *topic*, oldest first."""
        return [(m.payload, m.retain, m.qos) for m in self.published if m.topic == topic]


# ---------------------------------------------------------------------------
# aiomqtt client
# ---------------------------------------------------------------------------


class MqttClient:
    """Keeps one broker connection alive for the lifetime of the app.

    ``start`` spawns a task that connects, re-subscribes every topic
    requested so far and feeds incoming messages to the handlers.  A
    lost connection is retried every ``settings.reconnect_interval``
    seconds until ``stop``.  Publishing while disconnected raises
    :class:`RuntimeError`; the bridge logs and drops such messages.
    """

    def __init__(self, settings: MqttSettings, will: WillConfig | None = None) -> None:
        self.settings = settings
        self.will = will
        self._handlers: list[MessageCallback] = []
        self._topics: set[str] = set()
        self._client: Any = None
        self._task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def publish(
        self, topic: str, payload: str, *, retain: bool = False, qos: int = 1
    ) -> None:
        client = self._client
        if client is None:
            msg = f"MqttClient is not connected, cannot publish to {topic}"
            raise RuntimeError(msg)
        await client.publish(topic, payload, retain=retain, qos=qos)

    async def subscribe(self, topic: str) -> None:
        self._topics.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._handlers.append(callback)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="mqtt-connection")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._connected.clear()

    # -- connection ---------------------------------------------------------

    async def _run(self) -> None:
        import aiomqtt  # noqa: PLC0415

        while True:
            try:
                async with aiomqtt.Client(**self._connect_args(aiomqtt)) as client:
                    await self._serve(client)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Broker %s:%d unavailable, retrying in %.1fs",
                    self.settings.host,
                    self.settings.port,
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    def _connect_args(self, aiomqtt: Any) -> dict[str, Any]:
        password = self.settings.password
        will = self.will
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": password.get_secret_value() if password is not None else None,
            "identifier": self.settings.client_id or None,
            "will": (
                aiomqtt.Will(
                    topic=will.topic, payload=will.payload, qos=will.qos, retain=will.retain
                )
                if will is not None
                else None
            ),
        }

    async def _serve(self, client: Any) -> None:
        self._client = client
        try:
            for topic in sorted(self._topics):
                await client.subscribe(topic, qos=self.settings.qos)
            self._connected.set()
            logger.info("Connected to broker %s:%d", self.settings.host, self.settings.port)
            async for message in client.messages:
                await self._deliver(str(message.topic), message.payload)
        finally:
            self._connected.clear()
            self._client = None

    async def _deliver(self, topic: str, raw: Any) -> None:
        if raw is None:
            return
        payload = raw.decode() if isinstance(raw, bytes | bytearray) else str(raw)
        for handler in self._handlers:
            try:
                await handler(topic, payload)
            except Exception:
                logger.exception("Command handler failed for %s", topic)
