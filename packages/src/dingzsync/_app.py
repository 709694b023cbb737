"""Composition root.

:class:`Bridge` wires settings, logging, the HTTP transport, the event
bus, the device platform, the push listener, LAN discovery and the MQTT
projection together, runs until SIGTERM/SIGINT and tears everything
down in reverse order::

    from dingzsync import Bridge

    Bridge().run()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import uuid

import httpx

from dingzsync._bridge import StateBridge
from dingzsync._clock import ClockPort, SystemClock
from dingzsync._discovery import DeviceDiscovery
from dingzsync._errors import ErrorPublisher
from dingzsync._events import EventBus
from dingzsync._listener import CallbackListener
from dingzsync._locks import DeviceLocks
from dingzsync._logging import configure_logging
from dingzsync._mqtt import (
    MqttClient,
    MqttLifecycle,
    MqttPort,
    NullMqttClient,
    status_will,
)
from dingzsync._platform import Platform
from dingzsync._settings import Settings
from dingzsync._transport import TransportClient

logger = logging.getLogger(__name__)

SERVICE_NAME = "dingzsync"


class Bridge:
    """The dingzsync service.

    Args:
        version: Version reported in logs.
        settings_class: Settings class instantiated at startup.
    """

    def __init__(
        self,
        *,
        version: str = "0.0.0",
        settings_class: type[Settings] = Settings,
    ) -> None:
        self._version = version
        self._settings_class = settings_class

    @property
    def version(self) -> str:
        return self._version

    @property
    def settings_class(self) -> type[Settings]:
        return self._settings_class

    def run(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Run until interrupted (blocking)."""
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    settings=settings,
                    mqtt=mqtt,
                    shutdown_event=shutdown_event,
                ),
            )

    def cli(self) -> None:
        """Run with command-line argument parsing."""
        from dingzsync._cli import build_cli  # noqa: PLC0415

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        listener: CallbackListener | None = None,
    ) -> None:
        """Bootstrap, run until *shutdown_event*, tear down.

        Args:
            settings: Override settings (skip environment loading).
            mqtt: Override MQTT client (inject a mock for tests).
            shutdown_event: Override shutdown event (skip signal handlers).
            clock: Override clock for the circuit breakers.
            http_transport: httpx transport for device requests.
            listener: Override the push listener.
        """
        # --- Bootstrap ---
        resolved = settings if settings is not None else self._settings_class()
        configure_logging(resolved.logging, service=SERVICE_NAME, version=self._version)
        logger.info("Starting %s %s", SERVICE_NAME, self._version)

        transport = TransportClient(timeout=resolved.http.timeout, transport=http_transport)
        bus = EventBus()
        platform = Platform(
            resolved,
            transport=transport,
            bus=bus,
            locks=DeviceLocks(),
            clock=clock if clock is not None else SystemClock(),
        )
        mqtt = self._create_mqtt(mqtt, resolved)
        bridge = StateBridge(
            platform,
            bus,
            mqtt,
            topic_prefix=resolved.mqtt.topic_prefix,
            errors=ErrorPublisher(mqtt=mqtt, topic_prefix=resolved.mqtt.topic_prefix),
        )
        if listener is None and resolved.callback.enabled:
            listener = CallbackListener(
                platform, host=resolved.callback.bind, port=resolved.callback.port
            )
        discovery = (
            DeviceDiscovery(
                platform.add_device,
                platform.__contains__,
                port=resolved.discovery.port,
            )
            if resolved.discovery.enabled
            else None
        )
        shutdown_event = self._install_signal_handlers(shutdown_event)

        try:
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.start()
            await bridge.start()
            if listener is not None:
                await listener.start()
            await platform.start()
            if discovery is not None:
                await discovery.start()
            logger.info("%d device(s) registered", len(platform))

            # --- Run ---
            await shutdown_event.wait()
        finally:
            # --- Tear down ---
            if discovery is not None:
                await discovery.stop()
            await platform.shutdown()
            if listener is not None:
                await listener.stop()
            await bridge.stop()
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.stop()
            await transport.aclose()
            logger.info("Shutdown complete")

    @staticmethod
    def _create_mqtt(mqtt: MqttPort | None, settings: Settings) -> MqttPort:
        """Create the MQTT client, or return the injected one."""
        if mqtt is not None:
            return mqtt
        mqtt_settings = settings.mqtt
        if not mqtt_settings.enabled:
            return NullMqttClient()
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{SERVICE_NAME}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(
            settings=mqtt_settings,
            will=status_will(mqtt_settings.topic_prefix),
        )

    @staticmethod
    def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event
