"""Test harness wrapping :class:`~dingzsync._app.Bridge`.

:class:`BridgeHarness` bundles the bridge with a MockMqttClient, a
FakeClock, a :class:`~dingzsync.testing._device.FakeNetwork`, settings
and a shutdown event, for integration-style tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Self

from dingzsync._app import Bridge
from dingzsync._mqtt import MockMqttClient
from dingzsync._settings import CallbackSettings, Settings
from dingzsync.testing._clock import FakeClock
from dingzsync.testing._device import FakeNetwork
from dingzsync.testing._settings import make_settings


@dataclass
class BridgeHarness:
    """Bridge plus test doubles.

    Usage::

        harness = BridgeHarness.create(devices=[{"address": "10.0.0.5"}])
        harness.network.add(FakeDingz("10.0.0.5"))
        task = asyncio.create_task(harness.run())
        ...
        harness.trigger_shutdown()
        await task

    The push listener is disabled unless ``callback`` is overridden.
    """

    bridge: Bridge
    mqtt: MockMqttClient
    clock: FakeClock
    network: FakeNetwork
    settings: Settings
    shutdown_event: asyncio.Event

    @classmethod
    def create(cls, *, version: str = "1.0.0", **settings_overrides: Any) -> Self:
        settings_overrides.setdefault("callback", CallbackSettings(enabled=False))
        return cls(
            bridge=Bridge(version=version),
            mqtt=MockMqttClient(),
            clock=FakeClock(),
            network=FakeNetwork(),
            settings=make_settings(**settings_overrides),
            shutdown_event=asyncio.Event(),
        )

    async def run(self) -> None:
        """Run ``_run_async`` with the harness's test doubles."""
        await self.bridge._run_async(
            settings=self.settings,
            mqtt=self.mqtt,
            shutdown_event=self.shutdown_event,
            clock=self.clock,
            http_transport=self.network.transport,
        )

    def trigger_shutdown(self) -> None:
        """Signal the shutdown event."""
        self.shutdown_event.set()
