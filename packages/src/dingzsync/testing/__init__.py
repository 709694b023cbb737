"""Public test-support utilities for dingzsync.

Provided symbols:

- :class:`BridgeHarness`: the bridge wired to test doubles.
- :class:`FakeNetwork` and the fake devices: simulated device HTTP APIs.
- :class:`MockMqttClient`: in-memory MQTT double that records calls.
- :class:`FakeClock`: deterministic clock for breaker timing.
- :func:`make_settings`: ``Settings`` without ``.env`` files.
- :func:`wait_until` and :func:`settle`: wait for background tasks.
"""

from dingzsync._mqtt import MockMqttClient, NullMqttClient
from dingzsync.testing._clock import FakeClock
from dingzsync.testing._device import (
    FakeDevice,
    FakeDingz,
    FakeMyStromBulb,
    FakeMyStromPir,
    FakeMyStromSwitch,
    FakeNetwork,
)
from dingzsync.testing._harness import BridgeHarness
from dingzsync.testing._settings import make_settings
from dingzsync.testing._wait import settle, wait_until

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "FakeDevice",
    "FakeDingz",
    "FakeMyStromBulb",
    "FakeMyStromPir",
    "FakeMyStromSwitch",
    "FakeNetwork",
    "MockMqttClient",
    "NullMqttClient",
    "make_settings",
    "settle",
    "wait_until",
]
