"""Unit tests for dingzsync._bridge: MQTT projection of the sessions.

Test Techniques Used:
    - Test Double: MockMqttClient records publishes, delivers commands
    - Simulated Devices: a registered FakeDingz behind FakeNetwork
    - Coalescing Testing: bursts of updates give one state message
    - Error Condition Testing: bad commands land on the error topics
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import pytest

from dingzsync._bridge import StateBridge
from dingzsync._events import ButtonAction, ButtonPress, EventBus, StateUpdate
from dingzsync._locks import DeviceLocks
from dingzsync._mqtt import MockMqttClient
from dingzsync._platform import Platform
from dingzsync._settings import DeviceSettings, Settings
from dingzsync._transport import TransportClient
from dingzsync.testing import FakeDingz, FakeNetwork, settle, wait_until

MAC = "AABBCCDDEEFF"
PREFIX = "dingzsync"
STATE_TOPIC = f"{PREFIX}/{MAC}/state"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def dingz(fake_network: FakeNetwork) -> FakeDingz:
    return fake_network.add(FakeDingz("10.0.0.5", mac=MAC))


@pytest.fixture
async def platform(
    dingz: FakeDingz,
    settings: Settings,
    transport: TransportClient,
    bus: EventBus,
    locks: DeviceLocks,
) -> AsyncIterator[Platform]:
    platform = Platform(settings, transport=transport, bus=bus, locks=locks)
    session = await platform.add_device(DeviceSettings(address="10.0.0.5", name="Hall"))
    await settle(session)
    yield platform
    await platform.shutdown()


@pytest.fixture
async def bridge(
    platform: Platform, bus: EventBus, mock_mqtt: MockMqttClient
) -> AsyncIterator[StateBridge]:
    bridge = StateBridge(platform, bus, mock_mqtt, topic_prefix=PREFIX)
    await bridge.start()
    yield bridge
    await bridge.stop()


def _states(mqtt: MockMqttClient) -> list[dict[str, object]]:
    return [json.loads(payload) for payload, _, _ in mqtt.get_messages_for(STATE_TOPIC)]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Status topic and command subscription.

    Technique: Test Double.
    """

    async def test_start_announces_online(
        self, bridge: StateBridge, mock_mqtt: MockMqttClient
    ) -> None:
        assert mock_mqtt.get_messages_for(f"{PREFIX}/status") == [("online", True, 1)]
        assert mock_mqtt.subscriptions == [f"{PREFIX}/+/set"]

    async def test_stop_announces_offline(
        self, platform: Platform, bus: EventBus, mock_mqtt: MockMqttClient
    ) -> None:
        bridge = StateBridge(platform, bus, mock_mqtt, topic_prefix=PREFIX)
        await bridge.start()

        await bridge.stop()

        assert mock_mqtt.get_messages_for(f"{PREFIX}/status")[-1] == ("offline", True, 1)
        assert bus.subscriber_count(StateUpdate) == 0


# ---------------------------------------------------------------------------
# State and events
# ---------------------------------------------------------------------------


class TestStatePublishing:
    """Retained state snapshots.

    Technique: Coalescing Testing.
    """

    async def test_update_publishes_snapshot(
        self, bridge: StateBridge, bus: EventBus, mock_mqtt: MockMqttClient
    ) -> None:
        bus.publish(StateUpdate(MAC, "state"))

        await wait_until(lambda: len(_states(mock_mqtt)) == 1)
        payload, retain, _ = mock_mqtt.get_messages_for(STATE_TOPIC)[0]
        assert retain is True
        assert json.loads(payload)["mac"] == MAC

    async def test_burst_is_coalesced(
        self, bridge: StateBridge, bus: EventBus, mock_mqtt: MockMqttClient
    ) -> None:
        for resource in ("state", "led", "temperature", "dimmer-0"):
            bus.publish(StateUpdate(MAC, resource))

        await wait_until(lambda: len(_states(mock_mqtt)) >= 1)
        await bridge.stop()

        assert len(_states(mock_mqtt)) == 1

    async def test_snapshot_is_read_when_published(
        self,
        bridge: StateBridge,
        platform: Platform,
        mock_mqtt: MockMqttClient,
    ) -> None:
        session = platform.get(MAC)
        assert session is not None

        await session.apply_command("dimmer-2", {"brightness": 30})

        await wait_until(lambda: len(_states(mock_mqtt)) >= 1)
        channels = _states(mock_mqtt)[-1]["channels"]
        assert channels["dimmer-2"] == {"on": True, "brightness": 30}  # type: ignore[index]

    async def test_unknown_device_is_skipped(
        self, bridge: StateBridge, mock_mqtt: MockMqttClient
    ) -> None:
        await bridge.publish_state("001122334455")

        assert mock_mqtt.get_messages_for(f"{PREFIX}/001122334455/state") == []

    async def test_device_added_later_is_published(
        self,
        bridge: StateBridge,
        platform: Platform,
        fake_network: FakeNetwork,
        mock_mqtt: MockMqttClient,
    ) -> None:
        fake_network.add(FakeDingz("10.0.0.6", mac="001122334455"))
        topic = f"{PREFIX}/001122334455/state"

        await platform.add_device(DeviceSettings(address="10.0.0.6", name="Kitchen"))
        await wait_until(lambda: bool(mock_mqtt.get_messages_for(topic)))

        payload, retain, _ = mock_mqtt.get_messages_for(topic)[-1]
        assert retain is True
        assert "dimmer-0" in json.loads(payload)["channels"]

    async def test_button_press_event(
        self, bridge: StateBridge, bus: EventBus, mock_mqtt: MockMqttClient
    ) -> None:
        bus.publish(ButtonPress(MAC, "3", ButtonAction.LONG_PRESS))

        topic = f"{PREFIX}/{MAC}/event"
        await wait_until(lambda: bool(mock_mqtt.get_messages_for(topic)))
        payload, retain, _ = mock_mqtt.get_messages_for(topic)[0]
        assert retain is False
        assert json.loads(payload) == {"type": "button", "button": "3", "action": "long_press"}

    async def test_publish_failure_is_logged(
        self,
        platform: Platform,
        bus: EventBus,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        class BrokenMqtt(MockMqttClient):
            async def publish(
                self, topic: str, payload: str, *, retain: bool = False, qos: int = 1
            ) -> None:
                msg = "broker gone"
                raise ConnectionError(msg)

        bridge = StateBridge(platform, bus, BrokenMqtt(), topic_prefix=PREFIX)

        await bridge.start()
        await bridge.stop()

        assert bridge.published == 0
        assert "Failed to publish to dingzsync/status" in caplog.text


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    """Inbound ``{prefix}/{mac}/set`` messages.

    Technique: Error Condition Testing.
    """

    async def test_command_is_applied(
        self, bridge: StateBridge, dingz: FakeDingz, mock_mqtt: MockMqttClient
    ) -> None:
        await mock_mqtt.deliver(
            f"{PREFIX}/{MAC}/set", json.dumps({"channel": "dimmer-1", "brightness": 65})
        )

        assert dingz.dimmers[1] == {"on": True, "output": 65}

    @pytest.mark.parametrize(
        ("payload", "error_type"),
        [
            ("not json", "invalid_command"),
            ('["dimmer-0"]', "invalid_command"),
            ('{"brightness": 10}', "invalid_command"),
            ('{"channel": "blind-0", "position": 10}', "unknown_channel"),
        ],
    )
    async def test_bad_command_is_published_as_error(
        self,
        bridge: StateBridge,
        mock_mqtt: MockMqttClient,
        payload: str,
        error_type: str,
    ) -> None:
        await mock_mqtt.deliver(f"{PREFIX}/{MAC}/set", payload)

        errors = mock_mqtt.get_messages_for(f"{PREFIX}/{MAC}/error")
        assert len(errors) == 1
        assert json.loads(errors[0][0])["error_type"] == error_type
        assert mock_mqtt.get_messages_for(f"{PREFIX}/error")

    async def test_unknown_device(self, bridge: StateBridge, mock_mqtt: MockMqttClient) -> None:
        await mock_mqtt.deliver(f"{PREFIX}/001122334455/set", '{"channel": "dimmer-0"}')

        errors = mock_mqtt.get_messages_for(f"{PREFIX}/001122334455/error")
        assert json.loads(errors[0][0])["error_type"] == "unknown_channel"

    @pytest.mark.parametrize(
        "topic",
        [f"{PREFIX}/{MAC}/state", f"{PREFIX}/a/b/set", f"{PREFIX}//set", f"other/{MAC}/set"],
    )
    async def test_foreign_topics_are_ignored(
        self, bridge: StateBridge, mock_mqtt: MockMqttClient, topic: str
    ) -> None:
        before = len(mock_mqtt.published)

        await mock_mqtt.deliver(topic, '{"channel": "dimmer-0", "on": true}')

        assert len(mock_mqtt.published) == before
