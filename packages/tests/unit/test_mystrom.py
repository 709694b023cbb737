"""Unit tests for dingzsync._mystrom: switch, bulb and motion sensor sessions.

Test Techniques Used:
    - Simulated Devices: FakeMyStrom* behind FakeNetwork
    - Boundary Value Analysis: sensor clamping ranges
    - Equivalence Partitioning: models with and without temperature sensor
    - State-based Testing: live state after polls and setters
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest

from dingzsync._errors import InvalidCommandError
from dingzsync._events import EventBus, MotionPush, StateUpdate
from dingzsync._locks import DeviceLocks
from dingzsync._models import DeviceIdentity
from dingzsync._mystrom import (
    LIGHT_RANGE,
    TEMPERATURE_RANGE,
    MyStromBulbSession,
    MyStromPirSession,
    MyStromSession,
    MyStromSwitchSession,
    clamp,
)
from dingzsync._settings import CallbackSettings, DeviceFamily, PollingSettings, Settings
from dingzsync._transport import TransportClient
from dingzsync.testing import (
    FakeMyStromBulb,
    FakeMyStromPir,
    FakeMyStromSwitch,
    FakeNetwork,
    make_settings,
    settle,
    wait_until,
)

MAC = "AABBCCDDEEFF"

SessionFactory = Callable[..., Awaitable[Any]]

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def make_session(
    settings: Settings,
    transport: TransportClient,
    bus: EventBus,
    locks: DeviceLocks,
) -> AsyncIterator[SessionFactory]:
    """Factory for started, settled myStrom sessions."""
    sessions: list[MyStromSession] = []

    async def factory(
        cls: type[MyStromSession],
        address: str,
        *,
        model: str = "",
        settings_override: Settings | None = None,
    ) -> MyStromSession:
        identity = DeviceIdentity(MAC, address, cls.family, "Plug", model=model)
        session = cls(
            identity,
            settings=settings_override or settings,
            transport=transport,
            bus=bus,
            locks=locks,
        )
        sessions.append(session)
        await session.start()
        await settle(session)
        return session

    yield factory
    for session in sessions:
        await session.shutdown()


# ---------------------------------------------------------------------------
# Switch
# ---------------------------------------------------------------------------


class TestSwitch:
    """Smart plug session.

    Technique: Simulated Devices.
    """

    async def test_start_reads_report(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromSwitch("10.0.0.7", mac=MAC, relay=True, power=42.0))

        session = await make_session(MyStromSwitchSession, "10.0.0.7")

        assert session.tasks.names == ("state",)
        assert session.get_on() is True
        assert session.get_in_use() is True
        assert session.get_temperature() == 22.0

    async def test_set_on(self, fake_network: FakeNetwork, make_session: SessionFactory) -> None:
        switch = fake_network.add(FakeMyStromSwitch("10.0.0.7", mac=MAC))
        session = await make_session(MyStromSwitchSession, "10.0.0.7")

        await session.set_on(True)

        assert switch.relay is True
        assert session.get_on() is True

    @pytest.mark.parametrize(("model", "expected"), [("Zero", False), ("CH v1", False), ("", True)])
    async def test_temperature_depends_on_model(
        self,
        fake_network: FakeNetwork,
        make_session: SessionFactory,
        model: str,
        expected: bool,
    ) -> None:
        fake_network.add(FakeMyStromSwitch("10.0.0.7", mac=MAC))

        session = await make_session(MyStromSwitchSession, "10.0.0.7", model=model)

        assert session.has_temperature is expected
        assert (session.get_temperature() is not None) is expected
        assert ("sensors" in session.snapshot()) is expected

    async def test_relay_command(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        switch = fake_network.add(FakeMyStromSwitch("10.0.0.7", mac=MAC))
        session = await make_session(MyStromSwitchSession, "10.0.0.7")

        await session.apply_command("relay", {"on": "on"})

        assert switch.relay is True

    async def test_unknown_command(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromSwitch("10.0.0.7", mac=MAC))
        session = await make_session(MyStromSwitchSession, "10.0.0.7")

        with pytest.raises(InvalidCommandError):
            await session.apply_command("light", {"on": True})


# ---------------------------------------------------------------------------
# Bulb
# ---------------------------------------------------------------------------


class TestBulb:
    """Bulb and LED strip session.

    Technique: State-based Testing.
    """

    async def test_start_reads_hsv(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromBulb("10.0.0.8", mac=MAC, on=True, color="120;40;70"))

        session = await make_session(MyStromBulbSession, "10.0.0.8")

        assert session.get_on() is True
        assert (session.get_hue(), session.get_saturation(), session.get_brightness()) == (
            120,
            40,
            70,
        )

    async def test_strip_reports_rgb_with_white_channel(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromBulb("10.0.0.8", mac=MAC, mode="rgb", color="000000FF"))

        session = await make_session(MyStromBulbSession, "10.0.0.8")

        assert session.get_hue() == 240

    async def test_setters_send_whole_colour(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        bulb = fake_network.add(FakeMyStromBulb("10.0.0.8", mac=MAC))
        session = await make_session(MyStromBulbSession, "10.0.0.8")

        await session.set_hue(30)
        await session.set_saturation(150)
        await session.set_on(True)

        assert bulb.on is True
        assert bulb.color == "30;100;100"

    async def test_light_command(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        bulb = fake_network.add(FakeMyStromBulb("10.0.0.8", mac=MAC))
        session = await make_session(MyStromBulbSession, "10.0.0.8")

        await session.apply_command("light", {"on": True, "brightness": 25})

        assert bulb.color == "0;0;25"

    async def test_light_command_needs_a_field(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromBulb("10.0.0.8", mac=MAC))
        session = await make_session(MyStromBulbSession, "10.0.0.8")

        with pytest.raises(InvalidCommandError):
            await session.apply_command("light", {"speed": 1})


# ---------------------------------------------------------------------------
# Motion sensor
# ---------------------------------------------------------------------------


class TestPir:
    """Motion sensor session.

    Technique: Boundary Value Analysis.
    """

    async def test_start_reads_sensors(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC, motion=True, light=300.0))

        session = await make_session(MyStromPirSession, "10.0.0.10")

        assert session.get_motion() is True
        assert session.get_light_level() == 300.0
        assert session.get_temperature() == 20.0

    async def test_out_of_range_readings_are_clamped(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC, light=0.0, temperature=150.0))

        session = await make_session(MyStromPirSession, "10.0.0.10")

        assert session.get_light_level() == LIGHT_RANGE[0]
        assert session.get_temperature() == TEMPERATURE_RANGE[1]

    async def test_push_mode_ignores_polled_motion(
        self, fake_network: FakeNetwork, make_session: SessionFactory, bus: EventBus
    ) -> None:
        fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC, motion=True))
        push = make_settings(
            callback=CallbackSettings(enabled=False),
            polling=PollingSettings(motion_poller=False),
        )

        session = await make_session(MyStromPirSession, "10.0.0.10", settings_override=push)
        assert session.get_motion() is None

        bus.publish(MotionPush(MAC, True))
        assert session.get_motion() is True

    async def test_registers_pir_callback(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        pir = fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC))
        with_callback = make_settings(callback=CallbackSettings(host="10.0.0.2"))

        await make_session(MyStromPirSession, "10.0.0.10", settings_override=with_callback)

        await wait_until(lambda: "pir/generic" in pir.action_urls)
        assert pir.action_urls["pir/generic"] == "get://10.0.0.2:18081/button"

    async def test_unchanged_readings_are_not_announced(
        self, fake_network: FakeNetwork, make_session: SessionFactory, bus: EventBus
    ) -> None:
        fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC))
        session = await make_session(MyStromPirSession, "10.0.0.10")
        seen: list[str] = []
        bus.subscribe(StateUpdate, lambda e: seen.append(e.resource))

        await session.poll()

        assert seen == []

    async def test_accepts_no_commands(
        self, fake_network: FakeNetwork, make_session: SessionFactory
    ) -> None:
        fake_network.add(FakeMyStromPir("10.0.0.10", mac=MAC))
        session = await make_session(MyStromPirSession, "10.0.0.10")

        with pytest.raises(InvalidCommandError, match="accept no commands"):
            await session.apply_command("motion", {"on": True})


class TestClamp:
    """Range clamp helper.

    Technique: Boundary Value Analysis.
    """

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(-300.0, -273.5), (-273.5, -273.5), (25.0, 25.0), (100.0, 100.0), (101.0, 100.0)],
    )
    def test_temperature_range(self, value: float, expected: float) -> None:
        assert clamp(value, TEMPERATURE_RANGE) == expected

    def test_family_constants(self) -> None:
        assert MyStromSwitchSession.family is DeviceFamily.MYSTROM_SWITCH
        assert MyStromBulbSession.family is DeviceFamily.MYSTROM_BULB
        assert MyStromPirSession.family is DeviceFamily.MYSTROM_PIR
