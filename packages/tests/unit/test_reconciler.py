"""Unit tests for dingzsync._reconciler: runtime reconfiguration.

Test Techniques Used:
    - Simulated Devices: the installer changes the FakeDingz between runs
    - Decision Table Testing: sensor, mode, input and output changes
    - State-based Testing: channel map and poll set after a run
    - Error Condition Testing: mode switch changes are reported, not applied
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from dingzsync._dingz import DingzSession
from dingzsync._errors import InvalidTypeError, ModeSwitchChangedError
from dingzsync._events import EventBus, ReconfigurationRequest
from dingzsync._locks import DeviceLocks
from dingzsync._models import DeviceIdentity
from dingzsync._settings import (
    CallbackSettings,
    DeviceFamily,
    ResilienceSettings,
    Settings,
)
from dingzsync._transport import TransportClient
from dingzsync.testing import FakeDingz, FakeNetwork, make_settings, wait_until

MAC = "AABBCCDDEEFF"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def dingz(fake_network: FakeNetwork) -> FakeDingz:
    return fake_network.add(FakeDingz("10.0.0.5", mac=MAC))


def _session(
    settings: Settings, transport: TransportClient, bus: EventBus, locks: DeviceLocks
) -> DingzSession:
    return DingzSession(
        DeviceIdentity(MAC, "10.0.0.5", DeviceFamily.DINGZ, "Hall"),
        settings=settings,
        transport=transport,
        bus=bus,
        locks=locks,
    )


@pytest.fixture
async def session(
    dingz: FakeDingz,
    settings: Settings,
    transport: TransportClient,
    bus: EventBus,
    locks: DeviceLocks,
) -> AsyncIterator[DingzSession]:
    """Session with its channels synced but no background tasks running.

    The reconciler is driven by hand through ``run_once``.
    """
    session = _session(settings, transport, bus, locks)
    _, config = await session.api.fetch_config()
    session.config = config
    await session.sync_channels(config)
    if config.has_pir:
        session.enable_motion()
    yield session
    await session.shutdown()


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


class TestUnchanged:
    """Nothing changed on the device.

    Technique: State-based Testing.
    """

    async def test_run_keeps_channels(self, session: DingzSession) -> None:
        before = dict(session.channels)

        assert await session.reconciler.run_once() is True

        assert session.channels == before
        assert session.reconciler.runs == 1

    async def test_first_run_without_config_syncs(
        self,
        dingz: FakeDingz,
        settings: Settings,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
    ) -> None:
        session = _session(settings, transport, bus, locks)
        try:
            await session.reconciler.run_once()

            assert len(session.channels) == 4
            assert session.config is not None
        finally:
            await session.shutdown()


class TestMotionSensor:
    """Motion sensor fitted or removed.

    Technique: Decision Table Testing.
    """

    async def test_fitted_sensor_starts_motion_poll(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.has_pir = True

        await session.reconciler.run_once()

        assert session.has_motion
        assert "motion" in session.tasks
        assert session.config is not None and session.config.has_pir

    async def test_removed_sensor_stops_motion_poll(
        self,
        dingz: FakeDingz,
        settings: Settings,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
    ) -> None:
        dingz.has_pir = True
        session = _session(settings, transport, bus, locks)
        _, config = await session.api.fetch_config()
        session.config = config
        session.enable_motion()
        try:
            dingz.has_pir = False

            await session.reconciler.run_once()

            assert not session.has_motion
            assert "motion" not in session.tasks
            assert session.get_motion() is None
        finally:
            await session.shutdown()

    async def test_fitted_sensor_registers_pir_callback(
        self,
        dingz: FakeDingz,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
    ) -> None:
        settings = make_settings(callback=CallbackSettings(host="10.0.0.2"))
        session = _session(settings, transport, bus, locks)
        _, config = await session.api.fetch_config()
        session.config = config
        try:
            dingz.has_pir = True

            await session.reconciler.run_once()

            assert dingz.action_urls["pir/single"] == "get://10.0.0.2:18081/button"
        finally:
            await session.shutdown()


class TestModeSwitch:
    """Mode switch moved at runtime.

    Technique: Error Condition Testing.
    """

    async def test_mode_change_raises(self, dingz: FakeDingz, session: DingzSession) -> None:
        dingz.mode = 1

        with pytest.raises(ModeSwitchChangedError) as exc_info:
            await session.reconciler.run_once()

        assert (exc_info.value.old, exc_info.value.new) == (3, 1)

    async def test_channels_stay_but_config_is_stored(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.mode = 1

        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()

        assert list(session.channels) == ["dimmer-0", "dimmer-1", "dimmer-2", "dimmer-3"]
        assert session.config is not None and session.config.mode == 1

    async def test_error_is_reported_once(self, dingz: FakeDingz, session: DingzSession) -> None:
        dingz.mode = 1
        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()

        assert await session.reconciler.run_once() is True

    async def test_sensor_change_applies_before_mode_error(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.mode = 1
        dingz.has_pir = True

        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()

        assert session.has_motion

    async def test_input_change_applies_before_mode_error(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.mode = 1
        dingz.input_active = True

        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()

        assert "dimmer-0" not in session.channels
        assert 0 not in session.dimmers
        assert await session.reconciler.run_once() is True

    async def test_layout_survives_later_reconfiguration(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.mode = 0
        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()
        dingz.outputs = ["linear", "linear", "non_dimmable", "linear"]

        await session.reconciler.run_once()

        assert list(session.channels) == ["dimmer-0", "dimmer-1", "dimmer-2", "dimmer-3"]
        assert session.channels["dimmer-2"].dimmable is False
        assert session.layout_mode == 3

    async def test_switching_back_is_not_an_error(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.mode = 1
        with pytest.raises(ModeSwitchChangedError):
            await session.reconciler.run_once()
        dingz.mode = 3

        assert await session.reconciler.run_once() is True
        assert session.config is not None and session.config.mode == 3


class TestForeignDevice:
    """Another device took over the address.

    Technique: Error Condition Testing.
    """

    async def test_foreign_config_is_rejected(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        before = session.config
        dingz.mac = "112233445566"
        dingz.input_active = True

        with pytest.raises(InvalidTypeError, match="reports MAC 112233445566"):
            await session.reconciler.run_once()

        assert session.config is before
        assert "dimmer-0" in session.channels


class TestInputsAndOutputs:
    """Local input and output type changes.

    Technique: Decision Table Testing.
    """

    async def test_activated_input_removes_first_dimmer(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.input_active = True

        await session.reconciler.run_once()

        assert "dimmer-0" not in session.channels
        assert 0 not in session.dimmers

    async def test_deactivated_input_restores_dimmer(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.input_active = True
        await session.reconciler.run_once()
        dingz.input_active = False

        await session.reconciler.run_once()

        assert "dimmer-0" in session.channels

    async def test_input_is_ignored_without_input_dimmer(
        self,
        dingz: FakeDingz,
        settings: Settings,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
    ) -> None:
        dingz.mode = 0
        session = _session(settings, transport, bus, locks)
        _, config = await session.api.fetch_config()
        session.config = config
        await session.sync_channels(config)
        try:
            dingz.input_active = True

            await session.reconciler.run_once()

            assert list(session.channels) == ["blind-0", "blind-1"]
            assert session.tasks.names == ("blind-0", "blind-1")
        finally:
            await session.shutdown()

    async def test_output_types_are_applied(
        self, dingz: FakeDingz, session: DingzSession
    ) -> None:
        dingz.outputs = ["linear", "not_connected", "non_dimmable", "linear"]

        await session.reconciler.run_once()

        assert "dimmer-1" not in session.channels
        assert session.channels["dimmer-2"].dimmable is False


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    """Slow loop and on-demand runs.

    Technique: State-based Testing.
    """

    async def test_run_forever_survives_mode_change(
        self,
        dingz: FakeDingz,
        transport: TransportClient,
        bus: EventBus,
        locks: DeviceLocks,
    ) -> None:
        settings = make_settings(
            callback=CallbackSettings(enabled=False),
            resilience=ResilienceSettings(
                reconcile_initial_delay=0.001, reconcile_max_delay=0.001
            ),
        )
        session = _session(settings, transport, bus, locks)
        _, config = await session.api.fetch_config()
        session.config = config
        await session.sync_channels(config)
        dingz.mode = 2
        try:
            session.tasks.spawn("reconcile", session.reconciler.run_forever())

            await wait_until(lambda: session.reconciler.runs >= 3)

            assert session.config is not None and session.config.mode == 2
        finally:
            await session.shutdown()

    async def test_reconfiguration_request_triggers_a_run(
        self, dingz: FakeDingz, session: DingzSession, bus: EventBus
    ) -> None:
        session._subscribe(ReconfigurationRequest, session._on_reconfiguration_request)
        dingz.input_active = True

        bus.publish(ReconfigurationRequest(MAC))

        await wait_until(lambda: "dimmer-0" not in session.channels)
        assert session.reconciler.runs == 1
