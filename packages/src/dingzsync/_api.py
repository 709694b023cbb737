"""Typed wrappers around the devices' HTTP endpoints.

Each API object is bound to one device.  It builds URLs from the
device's current address (so an address change takes effect on the
next call), passes the token and reachability flag to the shared
:class:`~dingzsync._transport.TransportClient`, and takes the
per-device lock for every read that returns composite state.

Push-callback registration lives here too: :func:`ensure_callback`
reads the action URL configured on the device and only writes a new
one when it does not already point at this bridge.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from dingzsync._color import HSV, format_hsv
from dingzsync._locks import DeviceLocks
from dingzsync._models import DeviceIdentity, HardwareConfig
from dingzsync._transport import Reachability, TransportClient

logger = logging.getLogger(__name__)

LED_RAMP_MS = 150


class DeviceApi:
    """Shared plumbing: URL building, token and reachability."""

    def __init__(
        self,
        identity: Callable[[], DeviceIdentity],
        transport: TransportClient,
        locks: DeviceLocks,
        reachability: Reachability,
    ) -> None:
        self._identity = identity
        self._transport = transport
        self._locks = locks
        self.reachability = reachability

    @property
    def mac(self) -> str:
        return self._identity().mac

    async def _get(self, path: str) -> Any:
        identity = self._identity()
        return await self._transport.fetch(
            identity.base_url + path,
            token=identity.token,
            reachability=self.reachability,
        )

    async def _post(self, path: str, body: Mapping[str, Any] | None = None) -> int:
        identity = self._identity()
        return await self._transport.fetch(
            identity.base_url + path,
            method="POST",
            token=identity.token,
            body=body,
            return_body=False,
            reachability=self.reachability,
        )

    async def _get_locked(self, path: str) -> Any:
        async with self._locks.hold(self.mac):
            return await self._get(path)

    # -- action urls --------------------------------------------------------

    async def get_action_url(self, endpoint: str) -> str:
        """Currently configured push URL of action *endpoint*."""
        body = await self._get(f"/api/v1/action/{endpoint}")
        if isinstance(body, Mapping):
            return str(body.get("url") or "")
        return str(body or "")

    async def set_action_url(self, endpoint: str, url: str) -> None:
        await self._post(f"/api/v1/action/{endpoint}", {"url": url})


class DingzApi(DeviceApi):
    """Endpoints of a dingz."""

    async def fetch_device_info(self) -> Mapping[str, Any]:
        """``{mac: {...}}`` from ``/api/v1/device``."""
        return await self._get("/api/v1/device")

    async def fetch_config(self) -> tuple[str, HardwareConfig]:
        """Identity and hardware configuration in one locked section."""
        async with self._locks.hold(self.mac):
            info = await self._get("/api/v1/device")
            inputs = await self._get("/api/v1/input_config")
            dimmers = await self._get("/api/v1/dimmer_config")
        return HardwareConfig.from_api(info, inputs, dimmers)

    async def get_input_config(self) -> Mapping[str, Any]:
        return await self._get_locked("/api/v1/input_config")

    async def get_system_config(self) -> Mapping[str, Any]:
        return await self._get("/api/v1/system_config")

    async def get_state(self) -> Mapping[str, Any]:
        """Full state snapshot: dimmers, blinds, LED and sensors."""
        return await self._get_locked("/api/v1/state")

    async def get_window_covering(self, covering_id: int) -> Mapping[str, Any]:
        """``{"target": {...}, "current": {...}}`` of one covering."""
        return await self._get_locked(f"/api/v1/shade/{covering_id}")

    async def get_motion(self) -> bool:
        body = await self._get_locked("/api/v1/motion")
        return bool(body.get("motion", False))

    async def get_temperature(self) -> float:
        body = await self._get("/api/v1/temp")
        return float(body["temperature"])

    async def get_led(self) -> Mapping[str, Any]:
        return await self._get("/api/v1/led/get")

    async def set_dimmer(self, dimmer_id: int, on: bool, level: int | None = None) -> None:
        action = "on" if on else "off"
        query = f"?value={level}" if level else ""
        await self._post(f"/api/v1/dimmer/{dimmer_id}/{action}/{query}")

    async def set_window_covering(self, covering_id: int, blind: int, lamella: int) -> None:
        await self._post(
            f"/api/v1/shade/{covering_id}",
            {"blind": blind, "lamella": lamella},
        )

    async def set_led(self, on: bool, hsv: HSV | None = None) -> None:
        body: dict[str, Any] = {"action": "on" if on else "off", "ramp": LED_RAMP_MS}
        if hsv is not None:
            body["color"] = format_hsv(*hsv)
            body["mode"] = "hsv"
        await self._post("/api/v1/led/set", body)

    async def enable_pir_callback(self) -> None:
        """Enable motion pushes on firmware that ships with them off."""
        await self._post("/api/v1/action/pir/press_release/enable")


class MyStromApi(DeviceApi):
    """Endpoints of myStrom switches, bulbs and motion sensors."""

    async def get_info(self) -> Mapping[str, Any]:
        return await self._get("/api/v1/info")

    async def get_report(self) -> Mapping[str, Any]:
        """Switch report: ``relay``, ``power`` and ``temperature``."""
        return await self._get_locked("/report")

    async def set_relay(self, on: bool) -> None:
        await self._get(f"/relay?state={int(on)}")

    async def get_bulb(self) -> Mapping[str, Any]:
        body = await self._get_locked("/api/v1/device/")
        return body.get(self.mac) or next(iter(body.values()), {})

    async def set_bulb(self, on: bool, hsv: HSV) -> None:
        await self._post(
            f"/api/v1/device/{self.mac}",
            {"action": "on" if on else "off", "color": format_hsv(*hsv), "mode": "hsv"},
        )

    async def get_sensors(self) -> Mapping[str, Any]:
        """Motion sensor readings: ``motion``, ``light``, ``temperature``."""
        return await self._get_locked("/api/v1/sensors")


async def ensure_callback(api: DeviceApi, endpoints: tuple[str, ...], url: str) -> int:
    """Point each action *endpoint* at *url* unless it already is.

    Returns:
        The number of endpoints rewritten.
    """
    target = f"get://{url}"
    rewritten = 0
    for endpoint in endpoints:
        current = await api.get_action_url(endpoint)
        if url in current:
            logger.debug("[%s] %s callback already set", api.mac, endpoint)
            continue
        logger.info(
            "[%s] setting %s callback to %s (was %r)", api.mac, endpoint, target, current
        )
        await api.set_action_url(endpoint, target)
        rewritten += 1
    return rewritten
