"""LAN discovery of dingz devices.

dingz and myStrom devices broadcast a short UDP announcement on port
7979 every few seconds.  The first six bytes are the MAC address; the
low twelve bits of the big-endian 16-bit word at offset 6 are the
device type code.  Announcing dingz devices are registered through
:meth:`~dingzsync._platform.Platform.add_device`; myStrom devices need
an explicit ``family`` and are only logged.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from dingzsync._models import DeviceType, normalize_mac
from dingzsync._settings import DeviceSettings

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 7979
DISCOVERED_NAME = "Unnamed dingz"

_HEADER = struct.Struct(">6sh")


@dataclass(frozen=True, slots=True)
class Announcement:
    mac: str
    type_code: int
    address: str


def decode_announcement(data: bytes, address: str) -> Announcement:
    """Decode one UDP announcement.

    Raises:
        ValueError: If *data* is shorter than eight bytes.
    """
    if len(data) < _HEADER.size:
        msg = f"Announcement too short: {len(data)} bytes"
        raise ValueError(msg)
    mac, raw_type = _HEADER.unpack_from(data)
    return Announcement(normalize_mac(mac.hex()), 0xFFF & raw_type, address)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Hands every decodable datagram to *on_announcement*."""

    def __init__(self, on_announcement: Callable[[Announcement], None]) -> None:
        self._on_announcement = on_announcement

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            announcement = decode_announcement(data, addr[0])
        except ValueError as exc:
            logger.debug("Ignoring datagram from %s: %s", addr[0], exc)
            return
        self._on_announcement(announcement)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)


class DeviceDiscovery:
    """Listens for announcements and registers new dingz devices.

    Args:
        register: Coroutine function registering a device
            (``Platform.add_device``).
        known: Predicate telling whether a MAC is already registered.
        port: UDP port to listen on.
    """

    def __init__(
        self,
        register: Callable[[DeviceSettings], Awaitable[object]],
        known: Callable[[str], bool],
        *,
        port: int = DISCOVERY_PORT,
    ) -> None:
        self._register = register
        self._known = known
        self.port = port
        self._transport: asyncio.DatagramTransport | None = None
        self._tasks: set[asyncio.Task[object]] = set()
        self._in_progress: set[str] = set()

    def on_announcement(self, announcement: Announcement) -> None:
        if announcement.type_code == DeviceType.DINGZ:
            if self._known(announcement.mac) or announcement.mac in self._in_progress:
                return
            logger.info(
                "Discovered dingz %s at %s", announcement.mac, announcement.address
            )
            self._in_progress.add(announcement.mac)
            task = asyncio.create_task(self._add(announcement))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            try:
                kind = DeviceType(announcement.type_code).name
            except ValueError:
                kind = f"unknown type {announcement.type_code:x}"
            logger.debug("Ignoring %s at %s", kind, announcement.address)

    async def _add(self, announcement: Announcement) -> None:
        try:
            await self._register(
                DeviceSettings(address=announcement.address, name=DISCOVERED_NAME)
            )
        except Exception as exc:
            logger.error(
                "Could not add discovered dingz at %s: %s", announcement.address, exc
            )
        finally:
            self._in_progress.discard(announcement.mac)

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self.on_announcement),
            local_addr=("0.0.0.0", self.port),
            reuse_port=True,
        )
        self._transport = transport
        logger.info("Listening for device announcements on UDP %d", self.port)

    async def stop(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
