"""HTTP transport to the devices.

One :class:`TransportClient` (a shared ``httpx.AsyncClient``) serves
every device.  Each call applies the fixed request timeout, sends the
device token in the ``Token`` header and converts httpx failures into
the :mod:`dingzsync._errors` transport hierarchy:

====================================  ==============================
httpx failure                         raised as
====================================  ==============================
``TimeoutException``                  ``DeviceTimeoutError``
``ConnectError``                      ``DeviceNotReachableError``
HTTP status >= 400                    ``DeviceRequestError``
any other ``HTTPError``               ``TransportError``
====================================  ==============================

Timeouts and refused connections also flip the device's
:class:`Reachability` flag; the next successful call clears it.  The
transport never retries; see :mod:`dingzsync._policies`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from dingzsync._errors import (
    DeviceNotReachableError,
    DeviceRequestError,
    DeviceTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "Token"

RecoveryHook = Callable[[], None]


class Reachability:
    """Sticky, advisory reachability flag of one device.

    Set unreachable by the transport on a timeout or refused
    connection, cleared by the next successful request.  An optional
    *on_recovered* hook runs on the unreachable -> reachable edge.
    """

    def __init__(self, name: str, *, on_recovered: RecoveryHook | None = None) -> None:
        self.name = name
        self.on_recovered = on_recovered
        self._reachable = True

    @property
    def is_reachable(self) -> bool:
        return self._reachable

    def mark_unreachable(self, reason: str) -> None:
        if self._reachable:
            logger.warning("[%s] device unreachable: %s", self.name, reason)
        self._reachable = False

    def mark_reachable(self) -> None:
        if self._reachable:
            return
        self._reachable = True
        logger.info("[%s] device recovered", self.name)
        if self.on_recovered is not None:
            self.on_recovered()


class TransportClient:
    """Issues single HTTP requests to devices.

    Args:
        timeout: Fixed per-request timeout in seconds.
        transport: Optional httpx transport; tests pass an
            ``httpx.MockTransport``.
    """

    def __init__(
        self,
        *,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        token: str | None = None,
        body: Mapping[str, Any] | None = None,
        return_body: bool = True,
        reachability: Reachability | None = None,
    ) -> Any:
        """Issue one request.

        Returns:
            The decoded JSON body (plain text when the body is not
            JSON) when *return_body* is true, the HTTP status code
            otherwise.

        Raises:
            TransportError: One of its subclasses, classified as
                described in the module docstring.
        """
        headers = {TOKEN_HEADER: token} if token else None
        data = {k: str(v) for k, v in body.items()} if body is not None else None
        try:
            response = await self._client.request(
                method,
                url,
                headers=headers,
                data=data,
            )
        except httpx.TimeoutException as exc:
            if reachability is not None:
                reachability.mark_unreachable("timeout")
            msg = f"{method} {url} timed out"
            raise DeviceTimeoutError(msg, url=url) from exc
        except httpx.ConnectError as exc:
            if reachability is not None:
                reachability.mark_unreachable(str(exc) or "connection failed")
            msg = f"{method} {url} could not connect: {exc}"
            raise DeviceNotReachableError(msg, url=url) from exc
        except httpx.HTTPError as exc:
            msg = f"{method} {url} failed: {exc}"
            raise TransportError(msg, url=url) from exc

        if reachability is not None:
            reachability.mark_reachable()

        if response.is_error:
            msg = f"{method} {url} returned HTTP {response.status_code}"
            raise DeviceRequestError(msg, url=url, status_code=response.status_code)

        if not return_body:
            return response.status_code
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()
