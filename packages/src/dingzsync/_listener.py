"""HTTP listener for the devices' push callbacks.

The devices are configured (see :func:`~dingzsync._api.ensure_callback`)
to call ``http://<host>:<port>/button`` on button presses and motion
start/stop.  Parameters arrive either in the query string (GET) or as
a form body (POST):

- ``mac``: reporting device;
- ``action``: a :class:`~dingzsync._events.ButtonAction` code;
- ``index`` or ``button``: button id (optional for motion sensors).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from aiohttp import web

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/button"


class ActionHandler(Protocol):
    """Receives decoded push callbacks (the platform)."""

    def handle_action(self, mac: str, action: str, button: str | None = None) -> bool: ...


class CallbackListener:
    """aiohttp server accepting push callbacks on :data:`CALLBACK_PATH`."""

    def __init__(self, handler: ActionHandler, *, host: str = "0.0.0.0", port: int = 18081) -> None:
        self._handler = handler
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(CALLBACK_PATH, self.handle_callback)
        app.router.add_post(CALLBACK_PATH, self.handle_callback)
        return app

    async def handle_callback(self, request: web.Request) -> web.Response:
        params: Mapping[str, str] = request.query
        if request.method == "POST" and request.can_read_body:
            form = await request.post()
            params = {**request.query, **{k: str(v) for k, v in form.items()}}

        mac = params.get("mac")
        action = params.get("action")
        if not mac or not action:
            return web.json_response({"error": "mac and action are required"}, status=400)

        button = params.get("index") or params.get("button")
        logger.debug("Callback from %s: action=%s button=%s", mac, action, button)
        accepted = self._handler.handle_action(mac, action, button)
        return web.json_response({"accepted": accepted})

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Callback listener on http://%s:%d%s", self.host, self.port, CALLBACK_PATH)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info("Callback listener stopped")
