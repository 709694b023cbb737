"""Slow-cadence reconfiguration of a dingz session.

The installer can flip hardware settings after registration: fit or
remove the motion sensor, activate the local input, change output
types.  :class:`Reconciler` re-reads the configuration and adjusts
the session's channels to match.  Changing the mode switch is not
supported at runtime: the channels keep the layout they were built
for, and a new switch position is reported as
:class:`~dingzsync._errors.ModeSwitchChangedError` once the other
differences have been applied.

Whatever a run does, the fetched configuration replaces the previous
snapshot afterwards, so the next run diffs against what the device
reported last.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from dingzsync._errors import InvalidTypeError, ModeSwitchChangedError
from dingzsync._policies import SlowRetryPolicy
from dingzsync._topology import has_input_dimmer

if TYPE_CHECKING:
    from dingzsync._dingz import DingzSession

logger = logging.getLogger(__name__)


class Reconciler:
    """Keeps one session's channel map in line with its hardware."""

    def __init__(self, session: DingzSession, policy: SlowRetryPolicy) -> None:
        self._session = session
        self._policy = policy
        self._lock = asyncio.Lock()
        self.runs = 0

    async def run_once(self) -> bool:
        """Fetch the configuration once and apply the differences.

        Returns:
            ``True``: there is always another run.

        Raises:
            InvalidTypeError: If another device now answers at the
                address.  Nothing is stored.
            ModeSwitchChangedError: If the mode switch moved away from
                the layout.  The new configuration is stored all the same.
        """
        async with self._lock:
            session = self._session
            mac, new = await session.api.fetch_config()
            if mac != session.mac:
                msg = (
                    f"Device at {session.identity.address} reports MAC {mac}, "
                    f"expected {session.mac}"
                )
                raise InvalidTypeError(msg)
            old = session.config
            self.runs += 1
            try:
                if old is None:
                    await session.sync_channels(new)
                    return True

                if new.has_pir != old.has_pir:
                    if new.has_pir:
                        logger.info("[%s] motion sensor fitted", session.name)
                        session.enable_motion()
                    else:
                        logger.info("[%s] motion sensor removed", session.name)
                        await session.disable_motion()
                    session.config = new
                    if session.settings.callback_url:
                        await session.register_callback()

                layout = session.layout_mode if session.layout_mode is not None else old.mode
                input_changed = new.input_active != old.input_active and has_input_dimmer(
                    layout
                )
                if input_changed or new.outputs != old.outputs:
                    added, removed = await session.sync_channels(new)
                    logger.info(
                        "[%s] channels reconfigured: +%s -%s",
                        session.name,
                        [c.key for c in added],
                        [c.key for c in removed],
                    )

                if new.mode != old.mode and new.mode != layout:
                    raise ModeSwitchChangedError(session.mac, layout, new.mode)
            finally:
                session.config = new
            return True

    async def run_forever(self) -> None:
        """Reconcile now, then again at the slow cadence, until cancelled."""
        await self._policy.execute(self._cycle)

    async def _cycle(self) -> bool:
        try:
            return await self.run_once()
        except ModeSwitchChangedError as exc:
            logger.error("[%s] %s", self._session.name, exc)
            return True
