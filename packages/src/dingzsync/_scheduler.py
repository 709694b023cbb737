"""Periodic poll tasks and their owner.

:class:`PollTask` is a handle on one asyncio task that calls a tick
coroutine function every *interval* seconds, first tick immediately.
A tick that raises is logged and skipped; the loop keeps going.
Errors are logged once per exception type, with an INFO line when the
poll recovers, so an unreachable device does not flood the log.

:class:`TaskScope` owns every task of one device session: named poll
tasks plus anonymous one-shot tasks (an immediate refresh after a
button press, the reconfiguration loop).  A poll task must be
cancelled before the channel it serves is removed, and
:meth:`TaskScope.shutdown` cancels everything before the device is
deregistered.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class PollTask:
    """One periodic fetch, bound to one resource and one cadence."""

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Tick,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            msg = f"Poll interval must be positive, got {interval}"
            raise ValueError(msg)
        self.name = name
        self.interval = interval
        self._tick = tick
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            msg = f"Poll task '{self.name}' already running"
            raise RuntimeError(msg)
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.name}")

    async def cancel(self) -> None:
        """Cancel the task and wait until it has stopped.  Idempotent."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        last_error_type: type[Exception] | None = None
        while True:
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.failures += 1
                if type(exc) is not last_error_type:
                    logger.error("Poll '%s' error: %s", self.name, exc)
                else:
                    logger.debug("Poll '%s' still failing: %s", self.name, exc)
                last_error_type = type(exc)
            else:
                if last_error_type is not None:
                    logger.info("Poll '%s' recovered", self.name)
                    last_error_type = None
            self.ticks += 1
            await self._sleep(self.interval)

    def __repr__(self) -> str:
        state = "running" if self.running else "stopped"
        return f"PollTask({self.name!r}, interval={self.interval}, {state})"


class TaskScope:
    """All tasks owned by one device session."""

    def __init__(self, owner: str, *, sleep: Sleep = asyncio.sleep) -> None:
        self.owner = owner
        self._sleep = sleep
        self._polls: dict[str, PollTask] = {}
        self._oneshots: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def names(self) -> tuple[str, ...]:
        """Names of the registered poll tasks, in start order."""
        return tuple(self._polls)

    def __contains__(self, name: object) -> bool:
        return name in self._polls

    def get(self, name: str) -> PollTask | None:
        return self._polls.get(name)

    def start_poll(self, name: str, interval: float, tick: Tick) -> PollTask:
        """Create and start the poll task *name*.

        Raises:
            RuntimeError: After :meth:`shutdown`.
            ValueError: If a task with that name is registered.
        """
        self._check_open()
        if name in self._polls:
            msg = f"{self.owner}: poll task '{name}' already registered"
            raise ValueError(msg)
        poll = PollTask(f"{self.owner}/{name}", interval, tick, sleep=self._sleep)
        self._polls[name] = poll
        poll.start()
        logger.debug("%s: started poll '%s' every %.1fs", self.owner, name, interval)
        return poll

    async def cancel(self, name: str) -> bool:
        """Cancel and forget the poll task *name*.

        Returns:
            ``False`` if no such task was registered.
        """
        poll = self._polls.pop(name, None)
        if poll is None:
            return False
        await poll.cancel()
        logger.debug("%s: cancelled poll '%s'", self.owner, name)
        return True

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run *coro* as a tracked one-shot task.

        Its exception, if any, is logged when it finishes.
        """
        if self._closed:
            coro.close()
            msg = f"{self.owner}: task scope is shut down"
            raise RuntimeError(msg)
        task = asyncio.create_task(coro, name=f"{self.owner}:{name}")
        self._oneshots.add(task)
        task.add_done_callback(self._oneshot_done)
        return task

    def _oneshot_done(self, task: asyncio.Task[Any]) -> None:
        self._oneshots.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Task '%s' failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def shutdown(self) -> None:
        """Cancel every owned task and wait for all of them."""
        self._closed = True
        polls = list(self._polls.values())
        self._polls.clear()
        for poll in polls:
            await poll.cancel()

        tasks = [t for t in self._oneshots if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)

    def _check_open(self) -> None:
        if self._closed:
            msg = f"{self.owner}: task scope is shut down"
            raise RuntimeError(msg)
