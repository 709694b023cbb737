"""Polling helper for tests that depend on background tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


async def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float = 2.0,
    interval: float = 0.001,
) -> None:
    """Yield to the loop until *predicate* holds.

    Raises:
        TimeoutError: If it does not hold within *timeout* seconds.
    """
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(interval)


async def settle(session: object, *, timeout: float = 2.0) -> None:
    """Wait until every poll of *session* ticked and its first reconcile ran."""
    tasks = session.tasks  # type: ignore[attr-defined]
    reconciler = getattr(session, "reconciler", None)

    def done() -> bool:
        polls = [tasks.get(name) for name in tasks.names]
        ticked = all(poll is not None and poll.ticks >= 1 for poll in polls)
        return ticked and (reconciler is None or reconciler.runs >= 1)

    await wait_until(done, timeout=timeout)
