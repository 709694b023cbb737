"""Resilience policies wrapping device calls.

Every policy is a call executor: ``await policy.execute(fn)`` runs the
zero-argument coroutine function *fn* under the policy's rules.
Executors nest with :func:`wrap`, outermost first::

    policy = wrap(RetryPolicy(), CircuitBreaker(clock=clock))
    info = await policy.execute(api.fetch_device_info)

Here every retry attempt traverses the breaker.  Once the breaker has
opened, attempts fail fast with :class:`CircuitOpenError` (which the
retry policy treats as retryable) until the cool-down elapses.

Policies provided:

- :class:`RetryPolicy`: bounded exponential backoff, re-raises the
  last error once the attempts are spent.
- :class:`CircuitBreaker`: opens after N consecutive failures,
  rejects calls for a cool-down, then lets one trial call through.
- :class:`SlowRetryPolicy`: unbounded backoff for the reconfiguration
  loop; a truthy result means "not done" and is retried like a failure.

Sleeping goes through an injectable ``sleep`` coroutine function and
the breaker reads a :class:`~dingzsync._clock.ClockPort`, so tests run
without real delays.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar, runtime_checkable

from dingzsync._clock import ClockPort, SystemClock
from dingzsync._errors import CircuitOpenError, TransportError
from dingzsync._settings import ResilienceSettings

T = TypeVar("T")

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
"""Coroutine function sleeping for the given number of seconds."""

# ---------------------------------------------------------------------------
# Protocol and composition
# ---------------------------------------------------------------------------


@runtime_checkable
class Policy(Protocol):
    """Call-executor contract shared by all policies."""

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T: ...


class WrappedPolicy:
    """Chain of policies, ``outer`` executing a call into ``inner``."""

    def __init__(self, outer: Policy, inner: Policy) -> None:
        self.outer = outer
        self.inner = inner

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.outer.execute(lambda: self.inner.execute(fn))

    def __repr__(self) -> str:
        return f"wrap({self.outer!r}, {self.inner!r})"


def wrap(*policies: Policy) -> Policy:
    """Compose *policies*, the first being the outermost.

    Raises:
        ValueError: When called without policies.
    """
    if not policies:
        msg = "wrap() needs at least one policy"
        raise ValueError(msg)
    composed = policies[-1]
    for policy in reversed(policies[:-1]):
        composed = WrappedPolicy(policy, composed)
    return composed


def _backoff(attempt: int, base: float, ceiling: float) -> float:
    """Exponential delay for the zero-based *attempt*, capped at *ceiling*."""
    # exponent capped at 64
    return min(ceiling, base * 2 ** min(attempt, 64))


# ---------------------------------------------------------------------------
# Bounded retry
# ---------------------------------------------------------------------------


class RetryPolicy:
    """Retry with exponential backoff, up to *max_attempts* calls.

    Only exceptions matching *retry_on* are retried; anything else
    (e.g. an :class:`~dingzsync._errors.InvalidTypeError`) propagates
    from the first attempt.

    Args:
        max_attempts: Total number of calls, including the first.
        base_delay: Delay before the second call; doubles each time.
        max_delay: Upper bound for a single delay.
        retry_on: Exception types considered transient.
        sleep: Injectable sleep coroutine function.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 20,
        base_delay: float = 0.1,
        max_delay: float = 10.0,
        retry_on: tuple[type[BaseException], ...] = (TransportError, CircuitOpenError),
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {max_attempts}"
            raise ValueError(msg)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_on = retry_on
        self._sleep = sleep

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except self.retry_on as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Giving up after %d attempts: %s", attempt, exc
                    )
                    raise
                delay = _backoff(attempt - 1, self.base_delay, self.max_delay)
                logger.debug(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay})"
        )


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(enum.Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    CLOSED passes calls through and counts consecutive failures; the
    *threshold*-th failure opens the circuit.  OPEN rejects every call
    with :class:`CircuitOpenError` without invoking it.  Once *cooldown*
    seconds have passed, the next call is let through as a trial
    (HALF_OPEN): success closes the circuit, failure reopens it for
    another cool-down.  Concurrent callers during a trial are rejected.

    Every exception counts as a failure, ``CancelledError`` excepted.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        cooldown: float = 10.0,
        clock: ClockPort | None = None,
        name: str = "",
    ) -> None:
        if threshold < 1:
            msg = f"threshold must be >= 1, got {threshold}"
            raise ValueError(msg)
        self.threshold = threshold
        self.cooldown = cooldown
        self.name = name
        self._clock = clock if clock is not None else SystemClock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN reads as HALF_OPEN."""
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await fn()
        except asyncio.CancelledError:
            if self._state is CircuitState.HALF_OPEN:
                # Trial abandoned; leave the circuit open for the next caller.
                self._state = CircuitState.OPEN
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed."""
        self._state = CircuitState.CLOSED
        self._failures = 0

    def _cooldown_elapsed(self) -> bool:
        return self._clock.now() - self._opened_at >= self.cooldown

    def _before_call(self) -> None:
        if self._state is CircuitState.CLOSED:
            return
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            logger.info("Circuit %s half-open, allowing trial call", self.name)
            self._state = CircuitState.HALF_OPEN
            return
        if self._state is CircuitState.OPEN:
            remaining = self.cooldown - (self._clock.now() - self._opened_at)
            raise CircuitOpenError(remaining)
        # HALF_OPEN with a trial already in flight
        raise CircuitOpenError(0.0)

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.info("Circuit %s closed after successful trial", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0

    def _on_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock.now()

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self._failures})"
        )


# ---------------------------------------------------------------------------
# Unbounded slow retry
# ---------------------------------------------------------------------------


class SlowRetryPolicy:
    """Retry forever with a steep backoff.

    The call is repeated whenever it raises (``CancelledError``
    excepted) or returns a truthy "not done" value.  The delay starts at
    *initial_delay*, doubles on every repetition and is capped at
    *max_delay*.  A falsy result ends the loop and is returned.
    """

    def __init__(
        self,
        *,
        initial_delay: float = 10.0,
        max_delay: float = 86400.0,
        sleep: Sleep = asyncio.sleep,
        name: str = "",
    ) -> None:
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.name = name
        self._sleep = sleep

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s failed, will retry", self.name or "Slow task")
            else:
                if not result:
                    return result
            delay = _backoff(attempt, self.initial_delay, self.max_delay)
            attempt += 1
            logger.debug("%s next run in %.0fs", self.name or "Slow task", delay)
            await self._sleep(delay)

    def __repr__(self) -> str:
        return (
            f"SlowRetryPolicy(initial_delay={self.initial_delay}, "
            f"max_delay={self.max_delay})"
        )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_breaker(
    settings: ResilienceSettings,
    *,
    clock: ClockPort | None = None,
    name: str = "",
) -> CircuitBreaker:
    """Circuit breaker configured from *settings*."""
    return CircuitBreaker(
        threshold=settings.breaker_threshold,
        cooldown=settings.breaker_cooldown,
        clock=clock,
        name=name,
    )


def build_startup_policy(
    settings: ResilienceSettings,
    breaker: CircuitBreaker,
    *,
    sleep: Sleep = asyncio.sleep,
) -> Policy:
    """Bounded retry around *breaker*, for registration-time calls."""
    retry = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        sleep=sleep,
    )
    return wrap(retry, breaker)


def build_slow_policy(
    settings: ResilienceSettings,
    *,
    sleep: Sleep = asyncio.sleep,
    name: str = "",
) -> SlowRetryPolicy:
    """Reconfiguration-loop policy configured from *settings*."""
    return SlowRetryPolicy(
        initial_delay=settings.reconcile_initial_delay,
        max_delay=settings.reconcile_max_delay,
        sleep=sleep,
        name=name,
    )
