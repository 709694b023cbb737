"""Exception taxonomy and structured error publication.

Exceptions
----------

::

    DingzSyncError
    ├── TransportError               ← one HTTP call failed
    │   ├── DeviceTimeoutError       ← no answer within the timeout
    │   ├── DeviceNotReachableError  ← connection refused / host down
    │   └── DeviceRequestError       ← device answered with HTTP >= 400
    ├── CircuitOpenError             ← breaker rejected the call unsent
    ├── InvalidTypeError             ← wrong device family at an address
    ├── DeviceNotImplementedError    ← device type has no session class
    ├── ModeSwitchChangedError       ← mode switch moved at runtime
    ├── UnknownChannelError          ← channel absent from the topology
    └── InvalidCommandError          ← malformed MQTT command

Transport errors and open circuits are retried by the resilience
policies; everything else propagates to the caller untouched.

Publication
-----------

Errors seen by the MQTT bridge are converted into JSON payloads and
published, not retained, to::

    {prefix}/error          ← all errors
    {prefix}/{mac}/error    ← errors attributable to one device

Publication is fire-and-forget: failures are logged, never raised.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from dingzsync._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DingzSyncError(Exception):
    """Base class for all bridge errors."""


class TransportError(DingzSyncError):
    """A single HTTP request to a device failed."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class DeviceTimeoutError(TransportError):
    """The device did not answer within the request timeout."""


class DeviceNotReachableError(TransportError):
    """The connection to the device could not be established."""


class DeviceRequestError(TransportError):
    """The device answered with an HTTP error status."""

    def __init__(self, message: str, *, url: str, status_code: int) -> None:
        super().__init__(message, url=url)
        self.status_code = status_code


class CircuitOpenError(DingzSyncError):
    """The circuit breaker is open and rejected the call."""

    def __init__(self, retry_in: float) -> None:
        super().__init__(f"Circuit open, next trial in {retry_in:.1f}s")
        self.retry_in = retry_in


class InvalidTypeError(DingzSyncError):
    """The device at an address is not of the expected family."""


class DeviceNotImplementedError(DingzSyncError):
    """The device type is recognised but not supported."""


class ModeSwitchChangedError(DingzSyncError):
    """The mode switch changed at runtime; topology migration is unsupported."""

    def __init__(self, mac: str, old: int, new: int) -> None:
        super().__init__(
            f"Mode switch of {mac} changed from {old} to {new}; "
            "re-register the device to apply the new layout"
        )
        self.mac = mac
        self.old = old
        self.new = new


class UnknownChannelError(DingzSyncError, LookupError):
    """A getter or setter addressed a channel the device does not have."""


class InvalidCommandError(DingzSyncError, ValueError):
    """An inbound command payload could not be interpreted."""


ERROR_TYPE_MAP: dict[type[Exception], str] = {
    TransportError: "transport",
    DeviceTimeoutError: "timeout",
    DeviceNotReachableError: "unreachable",
    DeviceRequestError: "http_error",
    CircuitOpenError: "circuit_open",
    InvalidTypeError: "invalid_type",
    DeviceNotImplementedError: "not_implemented",
    ModeSwitchChangedError: "unsupported_transition",
    UnknownChannelError: "unknown_channel",
    InvalidCommandError: "invalid_command",
}
"""Default exception-to-``error_type`` mapping used by the bridge."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not matched.
    Unmapped types fall back to ``"error"``.
    """
    resolved_map = error_type_map if error_type_map is not None else ERROR_TYPE_MAP
    error_type = resolved_map.get(type(error), "error")
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to MQTT.

    Args:
        mqtt: MQTT port used for publishing.
        topic_prefix: Base prefix for error topics.
        error_type_map: Mapping from exception types to ``error_type``
            strings.
        clock: Optional wall-clock callable for deterministic tests.
    """

    mqtt: MqttPort
    topic_prefix: str
    error_type_map: dict[type[Exception], str] = field(
        default_factory=lambda: dict(ERROR_TYPE_MAP),
    )
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        device: str | None = None,
    ) -> None:
        """Build an error payload and publish it to MQTT.

        Always publishes to ``{topic_prefix}/error``; when *device* is
        given, also to ``{topic_prefix}/{device}/error``.
        """
        try:
            payload = build_error_payload(
                error,
                error_type_map=self.error_type_map,
                device=device,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception(
                "Failed to build error payload for %r (device=%s)",
                error,
                device,
            )
            return

        logger.warning(
            "Publishing error: %s (type=%s, device=%s)",
            payload.message,
            payload.error_type,
            device,
        )
        await self._safe_publish(f"{self.topic_prefix}/error", payload_json)
        if device is not None:
            await self._safe_publish(
                f"{self.topic_prefix}/{device}/error",
                payload_json,
            )

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
