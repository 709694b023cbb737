"""Bridge configuration via pydantic-settings.

Configuration is loaded from ``DINGZSYNC_``-prefixed environment
variables and/or a ``.env`` file.  Nested models use ``__`` as the
delimiter, e.g. ``DINGZSYNC_POLLING__STATE_INTERVAL=2.5``.  The device
list is a JSON array::

    DINGZSYNC_DEVICES='[{"address": "192.168.1.20", "name": "Hall"}]'

All durations are in **seconds**.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Devices
# -------------------------------------------------------------------


class DeviceFamily(StrEnum):
    """Accessory behaviour family selected for a device."""

    DINGZ = "dingz"
    MYSTROM_SWITCH = "mystrom_switch"
    MYSTROM_BULB = "mystrom_bulb"
    MYSTROM_PIR = "mystrom_pir"


class DeviceSettings(BaseModel):
    """One statically configured device."""

    address: str = Field(description="IP address or hostname of the device.")
    name: str = Field(
        default="Unnamed dingz",
        description="Human-readable name used in logs and MQTT payloads.",
    )
    token: SecretStr | None = Field(
        default=None,
        description=(
            "Device API token.  Falls back to ``global_token`` when unset."
        ),
    )
    family: DeviceFamily = Field(
        default=DeviceFamily.DINGZ,
        description="Which device family lives at this address.",
    )


# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings, nested via composition)
# -------------------------------------------------------------------


class PollingSettings(BaseModel):
    """Poll cadences per sub-resource class.

    Environment variables::

        DINGZSYNC_POLLING__STATE_INTERVAL=5
        DINGZSYNC_POLLING__MOTION_POLLER=false
    """

    state_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Bulk output state (dimmers, light level) poll interval.",
    )
    window_covering_interval: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Per window-covering position poll interval.",
    )
    motion_interval: Annotated[float, Field(gt=0)] = Field(
        default=2.0,
        description="Motion sensor poll interval (poll mode only).",
    )
    temperature_interval: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Temperature sensor poll interval.",
    )
    led_interval: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="LED colour poll interval.",
    )
    motion_poller: bool = Field(
        default=True,
        description=(
            "Poll motion sensors.  When false the devices push motion "
            "start/stop events to the callback listener instead."
        ),
    )


class ResilienceSettings(BaseModel):
    """Retry, circuit-breaker and reconciliation tuning."""

    retry_max_attempts: Annotated[int, Field(ge=1)] = Field(
        default=20,
        description="Attempts before a registration call gives up.",
    )
    retry_base_delay: Annotated[float, Field(gt=0)] = Field(
        default=0.1,
        description="First retry delay; doubles on each attempt.",
    )
    retry_max_delay: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Upper bound for the retry delay.",
    )
    breaker_threshold: Annotated[int, Field(ge=1)] = Field(
        default=5,
        description="Consecutive failures that open the circuit.",
    )
    breaker_cooldown: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Seconds an open circuit rejects calls before a trial.",
    )
    reconcile_initial_delay: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="First delay of the reconfiguration loop.",
    )
    reconcile_max_delay: Annotated[float, Field(gt=0)] = Field(
        default=86400.0,
        description="Ceiling of the reconfiguration loop delay.",
    )


class HttpSettings(BaseModel):
    """Device HTTP client settings."""

    timeout: Annotated[float, Field(gt=0)] = Field(
        default=2.0,
        description="Fixed per-request timeout.",
    )


class CallbackSettings(BaseModel):
    """Local listener receiving button and motion pushes."""

    enabled: bool = Field(
        default=True,
        description="Run the listener and register it on the devices.",
    )
    host: str = Field(
        default="",
        description=(
            "Address the devices use to reach this bridge.  When empty, "
            "callback registration on the devices is skipped."
        ),
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=18081,
        description="Listener port.",
    )
    bind: str = Field(
        default="0.0.0.0",  # noqa: S104
        description="Interface the listener binds to.",
    )


class DiscoverySettings(BaseModel):
    """UDP announcement listener."""

    enabled: bool = Field(
        default=False,
        description="Add dingz devices announcing themselves on the LAN.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=7979,
        description="UDP port of the device announcements.",
    )


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        DINGZSYNC_MQTT__HOST=broker.local
        DINGZSYNC_MQTT__PORT=1883
        DINGZSYNC_MQTT__TOPIC_PREFIX=home/dingz
    """

    enabled: bool = Field(
        default=True,
        description="Publish state to MQTT.  When false nothing is sent.",
    )
    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, 'dingzsync-{hex8}' is "
            "generated at startup."
        ),
    )
    qos: Literal[0, 1, 2] = Field(
        default=1,
        description="QoS used for subscriptions.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait before reconnecting to the broker.",
    )
    topic_prefix: str = Field(
        default="dingzsync",
        description="Root prefix for all MQTT topics.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    ``format`` selects structured JSON lines (default) or a
    human-readable text format for terminal use.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the dingzsync bridge.

    Example ``.env``::

        DINGZSYNC_DEVICES='[{"address": "192.168.1.20"}]'
        DINGZSYNC_GLOBAL_TOKEN=secret
        DINGZSYNC_CALLBACK__HOST=192.168.1.5
        DINGZSYNC_MQTT__HOST=broker.local
        DINGZSYNC_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="DINGZSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    devices: list[DeviceSettings] = Field(
        default_factory=list,
        description="Statically configured devices.",
    )
    global_token: SecretStr | None = Field(
        default=None,
        description="Token used for devices without their own token.",
    )
    polling: PollingSettings = Field(
        default_factory=PollingSettings,
        description="Poll cadences.",
    )
    resilience: ResilienceSettings = Field(
        default_factory=ResilienceSettings,
        description="Retry and circuit-breaker tuning.",
    )
    http: HttpSettings = Field(
        default_factory=HttpSettings,
        description="Device HTTP client settings.",
    )
    callback: CallbackSettings = Field(
        default_factory=CallbackSettings,
        description="Push callback listener.",
    )
    discovery: DiscoverySettings = Field(
        default_factory=DiscoverySettings,
        description="UDP device discovery.",
    )
    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )

    def token_for(self, device: DeviceSettings) -> str | None:
        """Return the effective plain-text token for *device*."""
        secret = device.token if device.token is not None else self.global_token
        return secret.get_secret_value() if secret is not None else None

    @property
    def callback_url(self) -> str | None:
        """The listener endpoint as the devices should call it.

        ``None`` when no advertised host is configured.
        """
        if not self.callback.enabled or not self.callback.host:
            return None
        return f"{self.callback.host}:{self.callback.port}/button"
