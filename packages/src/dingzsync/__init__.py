"""dingzsync.

State synchronisation and resilience layer for dingz and myStrom
devices, projected onto MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from dingzsync._app import Bridge
from dingzsync._clock import ClockPort, SystemClock
from dingzsync._color import format_hsv, parse_hsv, rgb_to_hsv
from dingzsync._dingz import DingzSession
from dingzsync._errors import (
    CircuitOpenError,
    DeviceNotImplementedError,
    DeviceNotReachableError,
    DeviceRequestError,
    DeviceTimeoutError,
    DingzSyncError,
    ErrorPayload,
    ErrorPublisher,
    InvalidCommandError,
    InvalidTypeError,
    ModeSwitchChangedError,
    TransportError,
    UnknownChannelError,
    build_error_payload,
)
from dingzsync._events import (
    ButtonAction,
    ButtonPress,
    DeviceInfoUpdate,
    Event,
    EventBus,
    MotionPush,
    ReconfigurationRequest,
    StateUpdate,
)
from dingzsync._locks import DeviceLocks
from dingzsync._logging import JsonFormatter, configure_logging
from dingzsync._models import DeviceIdentity, Direction, HardwareConfig, moving_direction
from dingzsync._mqtt import (
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from dingzsync._mystrom import MyStromBulbSession, MyStromPirSession, MyStromSwitchSession
from dingzsync._platform import Platform
from dingzsync._policies import (
    CircuitBreaker,
    CircuitState,
    Policy,
    RetryPolicy,
    SlowRetryPolicy,
    wrap,
)
from dingzsync._reconciler import Reconciler
from dingzsync._scheduler import PollTask, TaskScope
from dingzsync._session import DeviceSession
from dingzsync._settings import (
    DeviceFamily,
    DeviceSettings,
    LoggingSettings,
    MqttSettings,
    Settings,
)
from dingzsync._strategies import Always, OnChange, PublishStrategy
from dingzsync._topology import Channel, ChannelKind, OutputKind, resolve_channels
from dingzsync._transport import Reachability, TransportClient

try:
    __version__ = version("dingzsync")
except PackageNotFoundError:
    # editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Service
    "Bridge",
    "Platform",
    # Clock
    "ClockPort",
    "SystemClock",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Transport and policies
    "CircuitBreaker",
    "CircuitState",
    "Policy",
    "Reachability",
    "RetryPolicy",
    "SlowRetryPolicy",
    "TransportClient",
    "wrap",
    # Devices
    "DeviceIdentity",
    "DeviceLocks",
    "DeviceSession",
    "DingzSession",
    "Direction",
    "HardwareConfig",
    "MyStromBulbSession",
    "MyStromPirSession",
    "MyStromSwitchSession",
    "Reconciler",
    "moving_direction",
    # Topology
    "Channel",
    "ChannelKind",
    "OutputKind",
    "resolve_channels",
    # Polling
    "Always",
    "OnChange",
    "PollTask",
    "PublishStrategy",
    "TaskScope",
    # Events
    "ButtonAction",
    "ButtonPress",
    "DeviceInfoUpdate",
    "Event",
    "EventBus",
    "MotionPush",
    "ReconfigurationRequest",
    "StateUpdate",
    # Colour
    "format_hsv",
    "parse_hsv",
    "rgb_to_hsv",
    # MQTT
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "CircuitOpenError",
    "DeviceNotImplementedError",
    "DeviceNotReachableError",
    "DeviceRequestError",
    "DeviceTimeoutError",
    "DingzSyncError",
    "ErrorPayload",
    "ErrorPublisher",
    "InvalidCommandError",
    "InvalidTypeError",
    "ModeSwitchChangedError",
    "TransportError",
    "UnknownChannelError",
    "build_error_payload",
    # Settings
    "DeviceFamily",
    "DeviceSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
