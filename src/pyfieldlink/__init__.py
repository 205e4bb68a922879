"""pyfieldlink - Async MQTT gateway for remote field devices."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfieldlink")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfieldlink.config import BrokerOptions, GatewayConfig, ReconnectPolicy
from pyfieldlink.connection import ConnectionState
from pyfieldlink.events import EventBus, GatewayEvent
from pyfieldlink.exceptions import (
    CommandError,
    CommandTimeoutError,
    ConfigError,
    ConnectionLostError,
    FieldLinkError,
    PublishError,
    ReconnectExhaustedError,
)
from pyfieldlink.gateway import DeviceGateway
from pyfieldlink.models import DeviceRecord, InboundMessage

__all__ = [
    "__version__",
    "BrokerOptions",
    "CommandError",
    "CommandTimeoutError",
    "ConfigError",
    "ConnectionLostError",
    "ConnectionState",
    "DeviceGateway",
    "DeviceRecord",
    "EventBus",
    "FieldLinkError",
    "GatewayConfig",
    "GatewayEvent",
    "InboundMessage",
    "PublishError",
    "ReconnectExhaustedError",
    "ReconnectPolicy",
]
