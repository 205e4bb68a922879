"""Internal constants shared across the library."""

TOPIC_ROOT = "device"
COMMAND_CATEGORY = "command"
CORRELATION_KEY = "messageId"
SOURCE_TAG = "gateway"

#: Categories whose messages carry a device status snapshot.
STATUS_CATEGORIES: frozenset[str] = frozenset({"status"})

#: Keys added to inbound payloads by the router; never merged into status.
DECORATION_KEYS: frozenset[str] = frozenset({"deviceId", "topic", "receivedAt", CORRELATION_KEY, "timestamp"})

DEFAULT_SUBSCRIPTIONS: tuple[str, ...] = (
    "device/+/status",
    "device/+/heartbeat",
    "device/+/sms/incoming",
    "device/+/sms/delivered",
    "device/+/call/incoming",
    "device/+/call/status",
    "device/+/ussd/response",
    "device/+/webcam/image",
    "device/+/wifi/scan",
    "device/+/hotspot/clients",
    "device/+/location",
    "device/+/command/response",
    "device/+/gpio/#",
    "device/+/gps/#",
    "device/+/test/#",
    "device/+/storage/#",
)

# ------------------------------------------------------------------
# Per-command response timeouts (seconds)
# ------------------------------------------------------------------

DEFAULT_COMMAND_TIMEOUT = 30.0

COMMAND_TIMEOUTS: dict[str, float] = {
    # quick queries
    "get-status": 10.0,
    "storage-info": 5.0,
    "gpio-status": 5.0,
    "gpio-mode": 5.0,
    "gpio-read": 5.0,
    "gpio-write": 5.0,
    "gps-status": 5.0,
    "storage-list": 10.0,
    "storage-mkdir": 10.0,
    "storage-rename": 10.0,
    "gps-set-enabled": 10.0,
    "gps-configure": 10.0,
    "gps-location": 15.0,
    # physical device action
    "send-sms": 60.0,
    "make-call": 60.0,
    "send-ussd": 60.0,
    "capture-image": 60.0,
    "scan-wifi": 60.0,
    # bulk transfer
    "storage-read": 30.0,
    "storage-write": 60.0,
    "storage-delete": 30.0,
    "storage-move": 30.0,
    "storage-copy": 60.0,
}


def command_timeout(command: str) -> float:
    """Return the default response timeout for *command* in seconds."""
    return COMMAND_TIMEOUTS.get(command, DEFAULT_COMMAND_TIMEOUT)
