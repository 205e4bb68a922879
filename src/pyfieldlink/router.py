"""Inbound decoding and topic-based event dispatch."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pyfieldlink._constants import STATUS_CATEGORIES
from pyfieldlink._redact import redact_for_log
from pyfieldlink._topics import SubscriptionRegistry, parse_topic
from pyfieldlink.events import RESERVED_EVENTS, EventBus, GatewayEvent
from pyfieldlink.models import InboundMessage

if TYPE_CHECKING:
    from pyfieldlink.connection import ConnectionManager

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def decode_payload(payload: bytes | str) -> tuple[dict[str, Any], bool]:
    """Parse a device payload into a dict.

    Returns ``(data, malformed)``.  Anything that is not a JSON object is
    wrapped as ``{"raw": text}`` rather than rejected.
    """
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, (bytes, bytearray)) else payload
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"raw": text}, True
    if not isinstance(parsed, dict):
        return {"raw": text}, True
    return parsed, False


def encode_payload(payload: Any) -> str | bytes:
    if isinstance(payload, (str, bytes, bytearray)):
        return bytes(payload) if isinstance(payload, bytearray) else payload
    return json.dumps(payload, separators=(",", ":"), default=str)


class TopicRouter:
    """Decode inbound messages and fan them out as typed events.

    For every message the router emits, in order: the internal ``message``
    event, ``heartbeat(device_id, received_at)``, ``status(device_id, data)``
    for status-bearing categories, then ``category:action`` and the bare
    ``action`` event, each with ``(device_id, data)``.
    """

    def __init__(
        self,
        *,
        events: EventBus,
        subscriptions: SubscriptionRegistry,
        connection: ConnectionManager | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._events = events
        self._subscriptions = subscriptions
        self._connection = connection
        self._clock = clock

    def bind(self, connection: ConnectionManager) -> None:
        self._connection = connection

    @property
    def subscriptions(self) -> SubscriptionRegistry:
        return self._subscriptions

    def subscribe(self, patterns: str | Iterable[str]) -> list[str]:
        """Register patterns; new ones are sent to the broker when connected."""
        if isinstance(patterns, str):
            patterns = [patterns]
        added = self._subscriptions.add(patterns)
        connection = self._connection
        if added and connection is not None and connection.is_connected:
            connection.subscribe(added)
        return added

    def unsubscribe(self, patterns: str | Iterable[str]) -> list[str]:
        if isinstance(patterns, str):
            patterns = [patterns]
        removed = self._subscriptions.remove(patterns)
        connection = self._connection
        if removed and connection is not None and connection.is_connected:
            connection.unsubscribe(removed)
        return removed

    def publish(self, topic: str, payload: Any) -> None:
        """Encode *payload* and hand it to the connection.

        Raises :class:`~pyfieldlink.exceptions.PublishError` when the
        transport refuses the write.
        """
        if self._connection is None:
            raise RuntimeError("TopicRouter is not bound to a connection")
        self._connection.publish(topic, encode_payload(payload))

    def handle_message(self, topic: str, payload: bytes | str) -> InboundMessage | None:
        """Route one inbound delivery.  Never raises."""
        try:
            message = self._build_message(topic, payload)
        except Exception:
            _logger.warning("Failed to decode message on %s", topic, exc_info=True)
            return None
        if message is None:
            return None
        self._dispatch(message)
        return message

    def _build_message(self, topic: str, payload: bytes | str) -> InboundMessage | None:
        parts = parse_topic(topic)
        if parts is None:
            _logger.warning("Invalid topic format: %s", topic)
            return None

        received_at = self._clock()
        data, malformed = decode_payload(payload)
        if malformed:
            _logger.debug("Non-JSON payload on %s wrapped as raw", topic)
        data["deviceId"] = parts.device_id
        data["topic"] = topic
        data["receivedAt"] = received_at.isoformat()
        _logger.debug("MQTT message topic=%s data=%s", topic, redact_for_log(data))

        return InboundMessage(
            device_id=parts.device_id,
            topic=topic,
            category=parts.category,
            action=parts.action,
            received_at=received_at,
            data=data,
            malformed=malformed,
        )

    def _dispatch(self, message: InboundMessage) -> None:
        device_id = message.device_id
        data = message.data

        self._events.emit(GatewayEvent.MESSAGE, message)
        self._events.emit(GatewayEvent.HEARTBEAT, device_id, message.received_at)
        if message.category in STATUS_CATEGORIES:
            self._events.emit(GatewayEvent.STATUS, device_id, data)

        specific = message.event_name
        if specific not in RESERVED_EVENTS:
            self._events.emit(specific, device_id, data)
        action = message.action
        if action is not None and action != specific and action not in RESERVED_EVENTS:
            self._events.emit(action, device_id, data)
