"""Internal paho-mqtt transport bridged onto an asyncio loop."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyfieldlink.config import BrokerOptions
from pyfieldlink.exceptions import ConfigError, PublishError

DEFAULT_QOS = 1


class MqttTransport:
    """Threaded paho-mqtt session that reports back onto an asyncio loop.

    One instance is one broker session: it is started once and stopped once.
    paho runs its network loop on a background thread; every callback below
    is marshalled with ``loop.call_soon_threadsafe`` so that receivers only
    ever run on the loop.  Callbacks carry the transport itself so a
    receiver can ignore reports from a session it has already replaced.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_connect: Callable[[MqttTransport, str | None], None],
        on_disconnect: Callable[[MqttTransport, str], None],
        on_message: Callable[[str, bytes], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_message = on_message
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        # Guards _client/_running between start() and a concurrent stop().
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the network loop is active."""
        return self._running

    def _build_client(self, options: BrokerOptions) -> mqtt.Client:
        try:
            client = mqtt.Client(
                callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
                client_id=options.client_id,
                protocol=mqtt.MQTTv311,
                clean_session=True,
                transport="websockets" if options.uses_websockets else "tcp",
            )
            client.enable_logger(self._logger)
            if options.username:
                client.username_pw_set(options.username, options.password)
            if options.uses_tls:
                client.tls_set()
            client.connect_timeout = options.connect_timeout
        except (ValueError, TypeError) as exc:
            raise ConfigError(f"Cannot construct MQTT client: {exc}") from exc
        return client

    def start(self, options: BrokerOptions) -> None:
        """Open the socket and start the network loop.

        Blocking; run it in an executor.  Raises ``OSError`` when the broker
        is unreachable.  Handshake success or failure is reported later via
        ``on_connect``.
        """
        self._logger.debug(
            "MQTT transport start requested scheme=%s host=%s port=%s client_id=%s",
            options.scheme,
            options.host,
            options.port,
            options.client_id,
        )
        client = self._build_client(options)

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._loop.call_soon_threadsafe(self._on_connect, self, str(reason_code))
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)
            self._loop.call_soon_threadsafe(self._on_connect, self, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._loop.call_soon_threadsafe(self._on_message, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)
                self._loop.call_soon_threadsafe(self._on_disconnect, self, str(reason_code))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        with self._lock:
            self._client = client
            self._running = True
        try:
            client.connect(options.host, cast(int, options.port), keepalive=options.keepalive)
        except Exception:
            with self._lock:
                if self._client is client:
                    self._running = False
                    self._client = None
            raise

        with self._lock:
            stopped = self._client is not client or not self._running
            if not stopped:
                client.loop_start()
        if stopped:
            # stop() ran while connect() was blocking; never start the loop.
            self._logger.debug("MQTT transport stopped during connect; dropping session")
            client.disconnect()
            return
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the client if running."""
        with self._lock:
            client = self._client
            self._client = None
            was_running = self._running
            self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def _require_client(self) -> mqtt.Client:
        if self._client is None or not self._running:
            raise PublishError("MQTT not connected")
        return self._client

    def subscribe(self, patterns: Iterable[str], qos: int = DEFAULT_QOS) -> None:
        topics = [(pattern, qos) for pattern in patterns]
        if not topics:
            return
        result, _mid = self._require_client().subscribe(topics)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error("Failed to subscribe to %s: %s", [t for t, _ in topics], mqtt.error_string(result))
            return
        for topic, _qos in topics:
            self._logger.debug("Subscribed to %s", topic)

    def unsubscribe(self, patterns: Iterable[str]) -> None:
        topics = list(patterns)
        if topics:
            self._require_client().unsubscribe(topics)

    def publish(self, topic: str, payload: str | bytes, qos: int = DEFAULT_QOS) -> None:
        info = self._require_client().publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")
