"""Broker connection lifecycle: attempts, backoff, re-subscription.

The manager owns exactly one :class:`~pyfieldlink._mqtt.MqttTransport` at a
time and never relies on paho's built-in reconnect: every attempt builds a
fresh session, bounded by ``connect_timeout``.  Losing an established
session rejects every pending command before the next attempt is scheduled
with ``min(base * growth ** (attempt - 1), ceiling)`` delay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

from pyfieldlink._mqtt import MqttTransport
from pyfieldlink._topics import SubscriptionRegistry
from pyfieldlink.config import BrokerOptions, ReconnectPolicy
from pyfieldlink.events import EventBus, GatewayEvent
from pyfieldlink.exceptions import ConfigError, PublishError, ReconnectExhaustedError

_logger = logging.getLogger(__name__)

TransportFactory = Callable[..., MqttTransport]


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class _AttemptFailed(Exception):
    pass


class ConnectionManager:
    def __init__(
        self,
        options: BrokerOptions,
        *,
        events: EventBus,
        subscriptions: SubscriptionRegistry,
        on_message: Callable[[str, bytes], Any],
        on_connection_lost: Callable[[str], Any],
        policy: ReconnectPolicy | None = None,
        transport_factory: TransportFactory = MqttTransport,
    ) -> None:
        self._options = options
        self._policy = policy or ReconnectPolicy()
        self._events = events
        self._subscriptions = subscriptions
        self._on_message = on_message
        self._on_connection_lost = on_connection_lost
        self._transport_factory = transport_factory

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._exhausted = False
        self._transport: MqttTransport | None = None
        self._handshake: asyncio.Future[None] | None = None
        self._attempt_task: asyncio.Task[bool] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._handshake_dropped: str | None = None
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def attempts(self) -> int:
        """Consecutive failed attempts since the last successful connect."""
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def options(self) -> BrokerOptions:
        return self._options

    @property
    def client_id(self) -> str:
        return self._options.client_id

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            _logger.debug("MQTT connection state %s -> %s", self._state, state)
            self._state = state

    # ------------------------------------------------------------------
    # Public lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Connect unless already connected or connecting.

        Concurrent callers join the attempt already in flight.  A pending
        backoff timer is cancelled and replaced by an immediate attempt.
        Returns whether the gateway is connected afterwards; failures are
        reported through events and the backoff cycle, never raised.
        """
        if self._state is ConnectionState.CONNECTED:
            return True
        attempt = self._attempt_task
        if attempt is None or attempt.done():
            self._cancel_reconnect_timer()
            self._exhausted = False
            self._attempts = 0
            attempt = self._start_attempt()
        else:
            # A manual connect restarts the backoff count even when it joins.
            self._exhausted = False
            self._attempts = 0
        try:
            return await asyncio.shield(attempt)
        except asyncio.CancelledError:
            # A deliberate disconnect() cancelled the attempt, not our caller.
            current = asyncio.current_task()
            if attempt.cancelled() and current is not None and not current.cancelling():
                return False
            raise

    async def disconnect(self) -> None:
        """Tear the connection down deliberately; no automatic retry follows."""
        self._cancel_reconnect_timer()
        attempt = self._attempt_task
        self._attempt_task = None
        if attempt is not None and not attempt.done():
            attempt.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await attempt

        was_connected = self._state is ConnectionState.CONNECTED
        transport = self._transport
        self._transport = None
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            self._on_connection_lost("MQTT connection closed")
        if transport is not None:
            await self._stop_transport(transport)
        if was_connected:
            _logger.info("MQTT disconnected")
            self._events.emit(GatewayEvent.CLOSED, "client disconnect")

    async def reconnect(self, options: BrokerOptions | dict[str, Any] | None = None) -> bool:
        """Disconnect, optionally swap broker parameters, and connect again.

        New parameters always come with a freshly generated client id so the
        broker never sees two sessions with the same identity.
        """
        await self.disconnect()
        if isinstance(options, BrokerOptions):
            self._options = options
        elif options:
            try:
                self._options = self._options.with_overrides(**options)
            except TypeError as exc:
                raise ConfigError(f"Unknown broker option: {exc}") from exc
        return await self.connect()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _require_transport(self) -> MqttTransport:
        if self._exhausted:
            raise ReconnectExhaustedError("MQTT reconnect attempts exhausted; call connect()")
        if self._state is not ConnectionState.CONNECTED or self._transport is None:
            raise PublishError("MQTT not connected")
        return self._transport

    def publish(self, topic: str, payload: str | bytes) -> None:
        self._require_transport().publish(topic, payload)

    def subscribe(self, patterns: Iterable[str]) -> None:
        self._require_transport().subscribe(patterns)

    def unsubscribe(self, patterns: Iterable[str]) -> None:
        self._require_transport().unsubscribe(patterns)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _start_attempt(self) -> asyncio.Task[bool]:
        first = self._attempts == 0
        self._set_state(ConnectionState.CONNECTING if first else ConnectionState.RECONNECTING)
        task = asyncio.get_running_loop().create_task(self._attempt())
        self._attempt_task = task
        return task

    async def _attempt(self) -> bool:
        loop = asyncio.get_running_loop()
        options = self._options
        _logger.info("Connecting to MQTT broker %s://%s:%s...", options.scheme, options.host, options.port)
        self._events.emit(GatewayEvent.CONNECTING)

        transport = self._transport_factory(
            loop=loop,
            on_connect=self._handle_connect,
            on_disconnect=self._handle_disconnect,
            on_message=self._handle_message,
            logger=_logger,
        )
        self._transport = transport
        handshake: asyncio.Future[None] = loop.create_future()
        self._handshake = handshake
        self._handshake_dropped = None

        try:
            await asyncio.wait_for(self._open(transport, options, handshake), options.connect_timeout)
        except ConfigError:
            self._transport = None
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            self._transport = None
            await self._stop_transport(transport)
            raise
        except (TimeoutError, OSError, _AttemptFailed) as exc:
            reason = str(exc) or f"no CONNACK within {options.connect_timeout:g}s"
            return await self._attempt_failed(transport, reason, exc)
        finally:
            self._handshake = None

        if self._handshake_dropped is not None:
            exc = _AttemptFailed(f"disconnected right after CONNACK: {self._handshake_dropped}")
            return await self._attempt_failed(transport, str(exc), exc)

        self._set_state(ConnectionState.CONNECTED)
        self._attempts = 0
        self._exhausted = False
        _logger.info("MQTT connected client_id=%s", options.client_id)
        self._resubscribe(transport)
        self._events.emit(GatewayEvent.CONNECTED)
        return True

    async def _attempt_failed(self, transport: MqttTransport, reason: str, exc: BaseException) -> bool:
        _logger.warning("MQTT connection attempt failed: %s", reason)
        self._transport = None
        await self._stop_transport(transport)
        self._set_state(ConnectionState.DISCONNECTED)
        self._events.emit(GatewayEvent.ERROR, exc)
        self._schedule_reconnect()
        return False

    async def _open(self, transport: MqttTransport, options: BrokerOptions, handshake: asyncio.Future[None]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, transport.start, options)
        await handshake

    def _resubscribe(self, transport: MqttTransport) -> None:
        patterns = list(self._subscriptions)
        if not patterns:
            return
        try:
            transport.subscribe(patterns)
        except PublishError:
            _logger.warning("Cannot subscribe: MQTT not connected")

    async def _stop_transport(self, transport: MqttTransport) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, transport.stop)
        except Exception:
            _logger.debug("MQTT transport stop failed", exc_info=True)

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._attempts += 1
        if self._attempts > self._policy.max_attempts:
            self._exhausted = True
            self._set_state(ConnectionState.DISCONNECTED)
            _logger.error("Max reconnection attempts reached (%d)", self._policy.max_attempts)
            self._events.emit(
                GatewayEvent.RECONNECT_EXHAUSTED,
                ReconnectExhaustedError(f"Gave up after {self._policy.max_attempts} reconnect attempts"),
            )
            return

        delay = self._policy.delay_for(self._attempts)
        self._set_state(ConnectionState.RECONNECTING)
        _logger.info(
            "MQTT reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._attempts,
            self._policy.max_attempts,
        )
        self._events.emit(GatewayEvent.RECONNECTING, self._attempts, delay)
        self._cancel_reconnect_timer()
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        try:
            await self._start_attempt()
        except ConfigError:
            _logger.error("MQTT reconnect aborted by configuration error", exc_info=True)

    def _cancel_reconnect_timer(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Transport callbacks (always on the loop)
    # ------------------------------------------------------------------

    def _handle_connect(self, transport: MqttTransport, error: str | None) -> None:
        handshake = self._handshake
        if transport is not self._transport or handshake is None or handshake.done():
            return
        if error is None:
            handshake.set_result(None)
        else:
            handshake.set_exception(_AttemptFailed(f"connection refused: {error}"))

    def _handle_disconnect(self, transport: MqttTransport, reason: str) -> None:
        if transport is not self._transport:
            return
        handshake = self._handshake
        if handshake is not None:
            if not handshake.done():
                handshake.set_exception(_AttemptFailed(f"disconnected during handshake: {reason}"))
            else:
                self._handshake_dropped = reason
            return
        if self._state is not ConnectionState.CONNECTED:
            return

        _logger.warning("MQTT disconnected: %s", reason)
        self._transport = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._on_connection_lost(f"MQTT connection closed: {reason}")
        self._events.emit(GatewayEvent.CLOSED, reason)
        self._events.emit(GatewayEvent.OFFLINE)
        stopper = asyncio.get_running_loop().create_task(self._stop_transport(transport))
        self._background.add(stopper)
        stopper.add_done_callback(self._background.discard)
        self._schedule_reconnect()

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            self._on_message(topic, payload)
        except Exception:
            _logger.error("Error handling MQTT message on %s", topic, exc_info=True)
