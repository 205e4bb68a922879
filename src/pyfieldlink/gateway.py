"""High-level async gateway between a control application and field devices."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pyfieldlink._commands import DeviceCommands
from pyfieldlink._mqtt import MqttTransport
from pyfieldlink._topics import SubscriptionRegistry
from pyfieldlink.config import BrokerOptions, GatewayConfig
from pyfieldlink.connection import ConnectionManager, ConnectionState, TransportFactory
from pyfieldlink.correlator import CommandCorrelator
from pyfieldlink.events import EventBus, GatewayEvent, Handler
from pyfieldlink.exceptions import FieldLinkError
from pyfieldlink.models import DeviceRecord
from pyfieldlink.presence import PresenceTracker
from pyfieldlink.router import TopicRouter

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceGateway(DeviceCommands):
    """Async MQTT gateway for a fleet of field devices.

    Usage::

        async with DeviceGateway(GatewayConfig.from_env()) as gateway:
            gateway.on("sms:received", handle_sms)
            result = await gateway.send_sms("dev-1", "+15550100", "hello")

    The gateway owns every collaborator; nothing is shared between
    instances.  All state is mutated on the running event loop.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        transport_factory: TransportFactory = MqttTransport,
    ) -> None:
        self._config = config if config is not None else GatewayConfig.from_env()
        cfg = self._config

        self._events = EventBus()
        self._subscriptions = SubscriptionRegistry(cfg.subscriptions)
        self._router = TopicRouter(events=self._events, subscriptions=self._subscriptions, clock=clock)
        self._correlator = CommandCorrelator(router=self._router, source_tag=cfg.source_tag)
        super().__init__(self._correlator)
        self._presence = PresenceTracker(
            events=self._events,
            liveness_window=cfg.liveness_window,
            retention_window=cfg.retention_window,
            clock=clock,
        )
        self._connection = ConnectionManager(
            cfg.broker,
            events=self._events,
            subscriptions=self._subscriptions,
            on_message=self._router.handle_message,
            on_connection_lost=self._correlator.reject_all,
            policy=cfg.reconnect,
            transport_factory=transport_factory,
        )
        self._router.bind(self._connection)

        self._events.on(GatewayEvent.MESSAGE, self._correlator.handle_message)
        self._events.on(GatewayEvent.MESSAGE, self._presence.apply_message)
        self._events.on(GatewayEvent.HEARTBEAT, self._on_heartbeat)
        self._events.on(GatewayEvent.STATUS, self._presence.update_device_status)
        self._events.on(GatewayEvent.CONNECTED, self._on_connected)

        self._tasks: list[asyncio.Task[None]] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DeviceGateway:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> bool:
        """Start the periodic sweeps and connect to the broker.

        Returns whether the first attempt connected; on failure the
        backoff cycle keeps retrying in the background.
        """
        if not self._started:
            self._started = True
            loop = asyncio.get_running_loop()
            self._tasks = [
                loop.create_task(self._every(self._config.presence_check_interval, self._check_presence)),
                loop.create_task(self._every(self._config.cleanup_interval, self._cleanup_devices)),
            ]
            if self._config.poll_devices:
                self._tasks.append(loop.create_task(self._every(self._config.status_poll_interval, self.poll_status)))
        return await self._connection.connect()

    async def close(self) -> None:
        """Stop sweeps, reject pending commands and disconnect."""
        tasks = self._tasks
        if self._poll_task is not None:
            tasks = [*tasks, self._poll_task]
        self._tasks = []
        self._poll_task = None
        self._started = False
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._connection.disconnect()
        self._correlator.reject_all("gateway closed")
        self._events.cancel_pending()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def client_id(self) -> str:
        return self._connection.client_id

    async def connect(self) -> bool:
        return await self._connection.connect()

    async def disconnect(self) -> None:
        await self._connection.disconnect()

    async def reconnect(self, options: BrokerOptions | dict[str, Any] | None = None) -> bool:
        """Reconnect, optionally with new broker parameters."""
        return await self._connection.reconnect(options)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @property
    def events(self) -> EventBus:
        return self._events

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event*; returns an unsubscribe callable."""
        return self._events.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self._events.off(event, handler)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    @property
    def subscriptions(self) -> SubscriptionRegistry:
        return self._subscriptions

    def subscribe(self, patterns: str | Iterable[str]) -> list[str]:
        return self._router.subscribe(patterns)

    def unsubscribe(self, patterns: str | Iterable[str]) -> list[str]:
        return self._router.unsubscribe(patterns)

    def publish(self, topic: str, payload: Any) -> None:
        """Publish a raw payload; dicts are JSON-encoded."""
        self._router.publish(topic, payload)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def publish_command(
        self,
        device_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        wait_for_response: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._correlator.publish_command(
            device_id,
            command,
            payload,
            wait_for_response=wait_for_response,
            timeout=timeout,
        )

    @property
    def pending_commands(self) -> int:
        return len(self._correlator.pending)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, device_id: str) -> DeviceRecord | None:
        return self._presence.get_device(device_id)

    def get_all_devices(self) -> list[DeviceRecord]:
        return self._presence.get_all_devices()

    def is_online(self, device_id: str) -> bool:
        return self._presence.is_online(device_id)

    async def poll_status(self) -> None:
        """Ask every configured poll device for a status report."""
        if not self._connection.is_connected:
            return
        for device_id in self._config.poll_devices:
            try:
                await self.request_status(device_id, wait_for_response=False)
            except FieldLinkError as exc:
                _logger.debug("Status poll for %s failed: %s", device_id, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_heartbeat(self, device_id: str, _received_at: datetime) -> None:
        self._presence.handle_heartbeat(device_id)

    def _on_connected(self) -> None:
        if not self._config.poll_devices or not self._started:
            return
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.get_running_loop().create_task(self._initial_poll())

    async def _initial_poll(self) -> None:
        await asyncio.sleep(self._config.initial_poll_delay)
        await self.poll_status()

    def _check_presence(self) -> None:
        self._presence.check_online_devices()

    def _cleanup_devices(self) -> None:
        self._presence.cleanup_offline_devices()

    async def _every(self, interval: float, job: Callable[[], Awaitable[None] | None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = job()
                if result is not None:
                    await result
            except Exception:
                _logger.error("Periodic task %s failed", getattr(job, "__name__", job), exc_info=True)
