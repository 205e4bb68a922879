"""Typed gateway events and the in-order callback registry.

Everything the gateway reports to collaborators goes through one
:class:`EventBus` owned by the gateway instance.  Delivery is synchronous on
the asyncio loop, in registration order; coroutine handlers are scheduled as
tasks.  A failing handler is logged and never blocks the handlers after it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

_logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class GatewayEvent(StrEnum):
    # connection lifecycle
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    OFFLINE = "offline"
    ERROR = "error"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    # routing
    MESSAGE = "message"
    HEARTBEAT = "heartbeat"
    STATUS = "status"
    # presence
    DEVICE_ONLINE = "device_online"
    DEVICE_OFFLINE = "device_offline"


#: Names that category/action events must never shadow.
RESERVED_EVENTS: frozenset[str] = frozenset(event.value for event in GatewayEvent)


class EventBus:
    """Callback registry keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event*; returns a callable that unregisters it."""
        self._handlers.setdefault(str(event), []).append(handler)

        def _unsubscribe() -> None:
            self.off(event, handler)

        return _unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(str(event))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(str(event), None)

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(str(event)))

    def emit(self, event: str, *args: Any) -> None:
        name = str(event)
        # Copy so handlers may (un)register during dispatch.
        for handler in list(self._handlers.get(name, ())):
            try:
                result = handler(*args)
            except Exception:
                _logger.warning("Handler %r for event %s failed", handler, name, exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(name, result)

    def _schedule(self, name: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                _logger.warning("Async handler for event %s failed", name, exc_info=exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
