from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from pyfieldlink.config import BrokerOptions


class FakeTransport:
    """Stand-in for MqttTransport driven by a scripted behaviour.

    ``ok`` acknowledges the handshake, ``refuse`` returns a CONNACK error,
    ``unreachable`` raises ``OSError`` from ``start`` and ``silent`` never
    answers.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_connect: Callable[..., None],
        on_disconnect: Callable[..., None],
        on_message: Callable[[str, bytes], None],
        behaviour: str = "ok",
        **_: Any,
    ) -> None:
        self._loop = loop
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_message = on_message
        self.behaviour = behaviour
        self.options: BrokerOptions | None = None
        self.stopped = False
        self.subscribed: list[list[str]] = []
        self.unsubscribed: list[list[str]] = []
        self.published: list[tuple[str, str | bytes]] = []

    def start(self, options: BrokerOptions) -> None:
        # Runs in the executor thread, like the real transport.
        self.options = options
        if self.behaviour == "unreachable":
            raise OSError("connection refused")
        if self.behaviour == "ok":
            self._loop.call_soon_threadsafe(self._on_connect, self, None)
        elif self.behaviour == "refuse":
            self._loop.call_soon_threadsafe(self._on_connect, self, "Not authorized")

    def stop(self) -> None:
        self.stopped = True

    def subscribe(self, patterns: Any) -> None:
        self.subscribed.append(list(patterns))

    def unsubscribe(self, patterns: Any) -> None:
        self.unsubscribed.append(list(patterns))

    def publish(self, topic: str, payload: str | bytes) -> None:
        self.published.append((topic, payload))

    # test helpers (call on the loop)

    def deliver(self, topic: str, payload: Any) -> None:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self._on_message(topic, body)

    def drop(self, reason: str = "keepalive timeout") -> None:
        self._on_disconnect(self, reason)

    def sent_envelopes(self) -> list[tuple[str, dict[str, Any]]]:
        return [(topic, json.loads(payload)) for topic, payload in self.published]


class FakeBroker:
    """Transport factory handing out one FakeTransport per attempt."""

    def __init__(self) -> None:
        self.behaviours: list[str] = []
        self.transports: list[FakeTransport] = []

    def __call__(self, **kwargs: Any) -> FakeTransport:
        behaviour = self.behaviours.pop(0) if self.behaviours else "ok"
        transport = FakeTransport(behaviour=behaviour, **kwargs)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
