from __future__ import annotations

import pytest

from pyfieldlink.events import RESERVED_EVENTS, EventBus, GatewayEvent


def test_handlers_run_in_registration_order() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.on("sms:incoming", lambda device_id, data: calls.append(f"first:{device_id}"))
    bus.on("sms:incoming", lambda device_id, data: calls.append(f"second:{data['from']}"))

    bus.emit("sms:incoming", "dev-1", {"from": "+15550100"})

    assert calls == ["first:dev-1", "second:+15550100"]


def test_failing_handler_does_not_block_later_handlers() -> None:
    bus = EventBus()
    calls: list[int] = []

    def _boom(*_args: object) -> None:
        raise RuntimeError("handler bug")

    bus.on(GatewayEvent.CONNECTED, _boom)
    bus.on(GatewayEvent.CONNECTED, lambda: calls.append(1))

    bus.emit(GatewayEvent.CONNECTED)

    assert calls == [1]


def test_unsubscribe_callable_and_off() -> None:
    bus = EventBus()
    calls: list[str] = []
    unsubscribe = bus.on("closed", lambda reason: calls.append(reason))
    handler = lambda reason: calls.append(reason.upper())  # noqa: E731
    bus.on("closed", handler)

    unsubscribe()
    bus.off("closed", handler)
    bus.off("closed", handler)
    bus.emit(GatewayEvent.CLOSED, "bye")

    assert calls == []
    assert not bus.has_handlers("closed")


def test_enum_and_string_names_are_interchangeable() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.on(GatewayEvent.DEVICE_ONLINE, calls.append)
    bus.emit("device_online", "dev-1")
    assert calls == ["dev-1"]


@pytest.mark.asyncio
async def test_coroutine_handlers_are_scheduled() -> None:
    bus = EventBus()
    calls: list[str] = []

    async def _handler(device_id: str) -> None:
        calls.append(device_id)

    async def _failing(_device_id: str) -> None:
        raise RuntimeError("async handler bug")

    bus.on("device_offline", _failing)
    bus.on("device_offline", _handler)
    bus.emit("device_offline", "dev-1")
    await bus.drain()

    assert calls == ["dev-1"]


def test_reserved_events_cover_every_gateway_event() -> None:
    assert {"status", "heartbeat", "message", "connected"} <= RESERVED_EVENTS
