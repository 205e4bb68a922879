from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from conftest import FakeBroker, wait_until

from pyfieldlink import ConnectionLostError, DeviceGateway, GatewayConfig
from pyfieldlink.config import BrokerOptions, ReconnectPolicy
from pyfieldlink.connection import ConnectionState


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def _config(**overrides: Any) -> GatewayConfig:
    defaults: dict[str, Any] = {
        "broker": BrokerOptions(client_id="gw_test", connect_timeout=1.0),
        "reconnect": ReconnectPolicy(base_delay=0.01, growth=2.0, max_delay=0.05, max_attempts=3),
    }
    defaults.update(overrides)
    return GatewayConfig(**defaults)


@pytest.mark.asyncio
async def test_command_round_trip_updates_presence(broker: FakeBroker) -> None:
    async with DeviceGateway(_config(), transport_factory=broker) as gateway:
        assert gateway.state is ConnectionState.CONNECTED
        transport = broker.current

        task = asyncio.create_task(gateway.send_sms("dev-1", "+15550100", "hello"))
        await wait_until(lambda: transport.published)
        topic, envelope = transport.sent_envelopes()[0]
        assert topic == "device/dev-1/command/send-sms"
        assert gateway.pending_commands == 1

        transport.deliver("device/dev-1/sms/sent", {"messageId": envelope["messageId"], "success": True})

        result = await task
        assert result["success"] is True
        assert gateway.pending_commands == 0
        assert gateway.is_online("dev-1")

    assert broker.current.stopped
    assert gateway.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_status_and_category_events_reach_subscribers(broker: FakeBroker) -> None:
    clock = _Clock()
    async with DeviceGateway(_config(), transport_factory=broker, clock=clock) as gateway:
        incoming: list[tuple[str, dict[str, Any]]] = []
        online: list[str] = []
        gateway.on("sms:incoming", lambda device_id, data: incoming.append((device_id, data)))
        gateway.on("device_online", online.append)

        broker.current.deliver("device/dev-1/status", {"mobile": {"signal": 20}, "battery": 80})
        broker.current.deliver("device/dev-1/sms/incoming", {"from": "+15550100", "text": "hi"})

        device = gateway.get_device("dev-1")
        assert device is not None
        assert device.status == {"mobile": {"signal": 20}, "battery": 80}
        assert device.last_seen == clock.now
        assert incoming[0][0] == "dev-1"
        assert incoming[0][1]["text"] == "hi"
        assert online == ["dev-1"]
        assert [d.device_id for d in gateway.get_all_devices()] == ["dev-1"]

        clock.now += timedelta(seconds=121)
        assert not gateway.is_online("dev-1")


@pytest.mark.asyncio
async def test_connection_loss_rejects_waiting_commands(broker: FakeBroker) -> None:
    async with DeviceGateway(_config(), transport_factory=broker) as gateway:
        transport = broker.current
        task = asyncio.create_task(gateway.request_status("dev-1"))
        await wait_until(lambda: transport.published)

        transport.drop("connection reset")

        with pytest.raises(ConnectionLostError):
            await task
        assert gateway.pending_commands == 0

        await wait_until(lambda: gateway.is_connected)
        assert broker.current is not transport


@pytest.mark.asyncio
async def test_close_rejects_waiting_commands(broker: FakeBroker) -> None:
    gateway = DeviceGateway(_config(), transport_factory=broker)
    await gateway.start()
    task = asyncio.create_task(gateway.gps_location("dev-1"))
    await wait_until(lambda: broker.current.published)

    await gateway.close()

    with pytest.raises(ConnectionLostError):
        await task


@pytest.mark.asyncio
async def test_configured_devices_are_polled_after_connect(broker: FakeBroker) -> None:
    config = _config(poll_devices=("dev-1", "dev-2"), initial_poll_delay=0.01)
    async with DeviceGateway(config, transport_factory=broker):
        transport = broker.current
        await wait_until(lambda: len(transport.published) >= 2)

        sent = transport.sent_envelopes()
        assert [topic for topic, _ in sent[:2]] == [
            "device/dev-1/command/get-status",
            "device/dev-2/command/get-status",
        ]
        assert sent[0][1]["source"] == "gateway"


@pytest.mark.asyncio
async def test_periodic_presence_sweep_emits_offline(broker: FakeBroker) -> None:
    clock = _Clock()
    config = _config(presence_check_interval=0.01)
    async with DeviceGateway(config, transport_factory=broker, clock=clock) as gateway:
        offline: list[str] = []
        gateway.on("device_offline", offline.append)
        broker.current.deliver("device/dev-1/heartbeat", {})

        clock.now += timedelta(seconds=130)
        await wait_until(lambda: offline)

        assert offline == ["dev-1"]


@pytest.mark.asyncio
async def test_runtime_subscribe_and_raw_publish(broker: FakeBroker) -> None:
    async with DeviceGateway(_config(subscriptions=("device/+/status",)), transport_factory=broker) as gateway:
        transport = broker.current
        assert transport.subscribed == [["device/+/status"]]

        assert gateway.subscribe("device/+/gps/#") == ["device/+/gps/#"]
        gateway.publish("device/dev-1/command/raw", {"hello": "world"})

        assert transport.subscribed[-1] == ["device/+/gps/#"]
        assert transport.published[-1] == ("device/dev-1/command/raw", '{"hello":"world"}')

        await gateway.reconnect()
        assert broker.current.subscribed == [["device/+/status", "device/+/gps/#"]]
