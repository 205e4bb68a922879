from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from pyfieldlink._commands import DeviceCommands


class _RecordingPublisher:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def publish_command(
        self,
        device_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        wait_for_response: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        self.calls.append(
            {
                "device_id": device_id,
                "command": command,
                "payload": payload,
                "wait": wait_for_response,
                "timeout": timeout,
            }
        )
        return {"success": True}


class _RecordingCommands(DeviceCommands):
    def __init__(self) -> None:
        self.recorder = _RecordingPublisher()
        super().__init__(self.recorder)

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self.recorder.calls


@pytest.mark.asyncio
async def test_send_sms_uses_long_window() -> None:
    commands = _RecordingCommands()

    assert await commands.send_sms("dev-1", " +15550100 ", "hello") == {"success": True}

    assert commands.calls == [
        {
            "device_id": "dev-1",
            "command": "send-sms",
            "payload": {"to": "+15550100", "message": "hello"},
            "wait": True,
            "timeout": 60.0,
        }
    ]


@pytest.mark.asyncio
async def test_explicit_timeout_overrides_table() -> None:
    commands = _RecordingCommands()
    await commands.make_call("dev-1", "+15550100", timeout=5.0)
    assert commands.calls[0]["timeout"] == 5.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "args", "command", "timeout"),
    [
        ("request_status", (), "get-status", 10.0),
        ("storage_info", (), "storage-info", 5.0),
        ("list_files", ("/logs",), "storage-list", 10.0),
        ("read_file", ("/logs/a.txt",), "storage-read", 30.0),
        ("download_file", ("/logs/a.txt",), "storage-read", 60.0),
        ("write_file", ("/a.txt", "hi"), "storage-write", 60.0),
        ("delete_items", (["/a.txt"],), "storage-delete", 30.0),
        ("rename_item", ("/a.txt", "b.txt"), "storage-rename", 10.0),
        ("move_items", (["/a.txt"], "/old"), "storage-move", 30.0),
        ("copy_items", (["/a.txt"], "/old"), "storage-copy", 60.0),
        ("make_directory", ("/old",), "storage-mkdir", 10.0),
        ("gpio_status", (), "gpio-status", 5.0),
        ("gpio_read", (4,), "gpio-read", 5.0),
        ("gps_location", (), "gps-location", 15.0),
        ("gps_status", (), "gps-status", 5.0),
        ("capture_image", (), "capture-image", 60.0),
        ("scan_wifi", (), "scan-wifi", 60.0),
        ("answer_call", (), "answer-call", 30.0),
        ("set_hotspot", (True,), "set-hotspot", 30.0),
        ("set_usb", (False,), "set-usb", 30.0),
        ("configure_hotspot", ({"ssid": "field"},), "configure-hotspot", 30.0),
        ("set_routing", ({"primarySource": "wifi"},), "set-routing", 30.0),
        ("run_test", ("modem",), "test-modem", 30.0),
    ],
)
async def test_wrapper_command_and_timeout(method: str, args: tuple, command: str, timeout: float) -> None:
    commands = _RecordingCommands()

    await getattr(commands, method)("dev-1", *args)

    assert commands.calls[0]["command"] == command
    assert commands.calls[0]["timeout"] == timeout


@pytest.mark.asyncio
async def test_status_poll_can_be_fire_and_forget() -> None:
    commands = _RecordingCommands()
    await commands.request_status("dev-1", wait_for_response=False)
    assert commands.calls[0]["wait"] is False


@pytest.mark.asyncio
async def test_gpio_write_payload() -> None:
    commands = _RecordingCommands()
    await commands.gpio_write("dev-1", 4, 1)
    assert commands.calls[0]["payload"] == {"pin": 4, "value": 1, "type": "digital"}


@pytest.mark.asyncio
async def test_wrappers_validate_required_fields() -> None:
    commands = _RecordingCommands()
    with pytest.raises(ValueError):
        await commands.send_sms("dev-1", "  ", "hello")
    with pytest.raises(ValueError):
        await commands.delete_items("dev-1", [])
    assert commands.calls == []


@pytest.mark.asyncio
async def test_network_config_payloads_are_sent_as_given() -> None:
    commands = _RecordingCommands()
    hotspot = {
        "ssid": "field-ap",
        "password": "secret-pass",
        "security": "WPA2",
        "band": "2.4GHz",
        "channel": 6,
        "maxClients": 8,
        "hidden": False,
        "dhcp": {"start": "192.168.8.10", "end": "192.168.8.50"},
    }
    routing = {"primarySource": "mobile", "failover": True, "loadBalancing": False, "nat": True, "firewall": True}

    await commands.configure_hotspot("dev-1", hotspot)
    await commands.set_usb("dev-1", True)
    await commands.set_routing("dev-1", routing)

    assert [call["payload"] for call in commands.calls] == [hotspot, {"enabled": True}, routing]


@pytest.mark.asyncio
async def test_network_config_validation() -> None:
    commands = _RecordingCommands()
    with pytest.raises(ValueError):
        await commands.set_routing("dev-1", {"primarySource": "satellite"})
    with pytest.raises(ValueError):
        await commands.configure_hotspot("dev-1", {"ssid": " "})
    assert commands.calls == []


@pytest.mark.asyncio
async def test_wrappers_publish_through_injected_publisher() -> None:
    publisher = _RecordingPublisher()
    commands = DeviceCommands(publisher)

    await commands.gps_location("dev-7")

    assert publisher.calls[0]["device_id"] == "dev-7"
    assert publisher.calls[0]["command"] == "gps-location"
