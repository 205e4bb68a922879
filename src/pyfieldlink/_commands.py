"""Domain command wrappers for :class:`pyfieldlink.gateway.DeviceGateway`.

Each wrapper is a fixed parameterization of ``publish_command`` with the
response window the device needs for that operation.  Wrappers publish through
any :class:`CommandPublisher`; the gateway hands them its correlator.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Literal, Protocol

from pyfieldlink._constants import command_timeout

_ROUTING_SOURCES: frozenset[str] = frozenset({"mobile", "wifi", "usb", "none"})


def _non_empty(value: str, name: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{name} must be non-empty")
    return stripped


class CommandPublisher(Protocol):
    """Anything that can publish a correlated device command.

    :class:`~pyfieldlink.correlator.CommandCorrelator` is the production
    implementation; tests pass lightweight recorders.
    """

    async def publish_command(
        self,
        device_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        wait_for_response: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]: ...


class DeviceCommands:
    """One method per device command, published through *publisher*."""

    def __init__(self, publisher: CommandPublisher) -> None:
        self._publisher = publisher

    async def _send(
        self,
        device_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        wait_for_response: bool = True,
    ) -> dict[str, Any]:
        return await self._publisher.publish_command(
            device_id,
            command,
            payload,
            wait_for_response=wait_for_response,
            timeout=timeout if timeout is not None else command_timeout(command),
        )

    # ------------------------------------------------------------------
    # Status / camera
    # ------------------------------------------------------------------

    async def request_status(self, device_id: str, *, wait_for_response: bool = True) -> dict[str, Any]:
        return await self._send(device_id, "get-status", wait_for_response=wait_for_response)

    async def capture_image(self, device_id: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._send(device_id, "capture-image", timeout=timeout)

    # ------------------------------------------------------------------
    # Messaging / calls
    # ------------------------------------------------------------------

    async def send_sms(self, device_id: str, to: str, message: str, *, timeout: float | None = None) -> dict[str, Any]:
        payload = {"to": _non_empty(to, "to"), "message": _non_empty(message, "message")}
        return await self._send(device_id, "send-sms", payload, timeout=timeout)

    async def send_ussd(self, device_id: str, code: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._send(device_id, "send-ussd", {"code": _non_empty(code, "code")}, timeout=timeout)

    async def make_call(self, device_id: str, number: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._send(device_id, "make-call", {"number": _non_empty(number, "number")}, timeout=timeout)

    async def answer_call(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "answer-call")

    async def end_call(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "end-call")

    async def reject_call(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "reject-call")

    async def hold_call(self, device_id: str, hold: bool = True) -> dict[str, Any]:
        return await self._send(device_id, "hold-call", {"hold": hold})

    async def transfer_call(self, device_id: str, number: str) -> dict[str, Any]:
        return await self._send(device_id, "transfer-call", {"number": _non_empty(number, "number")})

    # ------------------------------------------------------------------
    # Storage (SD card)
    # ------------------------------------------------------------------

    async def storage_info(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "storage-info")

    async def list_files(self, device_id: str, path: str = "") -> dict[str, Any]:
        return await self._send(device_id, "storage-list", {"path": path})

    async def read_file(self, device_id: str, path: str, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._send(device_id, "storage-read", {"path": _non_empty(path, "path")}, timeout=timeout)

    async def download_file(self, device_id: str, path: str) -> dict[str, Any]:
        """Read a whole file for download; allows more time than :meth:`read_file`."""
        return await self.read_file(device_id, path, timeout=60.0)

    async def write_file(
        self,
        device_id: str,
        path: str,
        content: str,
        *,
        encoding: Literal["utf8", "base64"] = "utf8",
        append: bool = False,
    ) -> dict[str, Any]:
        payload = {"path": _non_empty(path, "path"), "content": content, "encoding": encoding, "append": append}
        return await self._send(device_id, "storage-write", payload)

    async def delete_items(self, device_id: str, items: Sequence[str]) -> dict[str, Any]:
        if not items:
            raise ValueError("items must be non-empty")
        return await self._send(device_id, "storage-delete", {"items": list(items)})

    async def rename_item(self, device_id: str, old_path: str, new_name: str) -> dict[str, Any]:
        payload = {"oldPath": _non_empty(old_path, "old_path"), "newName": _non_empty(new_name, "new_name")}
        return await self._send(device_id, "storage-rename", payload)

    async def move_items(self, device_id: str, items: Sequence[str], destination: str) -> dict[str, Any]:
        payload = {"items": list(items), "destination": _non_empty(destination, "destination")}
        return await self._send(device_id, "storage-move", payload)

    async def copy_items(self, device_id: str, items: Sequence[str], destination: str) -> dict[str, Any]:
        payload = {"items": list(items), "destination": _non_empty(destination, "destination")}
        return await self._send(device_id, "storage-copy", payload)

    async def make_directory(self, device_id: str, path: str) -> dict[str, Any]:
        return await self._send(device_id, "storage-mkdir", {"path": _non_empty(path, "path")})

    # ------------------------------------------------------------------
    # GPIO
    # ------------------------------------------------------------------

    async def gpio_status(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "gpio-status")

    async def gpio_mode(self, device_id: str, pin: int, mode: str, pull: str | None = None) -> dict[str, Any]:
        return await self._send(device_id, "gpio-mode", {"pin": pin, "mode": mode, "pull": pull})

    async def gpio_read(self, device_id: str, pin: int, type: str = "digital") -> dict[str, Any]:  # noqa: A002
        return await self._send(device_id, "gpio-read", {"pin": pin, "type": type})

    async def gpio_write(
        self,
        device_id: str,
        pin: int,
        value: int,
        type: str = "digital",  # noqa: A002
        *,
        wait_for_response: bool = True,
    ) -> dict[str, Any]:
        return await self._send(
            device_id,
            "gpio-write",
            {"pin": pin, "value": value, "type": type},
            wait_for_response=wait_for_response,
        )

    # ------------------------------------------------------------------
    # GPS
    # ------------------------------------------------------------------

    async def gps_location(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "gps-location")

    async def gps_status(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "gps-status")

    async def gps_set_enabled(self, device_id: str, enabled: bool) -> dict[str, Any]:
        return await self._send(device_id, "gps-set-enabled", {"enabled": enabled})

    # ------------------------------------------------------------------
    # Modem / network
    # ------------------------------------------------------------------

    async def scan_wifi(self, device_id: str) -> dict[str, Any]:
        return await self._send(device_id, "scan-wifi")

    async def connect_wifi(self, device_id: str, ssid: str, password: str, security: str = "WPA2-PSK") -> dict[str, Any]:
        payload = {"ssid": _non_empty(ssid, "ssid"), "password": password, "security": security}
        return await self._send(device_id, "connect-wifi", payload)

    async def set_mobile_data(self, device_id: str, enabled: bool) -> dict[str, Any]:
        return await self._send(device_id, "set-mobile", {"enabled": enabled})

    async def set_apn(
        self,
        device_id: str,
        apn: str,
        username: str = "",
        password: str = "",
        auth: str = "none",
    ) -> dict[str, Any]:
        payload = {"apn": _non_empty(apn, "apn"), "username": username, "password": password, "auth": auth}
        return await self._send(device_id, "set-apn", payload)

    async def set_hotspot(self, device_id: str, enabled: bool) -> dict[str, Any]:
        return await self._send(device_id, "set-hotspot", {"enabled": enabled})

    async def configure_hotspot(self, device_id: str, config: Mapping[str, Any]) -> dict[str, Any]:
        """Push hotspot settings.

        *config* is sent as-is; the firmware reads ``ssid``, ``password``,
        ``security``, ``band``, ``channel``, ``maxClients``, ``hidden`` and
        ``dhcp``.
        """
        if "ssid" in config:
            _non_empty(str(config["ssid"]), "ssid")
        return await self._send(device_id, "configure-hotspot", dict(config))

    async def set_usb(self, device_id: str, enabled: bool) -> dict[str, Any]:
        return await self._send(device_id, "set-usb", {"enabled": enabled})

    async def set_routing(self, device_id: str, config: Mapping[str, Any]) -> dict[str, Any]:
        """Push routing settings (``primarySource``, ``failover``, ``loadBalancing``, ``nat``, ``firewall``)."""
        source = config.get("primarySource")
        if source is not None and source not in _ROUTING_SOURCES:
            raise ValueError(f"primarySource must be one of {sorted(_ROUTING_SOURCES)}")
        return await self._send(device_id, "set-routing", dict(config))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def run_test(self, device_id: str, test_id: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return await self._send(device_id, f"test-{_non_empty(test_id, 'test_id')}", params, timeout=30.0)
