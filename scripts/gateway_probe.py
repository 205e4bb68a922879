#!/usr/bin/env python3
"""Passive probe for device traffic on the broker.

Connects a :class:`pyfieldlink.DeviceGateway` using the ``MQTT_*``
environment, prints every routed message and presence transition, and
optionally sends one command and waits for its correlated response.

Use this to check which topics a device actually publishes and how quickly
it answers.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyfieldlink import DeviceGateway, FieldLinkError, GatewayConfig, GatewayEvent  # noqa: E402
from pyfieldlink.models import InboundMessage  # noqa: E402

_LOG = logging.getLogger("gateway_probe")


@dataclass
class ProbeStats:
    started_at: float
    total_messages: int = 0
    malformed: int = 0
    per_event: dict[str, int] = field(default_factory=dict)
    last_message_at: float | None = None

    def on_message(self, message: InboundMessage, now: float) -> None:
        self.total_messages += 1
        if message.malformed:
            self.malformed += 1
        self.per_event[message.event_name] = self.per_event.get(message.event_name, 0) + 1
        self.last_message_at = now


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Passive probe for field device MQTT traffic.")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--subscribe",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Extra topic pattern to subscribe to (repeatable).",
    )
    parser.add_argument("--device", help="Device id targeted by --command.")
    parser.add_argument("--command", help="Command to send once connected, e.g. get-status.")
    parser.add_argument(
        "--payload",
        default="{}",
        help="JSON object merged into the command envelope.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Pretty-print message payloads.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    args = parser.parse_args()
    if args.command and not args.device:
        parser.error("--command requires --device")
    return args


def _print_summary(stats: ProbeStats) -> None:
    runtime = time.time() - stats.started_at
    print("[probe] Summary")
    print(f"[probe]   runtime_s      : {runtime:.1f}")
    print(f"[probe]   total_messages : {stats.total_messages}")
    print(f"[probe]   malformed      : {stats.malformed}")
    for name, count in sorted(stats.per_event.items()):
        print(f"[probe]   {name:<14} : {count}")


async def _send_command(gateway: DeviceGateway, device_id: str, command: str, payload: dict[str, Any]) -> None:
    started = time.monotonic()
    try:
        response = await gateway.publish_command(device_id, command, payload)
    except FieldLinkError as exc:
        print(f"[probe] {command} failed: {exc}", file=sys.stderr)
        return
    print(f"[probe] {command} answered in {time.monotonic() - started:.2f}s")
    print(json.dumps(response, indent=2, sort_keys=True))


async def _run(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except ValueError as exc:
        print(f"[probe] Invalid --payload: {exc}", file=sys.stderr)
        return 2
    if not isinstance(payload, dict):
        print("[probe] --payload must be a JSON object", file=sys.stderr)
        return 2

    config = GatewayConfig.from_env()
    stats = ProbeStats(started_at=time.time())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def _on_message(message: InboundMessage) -> None:
        stats.on_message(message, time.time())
        stamp = time.strftime("%H:%M:%S")
        print(f"[probe] {stamp} {message.topic} -> {message.event_name}")
        if args.json:
            print(json.dumps(message.data, indent=2, sort_keys=True, default=str))

    async with DeviceGateway(config) as gateway:
        print(f"[probe] broker   : {config.broker.scheme}://{config.broker.host}:{config.broker.port}")
        print(f"[probe] clientId : {gateway.client_id}")
        gateway.on(GatewayEvent.MESSAGE, _on_message)
        gateway.on(GatewayEvent.DEVICE_ONLINE, lambda device_id: print(f"[probe] {device_id} online"))
        gateway.on(GatewayEvent.DEVICE_OFFLINE, lambda device_id: print(f"[probe] {device_id} offline"))
        gateway.on(GatewayEvent.RECONNECT_EXHAUSTED, lambda _exc: stop.set())
        if args.subscribe:
            gateway.subscribe(args.subscribe)

        if args.command:
            if not gateway.is_connected:
                _LOG.warning("Not connected yet; command will likely fail")
            await _send_command(gateway, args.device, args.command, payload)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), args.duration or None)

    _print_summary(stats)
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(_main())
