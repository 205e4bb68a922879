"""Per-device liveness and merged status snapshots.

State machine per device::

    Unknown --first message--> Online --sweep: silent > liveness--> Offline
    Offline --any message--> Online          (immediate, not sweep-driven)
    Offline --sweep: silent > retention--> removed

``online`` is recomputed lazily on every read and eagerly by
:meth:`PresenceTracker.check_online_devices`; transitions seen by the sweep
emit ``device_offline`` / ``device_online``.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pyfieldlink._constants import DECORATION_KEYS
from pyfieldlink.events import EventBus, GatewayEvent
from pyfieldlink.models import DeviceRecord, InboundMessage

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _merge_status(target: dict[str, Any], patch: Mapping[str, Any]) -> None:
    """Merge *patch* into *target* one top-level category at a time.

    Dict categories (``mobile``, ``system``, ``wifi``...) are updated
    key-by-key so a partial report keeps fields it does not mention;
    anything else replaces the previous value.
    """
    for key, value in patch.items():
        if key in DECORATION_KEYS:
            continue
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            existing.update(copy.deepcopy(dict(value)))
        else:
            target[key] = copy.deepcopy(value)


def status_patch_for(message: InboundMessage) -> dict[str, Any] | None:
    """Fold category-specific reports into a status patch.

    Returns ``None`` when the message carries nothing presence-relevant.
    """
    data = message.data
    category, action = message.category, message.action
    if category == "wifi" and action == "scan":
        return {"wifi": {"networks": data.get("networks") or []}}
    if category == "hotspot" and action == "clients":
        return {"hotspot": {"clients": data.get("clients") or []}}
    if category == "gpio" and action == "status":
        return {"gpio": {k: v for k, v in data.items() if k not in DECORATION_KEYS}}
    if category == "storage" and action == "info":
        return {
            "sd": {
                "mounted": bool(data.get("success", data.get("mounted", False))),
                "total": data.get("total") or 0,
                "used": data.get("used") or 0,
                "free": data.get("free") or 0,
                "type": data.get("type") or "SD Card",
                "filesystem": data.get("filesystem") or "FAT32",
            }
        }
    if category == "storage" and action == "list":
        stats = data.get("stats")
        if isinstance(stats, Mapping):
            return {
                "sd": {
                    "mounted": True,
                    "total": stats.get("total"),
                    "used": stats.get("used"),
                    "free": stats.get("free"),
                }
            }
    return None


class PresenceTracker:
    """In-memory device registry.

    Parameters
    ----------
    events
        Bus receiving ``device_online`` / ``device_offline`` transitions.
    liveness_window
        Seconds of silence after which a device reads offline.
    retention_window
        Seconds of silence after which an offline record is deleted.
    clock
        Source of "now"; injectable for deterministic tests.
    """

    def __init__(
        self,
        *,
        events: EventBus,
        liveness_window: float = 120.0,
        retention_window: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if retention_window < liveness_window:
            raise ValueError("retention_window must be >= liveness_window")
        self._events = events
        self._liveness_window = liveness_window
        self._retention_window = retention_window
        self._clock = clock
        self._devices: dict[str, DeviceRecord] = {}

    @property
    def liveness_window(self) -> float:
        return self._liveness_window

    @property
    def retention_window(self) -> float:
        return self._retention_window

    def _is_live(self, record: DeviceRecord, now: datetime) -> bool:
        return record.silence(now) < self._liveness_window

    def _observe(self, device_id: str) -> DeviceRecord:
        """Create or refresh a record for a message arriving now."""
        now = self._clock()
        record = self._devices.get(device_id)
        if record is None:
            record = DeviceRecord(device_id=device_id, first_seen=now, last_seen=now, online=True)
            self._devices[device_id] = record
            _logger.info("New device discovered: %s", device_id)
            self._events.emit(GatewayEvent.DEVICE_ONLINE, device_id)
            return record

        record.touch(now)
        if not record.online:
            record.online = True
            _logger.info("Device %s back online", device_id)
            self._events.emit(GatewayEvent.DEVICE_ONLINE, device_id)
        return record

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_device_status(self, device_id: str, data: Mapping[str, Any]) -> DeviceRecord:
        """Upsert *device_id*, merge *data* per category, mark it online."""
        record = self._observe(device_id)
        _merge_status(record.status, data)
        _logger.debug("Device %s status updated categories=%s", device_id, sorted(record.status))
        return record

    def handle_heartbeat(self, device_id: str) -> DeviceRecord:
        """Liveness-only update; leaves the status snapshot untouched."""
        return self._observe(device_id)

    def apply_message(self, message: InboundMessage) -> None:
        """Fold presence-relevant category reports into the snapshot."""
        patch = status_patch_for(message)
        if patch is not None:
            self.update_device_status(message.device_id, patch)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_device(self, device_id: str) -> DeviceRecord | None:
        """Return a copy of the record with ``online`` recomputed."""
        record = self._devices.get(device_id)
        if record is None:
            return None
        view = record.model_copy(deep=True)
        view.online = self._is_live(record, self._clock())
        return view

    def get_all_devices(self) -> list[DeviceRecord]:
        now = self._clock()
        views: list[DeviceRecord] = []
        for record in self._devices.values():
            view = record.model_copy(deep=True)
            view.online = self._is_live(record, now)
            views.append(view)
        return views

    def is_online(self, device_id: str) -> bool:
        record = self._devices.get(device_id)
        return record is not None and self._is_live(record, self._clock())

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def check_online_devices(self) -> tuple[list[str], list[str]]:
        """Recompute ``online`` for every record.

        Returns ``(went_offline, came_online)`` device ids.
        """
        now = self._clock()
        went_offline: list[str] = []
        came_online: list[str] = []
        for device_id, record in list(self._devices.items()):
            live = self._is_live(record, now)
            if record.online and not live:
                record.online = False
                went_offline.append(device_id)
                _logger.info("Device %s went offline (silent %.0fs)", device_id, record.silence(now))
                self._events.emit(GatewayEvent.DEVICE_OFFLINE, device_id)
            elif not record.online and live:
                record.online = True
                came_online.append(device_id)
                self._events.emit(GatewayEvent.DEVICE_ONLINE, device_id)
        return went_offline, came_online

    def cleanup_offline_devices(self) -> list[str]:
        """Delete records that are offline and silent beyond the retention window."""
        now = self._clock()
        removed: list[str] = []
        for device_id, record in list(self._devices.items()):
            if self._is_live(record, now):
                continue
            if record.silence(now) > self._retention_window:
                del self._devices[device_id]
                removed.append(device_id)
        if removed:
            _logger.info("Removed %d stale device(s): %s", len(removed), ", ".join(removed))
        return removed
