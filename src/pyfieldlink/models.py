"""Data models shared by the router, correlator and presence tracker."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pyfieldlink._constants import CORRELATION_KEY


class InboundMessage(BaseModel):
    """A routed device message with its decorated payload."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    topic: str
    category: str
    action: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)
    malformed: bool = Field(default=False, description="Payload was not a JSON object and is wrapped as raw text")

    @field_validator("received_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def correlation_id(self) -> str | None:
        value = self.data.get(CORRELATION_KEY)
        return value if isinstance(value, str) and value else None

    @property
    def event_name(self) -> str:
        if self.action is None:
            return self.category
        return f"{self.category}:{self.action}"


class DeviceRecord(BaseModel):
    """Presence and merged status snapshot for one device."""

    model_config = ConfigDict(extra="forbid")

    device_id: str
    first_seen: datetime
    last_seen: datetime
    online: bool = True
    status: dict[str, Any] = Field(default_factory=dict)

    def silence(self, now: datetime) -> float:
        """Seconds since the device was last heard from."""
        return (now - self.last_seen).total_seconds()

    def touch(self, now: datetime) -> None:
        # last_seen never moves backwards, even with a skewed clock
        if now > self.last_seen:
            self.last_seen = now


@dataclass(slots=True)
class PendingCommand:
    """A published command awaiting its correlated response.

    Settles exactly once: by a matching response, its deadline, or a
    connection loss, whichever happens first.
    """

    correlation_id: str
    device_id: str
    command: str
    payload: dict[str, Any]
    future: asyncio.Future[dict[str, Any]]
    timeout: float
    created_at: float = field(default_factory=time.monotonic)

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout

    @property
    def settled(self) -> bool:
        return self.future.done()
