"""Command/response correlation over a transport without request/response.

Every outbound command carries a ``messageId``; devices echo it in whatever
message they send back.  The correlator keeps one future per outstanding id
and settles it exactly once: with the response, with
:class:`CommandTimeoutError` when its window elapses, or with
:class:`ConnectionLostError` when the connection drops first.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pyfieldlink._constants import CORRELATION_KEY, SOURCE_TAG, command_timeout
from pyfieldlink._redact import redact_for_log
from pyfieldlink._topics import command_topic
from pyfieldlink.exceptions import CommandTimeoutError, ConnectionLostError
from pyfieldlink.models import InboundMessage, PendingCommand
from pyfieldlink.router import TopicRouter

_logger = logging.getLogger(__name__)


def _now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


class CommandCorrelator:
    def __init__(self, *, router: TopicRouter, source_tag: str = SOURCE_TAG) -> None:
        self._router = router
        self._source_tag = source_tag
        self._pending: dict[str, PendingCommand] = {}

    @property
    def pending(self) -> Mapping[str, PendingCommand]:
        """Read-only view of outstanding commands keyed by correlation id."""
        return MappingProxyType(self._pending)

    def _new_correlation_id(self, command: str) -> str:
        while True:
            candidate = f"{command}_{_now_ms()}_{secrets.token_hex(3)}"
            if candidate not in self._pending:
                return candidate

    def build_envelope(self, command: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
        envelope: dict[str, Any] = dict(payload or {})
        envelope[CORRELATION_KEY] = self._new_correlation_id(command)
        envelope["timestamp"] = _now_ms()
        envelope["source"] = self._source_tag
        return envelope

    async def publish_command(
        self,
        device_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        wait_for_response: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Publish *command* to *device_id* and optionally await its response.

        Parameters
        ----------
        device_id
            Target device.
        command
            Command name; published on ``device/{device_id}/command/{command}``.
        payload
            Command fields, merged into the envelope.
        wait_for_response
            When ``False`` the call returns the sent envelope as soon as the
            transport accepts the write.
        timeout
            Seconds to wait for the correlated response.  Defaults to the
            per-command table in :mod:`pyfieldlink._constants`.

        Returns
        -------
        dict
            The response payload, or the sent envelope for fire-and-forget.

        Raises
        ------
        PublishError
            The transport refused the write.
        CommandTimeoutError
            No response arrived within *timeout*.
        ConnectionLostError
            The connection dropped while waiting.
        """
        if not device_id:
            raise ValueError("device_id must be non-empty")
        if not command:
            raise ValueError("command must be non-empty")

        envelope = self.build_envelope(command, payload)
        correlation_id: str = envelope[CORRELATION_KEY]
        topic = command_topic(device_id, command)

        if not wait_for_response:
            self._router.publish(topic, envelope)
            _logger.info("Published to %s: %s", topic, command)
            return envelope

        effective_timeout = timeout if timeout is not None else command_timeout(command)
        if effective_timeout <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()
        pending = PendingCommand(
            correlation_id=correlation_id,
            device_id=device_id,
            command=command,
            payload=dict(payload or {}),
            future=loop.create_future(),
            timeout=effective_timeout,
        )
        # Registered before publishing so a fast response cannot be missed.
        self._pending[correlation_id] = pending
        try:
            self._router.publish(topic, envelope)
            _logger.info("Published to %s: %s", topic, command)
            _logger.debug("Command envelope id=%s payload=%s", correlation_id, redact_for_log(envelope))
            return await asyncio.wait_for(pending.future, effective_timeout)
        except TimeoutError:
            _logger.debug("Command %s to %s timed out after %.1fs", correlation_id, device_id, effective_timeout)
            raise CommandTimeoutError(
                f"Command {command} timed out after {effective_timeout:g}s",
                device_id=device_id,
                command=command,
                correlation_id=correlation_id,
                timeout=effective_timeout,
            ) from None
        finally:
            current = self._pending.get(correlation_id)
            if current is pending:
                self._pending.pop(correlation_id, None)

    def handle_message(self, message: InboundMessage) -> bool:
        """Resolve the pending command *message* answers, if any."""
        correlation_id = message.correlation_id
        if correlation_id is None:
            return False
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return False
        if pending.settled:
            return False
        pending.future.set_result(dict(message.data))
        _logger.debug(
            "Command %s resolved by %s after %.2fs",
            correlation_id,
            message.topic,
            time.monotonic() - pending.created_at,
        )
        return True

    def reject_all(self, reason: str = "MQTT connection closed") -> int:
        """Reject every outstanding command with :class:`ConnectionLostError`."""
        pending = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for entry in pending:
            if entry.settled:
                continue
            entry.future.set_exception(
                ConnectionLostError(
                    reason,
                    device_id=entry.device_id,
                    command=entry.command,
                    correlation_id=entry.correlation_id,
                )
            )
            rejected += 1
        if rejected:
            _logger.warning("Rejected %d pending command(s): %s", rejected, reason)
        return rejected
