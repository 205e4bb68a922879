"""Custom exception hierarchy for pyfieldlink."""

from __future__ import annotations


class FieldLinkError(Exception):
    """Base exception for all pyfieldlink errors."""


class ConfigError(FieldLinkError):
    """Invalid or missing configuration.

    This is the only error allowed to escape the gateway boundary: it means
    a broker connection cannot be constructed at all.
    """


class CommandError(FieldLinkError):
    """A device command did not complete."""

    def __init__(
        self,
        message: str,
        *,
        device_id: str = "",
        command: str = "",
        correlation_id: str | None = None,
    ) -> None:
        self.device_id = device_id
        self.command = command
        self.correlation_id = correlation_id
        super().__init__(message)


class ConnectionLostError(CommandError, ConnectionError):
    """Transport dropped while the command awaited a response."""


class CommandTimeoutError(CommandError, TimeoutError):
    """No correlated response arrived within the command's window."""

    def __init__(
        self,
        message: str,
        *,
        device_id: str = "",
        command: str = "",
        correlation_id: str | None = None,
        timeout: float = 0.0,
    ) -> None:
        self.timeout = timeout
        super().__init__(message, device_id=device_id, command=command, correlation_id=correlation_id)


class PublishError(CommandError):
    """The transport rejected the outbound write (e.g. while disconnected)."""


class ReconnectExhaustedError(PublishError):
    """Reconnect attempts exceeded the configured maximum.

    Raised for publishes issued after exhaustion, and passed as the payload
    of the ``reconnect_exhausted`` event.  A manual ``connect()`` is required
    to recover.
    """
