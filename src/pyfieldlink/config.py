"""Gateway configuration for pyfieldlink."""

from __future__ import annotations

import dataclasses
import os
import secrets
from typing import Any

from pyfieldlink._constants import DEFAULT_SUBSCRIPTIONS, SOURCE_TAG
from pyfieldlink.exceptions import ConfigError

SCHEMES: frozenset[str] = frozenset({"mqtt", "mqtts", "ws", "wss"})
_DEFAULT_PORTS: dict[str, int] = {"mqtt": 1883, "mqtts": 8883, "ws": 80, "wss": 443}


def generate_client_id(prefix: str = "gateway") -> str:
    """Return a process-unique MQTT client identifier."""
    return f"{prefix}_{secrets.token_hex(4)}"


def _env_list(value: str | None) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclasses.dataclass(frozen=True)
class BrokerOptions:
    """Broker address and session parameters.

    Parameters
    ----------
    host : str
        Broker hostname or IP address.
    port : int or None
        Broker port.  ``None`` picks the scheme default.
    scheme : str
        One of ``mqtt``, ``mqtts``, ``ws``, ``wss``.
    username, password : str or None
        Credentials passed through to the broker as-is.
    client_id : str
        MQTT client identifier.  Generated per process when empty.
    keepalive : int
        MQTT keepalive in seconds.
    connect_timeout : float
        Upper bound in seconds for a single connection attempt, including
        the CONNACK handshake.
    """

    host: str = "localhost"
    port: int | None = None
    scheme: str = "mqtt"
    username: str | None = None
    password: str | None = None
    client_id: str = ""
    keepalive: int = 60
    connect_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.scheme not in SCHEMES:
            raise ConfigError(f"Unsupported broker scheme {self.scheme!r}; expected one of {sorted(SCHEMES)}")
        if not self.host.strip():
            raise ConfigError("Broker host is empty")
        if self.port is None:
            object.__setattr__(self, "port", _DEFAULT_PORTS[self.scheme])
        if not self.client_id:
            object.__setattr__(self, "client_id", generate_client_id())
        if self.keepalive <= 0:
            raise ConfigError("keepalive must be positive")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be positive")

    @property
    def uses_tls(self) -> bool:
        return self.scheme in {"mqtts", "wss"}

    @property
    def uses_websockets(self) -> bool:
        return self.scheme in {"ws", "wss"}

    def with_overrides(self, **overrides: Any) -> BrokerOptions:
        """Copy with *overrides* applied and a freshly generated client id."""
        prefix = self.client_id.rsplit("_", 1)[0] if "_" in self.client_id else "gateway"
        overrides.setdefault("client_id", generate_client_id(prefix))
        if "scheme" in overrides and "port" not in overrides:
            overrides["port"] = None
        return dataclasses.replace(self, **overrides)


@dataclasses.dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff parameters for automatic reconnects."""

    base_delay: float = 5.0
    growth: float = 1.5
    max_delay: float = 30.0
    max_attempts: int = 10

    def __post_init__(self) -> None:
        if self.base_delay <= 0 or self.max_delay < self.base_delay:
            raise ConfigError("reconnect delays must satisfy 0 < base_delay <= max_delay")
        if self.growth < 1:
            raise ConfigError("reconnect growth must be >= 1")
        if self.max_attempts < 0:
            raise ConfigError("max_attempts must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before reconnect *attempt* (1-based)."""
        return backoff_delay(attempt, self.base_delay, self.growth, self.max_delay)


def backoff_delay(attempt: int, base: float, growth: float, ceiling: float) -> float:
    """Return ``min(base * growth ** (attempt - 1), ceiling)``."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    # Cap the exponent so huge attempt numbers cannot overflow a float.
    exponent = min(attempt - 1, 256)
    return min(base * growth**exponent, ceiling)


@dataclasses.dataclass(frozen=True)
class GatewayConfig:
    """Gateway configuration.

    Parameters
    ----------
    broker : BrokerOptions
        Broker connection parameters.
    reconnect : ReconnectPolicy
        Backoff schedule and attempt ceiling.
    subscriptions : tuple of str
        Topic patterns subscribed on every (re)connect.
    source_tag : str
        Value of the ``source`` field in outbound command envelopes.
    liveness_window : float
        Seconds of silence after which a device reads offline.
    retention_window : float
        Seconds of silence after which an offline device record is purged.
        Must be ``>= liveness_window``.
    presence_check_interval : float
        Seconds between online/offline sweeps.
    cleanup_interval : float
        Seconds between stale-record cleanup sweeps.
    poll_devices : tuple of str
        Devices asked for status shortly after connect and every
        ``status_poll_interval`` seconds.  Empty disables polling.
    status_poll_interval : float
        Seconds between status poll rounds.
    initial_poll_delay : float
        Delay in seconds between ``connected`` and the first poll round.
    """

    broker: BrokerOptions = dataclasses.field(default_factory=BrokerOptions)
    reconnect: ReconnectPolicy = dataclasses.field(default_factory=ReconnectPolicy)
    subscriptions: tuple[str, ...] = DEFAULT_SUBSCRIPTIONS
    source_tag: str = SOURCE_TAG
    liveness_window: float = 120.0
    retention_window: float = 300.0
    presence_check_interval: float = 30.0
    cleanup_interval: float = 300.0
    poll_devices: tuple[str, ...] = ()
    status_poll_interval: float = 60.0
    initial_poll_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.liveness_window <= 0:
            raise ConfigError("liveness_window must be positive")
        if self.retention_window < self.liveness_window:
            raise ConfigError("retention_window must be >= liveness_window")
        if self.presence_check_interval <= 0 or self.cleanup_interval <= 0:
            raise ConfigError("sweep intervals must be positive")
        if self.status_poll_interval <= 0:
            raise ConfigError("status_poll_interval must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> GatewayConfig:
        """Create configuration from environment variables.

        Reads ``MQTT_HOST``, ``MQTT_PORT``, ``MQTT_SCHEME``, ``MQTT_USER``,
        ``MQTT_PASSWORD``, ``MQTT_CLIENT_ID``, ``MQTT_KEEPALIVE``,
        ``MQTT_CONNECT_TIMEOUT``, ``MQTT_RECONNECT_MAX_ATTEMPTS`` and the
        ``FIELDLINK_*`` presence settings.  Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.
            ``broker`` and ``reconnect`` may be given as dicts of field
            overrides.

        Returns
        -------
        GatewayConfig
            Populated configuration.
        """
        env = os.environ

        try:
            broker_kwargs: dict[str, Any] = {}
            _ENV_BROKER_MAP = {
                "MQTT_HOST": "host",
                "MQTT_SCHEME": "scheme",
                "MQTT_USER": "username",
                "MQTT_PASSWORD": "password",
                "MQTT_CLIENT_ID": "client_id",
            }
            for env_key, field_name in _ENV_BROKER_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    broker_kwargs[field_name] = val

            port_env = env.get("MQTT_PORT")
            if port_env:
                broker_kwargs["port"] = int(port_env)
            keepalive_env = env.get("MQTT_KEEPALIVE")
            if keepalive_env:
                broker_kwargs["keepalive"] = int(keepalive_env)
            # Values above 1000 are taken as milliseconds.
            timeout_env = env.get("MQTT_CONNECT_TIMEOUT")
            if timeout_env:
                timeout = float(timeout_env)
                broker_kwargs["connect_timeout"] = timeout / 1000.0 if timeout > 1000 else timeout

            broker_overrides = overrides.pop("broker", None)
            if isinstance(broker_overrides, dict):
                broker_kwargs.update(broker_overrides)
            elif isinstance(broker_overrides, BrokerOptions):
                broker_kwargs = dataclasses.asdict(broker_overrides)

            reconnect_kwargs: dict[str, Any] = {}
            attempts_env = env.get("MQTT_RECONNECT_MAX_ATTEMPTS")
            if attempts_env:
                reconnect_kwargs["max_attempts"] = int(attempts_env)
            reconnect_overrides = overrides.pop("reconnect", None)
            if isinstance(reconnect_overrides, dict):
                reconnect_kwargs.update(reconnect_overrides)
            elif isinstance(reconnect_overrides, ReconnectPolicy):
                reconnect_kwargs = dataclasses.asdict(reconnect_overrides)

            config_kwargs: dict[str, Any] = {
                "broker": BrokerOptions(**broker_kwargs),
                "reconnect": ReconnectPolicy(**reconnect_kwargs),
            }

            liveness_env = env.get("FIELDLINK_LIVENESS_WINDOW")
            if liveness_env and "liveness_window" not in overrides:
                config_kwargs["liveness_window"] = float(liveness_env)
            retention_env = env.get("FIELDLINK_RETENTION_WINDOW")
            if retention_env and "retention_window" not in overrides:
                config_kwargs["retention_window"] = float(retention_env)
            poll_env = _env_list(env.get("FIELDLINK_POLL_DEVICES"))
            if poll_env is not None and "poll_devices" not in overrides:
                config_kwargs["poll_devices"] = poll_env
        except ValueError as exc:
            raise ConfigError(f"Invalid environment configuration: {exc}") from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
