"""Client configuration for pyoscmirror."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyoscmirror._constants import (
    ACTIVITY_INTERVAL_S,
    BULK_RETRY_DELAY_S,
    BULK_TIMEOUT_S,
    DEFAULT_HOST,
    DEFAULT_OSC_PORT,
    OSCQUERY_TIMEOUT_S,
    PEER_NAME_PREFIX,
    RETRY_DELAY_S,
)
from pyoscmirror.exceptions import OscConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_port(value: str | None, default: int) -> int:
    """Parse a port number, falling back to *default* for junk or ``0``."""
    if value is None:
        return default
    try:
        port = int(value.strip())
    except ValueError:
        return default
    if port <= 0 or port > 65535:
        return default
    return port


def parse_port_list(value: str | None) -> tuple[int, ...]:
    """Parse a comma-separated port list, skipping entries that are not valid ports."""
    if not value:
        return ()
    ports: list[int] = []
    for part in value.split(","):
        try:
            port = int(part.strip())
        except ValueError:
            continue
        if 0 < port <= 65535:
            ports.append(port)
    return tuple(ports)


def _parse_host_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class OscConfig:
    """Client configuration.

    Parameters
    ----------
    host : str
        Local address the OSC socket binds to.
    port : int
        Preferred local OSC port. A free port is picked when it is taken.
    proxy_ports : tuple of int
        Local ports every trusted raw datagram is mirrored to.
    proxy_host : str
        Host the proxy ports live on.
    retry_delay : float
        Fixed delay in seconds before reconnecting after a fatal error.
    bulk_timeout : float
        Timeout in seconds of one OSCQuery bulk-state request.
    bulk_retry_delay : float
        Pause in seconds between failed bulk-state requests.
    activity_interval : float
        Interval in seconds of the "messages received" activity report.
    service_name : str
        Instance name advertised over OSCQuery.
    peer_name_prefix : str
        OSCQuery instance-name prefix identifying the parameter source.
    oscquery_timeout : float
        Timeout in seconds for mDNS resolution and ``HOST_INFO`` requests.
    oscquery_enabled : bool
        Advertise and browse OSCQuery services. When disabled no peer is
        ever discovered, so outbound sends and bulk reconciliation are idle.
    trusted_hosts : tuple of str
        Extra sender addresses accepted besides loopback/local interfaces.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_OSC_PORT
    proxy_ports: tuple[int, ...] = ()
    proxy_host: str = DEFAULT_HOST
    retry_delay: float = RETRY_DELAY_S
    bulk_timeout: float = BULK_TIMEOUT_S
    bulk_retry_delay: float = BULK_RETRY_DELAY_S
    activity_interval: float = ACTIVITY_INTERVAL_S
    service_name: str = "pyoscmirror"
    peer_name_prefix: str = PEER_NAME_PREFIX
    oscquery_timeout: float = OSCQUERY_TIMEOUT_S
    oscquery_enabled: bool = True
    trusted_hosts: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise OscConfigError(f"port must be between 0 and 65535, got {self.port}")
        for name in ("retry_delay", "bulk_timeout", "bulk_retry_delay", "activity_interval", "oscquery_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise OscConfigError(f"{name} must be positive, got {value}")
        if not self.service_name.strip():
            raise OscConfigError("service_name must be non-empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> OscConfig:
        """Create configuration from environment variables.

        Reads ``OSC_HOST``, ``OSC_PORT``, ``OSC_PROXY`` and the other
        optional ``OSC_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        OscConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "OSC_HOST": "host",
            "OSC_PROXY_HOST": "proxy_host",
            "OSC_SERVICE_NAME": "service_name",
            "OSC_PEER_NAME_PREFIX": "peer_name_prefix",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        # An unparseable or zero port silently means "use the default"
        if "port" not in overrides:
            config_kwargs["port"] = _parse_port(env.get("OSC_PORT"), DEFAULT_OSC_PORT)

        if "proxy_ports" not in overrides:
            config_kwargs["proxy_ports"] = parse_port_list(env.get("OSC_PROXY"))

        if "trusted_hosts" not in overrides:
            config_kwargs["trusted_hosts"] = _parse_host_list(env.get("OSC_TRUSTED_HOSTS"))

        _ENV_FLOAT_MAP = {
            "OSC_RETRY_DELAY": "retry_delay",
            "OSC_BULK_TIMEOUT": "bulk_timeout",
            "OSC_BULK_RETRY_DELAY": "bulk_retry_delay",
            "OSC_ACTIVITY_INTERVAL": "activity_interval",
            "OSC_OSCQUERY_TIMEOUT": "oscquery_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise OscConfigError(f"{env_key} must be a number, got {val!r}") from exc

        if "oscquery_enabled" not in overrides:
            config_kwargs["oscquery_enabled"] = _env_bool(env.get("OSC_OSCQUERY_ENABLED"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
