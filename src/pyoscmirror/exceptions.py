"""Custom exception hierarchy for pyoscmirror."""

from __future__ import annotations


class OscError(Exception):
    """Base exception for all pyoscmirror errors."""


class OscConfigError(OscError):
    """Invalid or missing configuration."""


class OscCodecError(OscError):
    """Datagram could not be decoded as OSC (or a value could not be encoded)."""


class OscTransportError(OscError):
    """Datagram socket could not be opened or used."""

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        port: int | None = None,
    ) -> None:
        self.host = host
        self.port = port
        super().__init__(message)


class OscDiscoveryError(OscError):
    """OSCQuery service could not be registered or browsed."""


class OscQueryError(OscDiscoveryError):
    """OSCQuery HTTP request failed (no peer, network, non-200, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str = "",
    ) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message)
