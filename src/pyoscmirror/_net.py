"""Local network helpers: free-port allocation and sender trust."""

from __future__ import annotations

import ipaddress
import logging
import socket
from collections.abc import Iterable

_logger = logging.getLogger(__name__)


def _port_is_free(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(preferred: int, host: str = "127.0.0.1") -> int:
    """Return *preferred* if it can be bound, otherwise an OS-assigned free port.

    The probe socket is released before returning, so the port is only
    "free" on a best-effort basis; the caller's own bind is authoritative.
    """
    if preferred > 0 and _port_is_free(host, preferred):
        return preferred
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind((host, 0))
        port: int = probe.getsockname()[1]
    if preferred > 0:
        _logger.info("Port %s is in use, using %s instead", preferred, port)
    return port


def _local_addresses() -> set[str]:
    addresses: set[str] = set()
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except OSError:
        _logger.debug("Could not resolve local host addresses", exc_info=True)
        return addresses
    for info in infos:
        addresses.add(str(info[4][0]))
    return addresses


class AddressTrust:
    """Decides which datagram senders are allowed to touch the parameter map.

    Loopback, this machine's own interface addresses and any explicitly
    configured hosts are trusted.
    """

    def __init__(
        self,
        extra_hosts: Iterable[str] = (),
        *,
        local_addresses: Iterable[str] | None = None,
    ) -> None:
        self._extra = {host.strip() for host in extra_hosts if host.strip()}
        # None: resolved from the host name on first non-loopback sender.
        self._local: set[str] | None = set(local_addresses) if local_addresses is not None else None

    def _local_set(self) -> set[str]:
        if self._local is None:
            self._local = _local_addresses()
        return self._local

    def is_trusted(self, host: str) -> bool:
        if host in self._extra:
            return True
        try:
            address = ipaddress.ip_address(host.split("%", 1)[0])
        except ValueError:
            return False
        if address.is_loopback:
            return True
        mapped = getattr(address, "ipv4_mapped", None)
        if mapped is not None and mapped.is_loopback:
            return True
        return str(address) in self._local_set()
