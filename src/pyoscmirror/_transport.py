"""asyncio datagram socket speaking OSC."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from pyoscmirror._osc import OscMessage, decode_packet, encode_message
from pyoscmirror.exceptions import OscCodecError, OscTransportError

_logger = logging.getLogger(__name__)

Address = tuple[str, int]


@dataclass(frozen=True)
class DatagramHandlers:
    """Callbacks a socket reports to.

    ``on_raw_data`` fires for every datagram before decoding is attempted;
    ``on_message`` fires once per decoded message (bundles are flattened).
    ``on_error`` reports recoverable problems (ICMP errors, undecodable
    datagrams). ``on_close`` reports that the socket is gone; its argument
    is ``None`` for an orderly close.
    """

    on_ready: Callable[[], None]
    on_error: Callable[[Exception], None]
    on_raw_data: Callable[[bytes, Address], None]
    on_message: Callable[[OscMessage, Address], None]
    on_close: Callable[[Exception | None], None]


class OscSocket(Protocol):
    """Structural socket interface used by the client.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`OscDatagramSocket`) concrete.
    """

    @property
    def is_open(self) -> bool: ...

    def send(self, message: OscMessage, host: str, port: int) -> None: ...

    def send_raw(self, data: bytes, host: str, port: int) -> None: ...

    def close(self) -> None: ...


SocketFactory = Callable[[str, int, DatagramHandlers], Awaitable[OscSocket]]


class _OscDatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, handlers: DatagramHandlers) -> None:
        self._handlers = handlers

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._handlers.on_ready()

    def datagram_received(self, data: bytes, addr: Address) -> None:
        host, port = addr[0], addr[1]
        self._handlers.on_raw_data(data, (host, port))
        try:
            messages = decode_packet(data)
        except OscCodecError as exc:
            self._handlers.on_error(exc)
            return
        for message in messages:
            self._handlers.on_message(message, (host, port))

    def error_received(self, exc: Exception) -> None:
        self._handlers.on_error(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._handlers.on_close(exc)


class OscDatagramSocket:
    """Bound UDP socket that decodes inbound OSC and encodes outbound messages."""

    def __init__(self, transport: asyncio.DatagramTransport) -> None:
        self._transport = transport

    @property
    def is_open(self) -> bool:
        return not self._transport.is_closing()

    @property
    def local_address(self) -> Address:
        sockname = self._transport.get_extra_info("sockname")
        return sockname[0], sockname[1]

    def send(self, message: OscMessage, host: str, port: int) -> None:
        self.send_raw(encode_message(message), host, port)

    def send_raw(self, data: bytes, host: str, port: int) -> None:
        if self._transport.is_closing():
            return
        self._transport.sendto(data, (host, port))

    def close(self) -> None:
        self._transport.close()


async def open_datagram_socket(host: str, port: int, handlers: DatagramHandlers) -> OscSocket:
    """Bind a UDP socket on ``(host, port)``; ``on_ready`` fires before this returns."""
    loop = asyncio.get_running_loop()
    _logger.debug("Binding OSC socket on %s:%s", host, port)
    try:
        transport, _protocol = await loop.create_datagram_endpoint(
            lambda: _OscDatagramProtocol(handlers),
            local_addr=(host, port),
        )
    except OSError as exc:
        raise OscTransportError(
            f"Could not bind OSC socket on {host}:{port}: {exc}",
            host=host,
            port=port,
        ) from exc
    return OscDatagramSocket(transport)
