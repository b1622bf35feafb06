from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from pyoscmirror._net import AddressTrust
from pyoscmirror._osc import build_message, encode_message
from pyoscmirror._oscquery import ServiceDescriptor
from pyoscmirror._transport import DatagramHandlers, _OscDatagramProtocol
from pyoscmirror.client import OscClient
from pyoscmirror.config import OscConfig
from pyoscmirror.exceptions import OscDiscoveryError, OscTransportError
from pyoscmirror.state.events import ConnectionState

LOCAL = ("127.0.0.1", 9000)
STRANGER = ("192.0.2.10", 9000)


@dataclass
class FakeDiscovery:
    peer: tuple[str, int] | None = None
    bulk: list[tuple[str, Any]] = field(default_factory=list)
    start_failures: int = 0
    gate: asyncio.Future[None] | None = None
    started: list[int] = field(default_factory=list)
    stops: int = 0
    fetches: int = 0

    async def start(self, osc_port: int) -> ServiceDescriptor:
        if self.start_failures:
            self.start_failures -= 1
            raise OscDiscoveryError("mDNS unavailable")
        self.started.append(osc_port)
        return ServiceDescriptor(name="pyoscmirror-TEST", osc_port=osc_port, http_port=8080)

    async def stop(self) -> None:
        self.stops += 1

    async def fetch_bulk_state(self) -> list[tuple[str, Any]]:
        self.fetches += 1
        if self.gate is not None:
            await self.gate
        return list(self.bulk)

    def get_peer_address(self) -> tuple[str, int] | None:
        return self.peer


class FakeSocket:
    """In-memory socket that runs datagrams through the real OSC protocol handler."""

    def __init__(self, handlers: DatagramHandlers) -> None:
        self.handlers = handlers
        self._protocol = _OscDatagramProtocol(handlers)
        self.sent: list[tuple[Any, str, int]] = []
        self.raw_sent: list[tuple[bytes, str, int]] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    def send(self, message: Any, host: str, port: int) -> None:
        self.sent.append((message, host, port))

    def send_raw(self, data: bytes, host: str, port: int) -> None:
        self.raw_sent.append((data, host, port))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Real transports report connection_lost(None) after close().
        self.handlers.on_close(None)

    def feed(self, data: bytes, addr: tuple[str, int] = LOCAL) -> None:
        self._protocol.datagram_received(data, addr)

    def feed_message(self, address: str, *values: Any, addr: tuple[str, int] = LOCAL) -> None:
        self.feed(encode_message(build_message(address, *values)), addr)


@dataclass
class FakeSocketFactory:
    failures: int = 0
    sockets: list[FakeSocket] = field(default_factory=list)
    binds: list[tuple[str, int]] = field(default_factory=list)

    async def __call__(self, host: str, port: int, handlers: DatagramHandlers) -> FakeSocket:
        self.binds.append((host, port))
        if self.failures:
            self.failures -= 1
            raise OscTransportError("address in use", host=host, port=port)
        sock = FakeSocket(handlers)
        self.sockets.append(sock)
        handlers.on_ready()
        return sock

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


def _config(**overrides: Any) -> OscConfig:
    defaults: dict[str, Any] = {
        "retry_delay": 0.01,
        "bulk_retry_delay": 0.005,
        "bulk_timeout": 0.5,
        "activity_interval": 60.0,
    }
    defaults.update(overrides)
    return OscConfig(**defaults)


def _client(
    discovery: FakeDiscovery,
    factory: FakeSocketFactory,
    config: OscConfig | None = None,
) -> OscClient:
    return OscClient(
        config or _config(),
        discovery=discovery,
        socket_factory=factory,
        trust=AddressTrust(local_addresses=["192.168.1.20"]),
        port_allocator=lambda preferred, host: preferred,
    )


async def _settle(delay: float = 0.05) -> None:
    await asyncio.sleep(delay)


@pytest.mark.asyncio
async def test_start_opens_socket_and_advertises_port() -> None:
    discovery = FakeDiscovery()
    factory = FakeSocketFactory()
    client = _client(discovery, factory)

    await client.start()
    try:
        assert client.state == ConnectionState.OPEN
        assert client.is_open is True
        assert client.connected is False
        assert discovery.started == [9001]
        assert factory.binds == [("127.0.0.1", 9001)]
        assert client.local_port == 9001
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_parameter_updates_accumulate_delta() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(), factory)
    await client.start()
    try:
        factory.current.feed_message("/avatar/parameters/Speed", 0.5)
        factory.current.feed_message("/avatar/parameters/Speed", 0.8)

        cell = client.store.get("Speed")
        assert cell is not None
        assert cell.value == pytest.approx(0.8)
        assert cell.delta == pytest.approx(0.3)
        assert client.last_receive_time > 0

        client.clear_deltas()
        assert cell.delta == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_first_message_connects_and_bulk_fills_without_clobbering() -> None:
    discovery = FakeDiscovery(
        bulk=[
            ("/avatar/parameters/Speed", 0.1),
            ("/avatar/parameters/Grounded", True),
        ]
    )
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    connected: list[bool] = []
    client.on_connected.connect(lambda: connected.append(True))
    await client.start()
    try:
        factory.current.feed_message("/avatar/parameters/Speed", 0.5)
        factory.current.feed_message("/avatar/parameters/Speed", 0.5)
        await _settle()

        assert client.connected is True
        assert connected == [True]
        assert discovery.fetches == 1
        assert client.store.values() == {"Speed": 0.5, "Grounded": True}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_untrusted_sender_never_touches_store() -> None:
    discovery = FakeDiscovery(bulk=[("/avatar/parameters/A", 1)])
    factory = FakeSocketFactory()
    client = _client(discovery, factory, _config(proxy_ports=(9100,)))
    await client.start()
    try:
        factory.current.feed_message("/avatar/parameters/Speed", 0.5, addr=STRANGER)
        factory.current.feed_message("/avatar/change", "avtr_x", addr=STRANGER)
        await _settle()

        assert len(client.store) == 0
        assert client.connected is False
        assert discovery.fetches == 0
        assert factory.current.raw_sent == []

        # A non-loopback address of this machine is trusted.
        factory.current.feed_message("/avatar/parameters/Speed", 0.5, addr=("192.168.1.20", 9000))
        assert client.store.values()["Speed"] == 0.5
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_avatar_change_clears_once_and_restarts_reconciliation() -> None:
    discovery = FakeDiscovery(bulk=[("/avatar/parameters/Base", 7)])
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    await client.start()
    try:
        factory.current.feed_message("/avatar/parameters/Speed", 0.5)
        await _settle()
        assert discovery.fetches == 1

        cleared: list[int] = []
        client.store.on_cleared.connect(lambda: cleared.append(1))
        factory.current.feed_message("/avatar/change", "avtr_new")

        assert cleared == [1]
        assert len(client.store) == 0
        assert client.reconciling is True

        await _settle()
        assert discovery.fetches == 2
        assert client.store.values() == {"Base": 7}
        assert client.reconciling is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_other_addresses_and_empty_arguments_are_ignored() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(), factory)
    await client.start()
    try:
        factory.current.feed_message("/tracking/vrsystem/head/pose", 1.0, 2.0)
        factory.current.feed_message("/avatar/parameters/NoArgs")
        factory.current.feed_message("/avatar/parameters/Nil", None)

        assert len(client.store) == 0
        assert client.connected is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_send_without_peer_is_silent_noop() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(peer=None), factory)
    await client.start()
    try:
        assert client.send("Speed", 1.0) is False
        assert factory.current.sent == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_send_before_start_is_noop() -> None:
    client = _client(FakeDiscovery(peer=("127.0.0.1", 9000)), FakeSocketFactory())

    assert client.send("Speed", 1.0) is False


@pytest.mark.asyncio
async def test_send_goes_to_discovered_peer() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(peer=("127.0.0.1", 9000)), factory)
    await client.start()
    try:
        assert client.send("Speed", 1.0) is True
        assert client.send("Grounded", False) is True

        (first, host, port), (second, _, _) = factory.current.sent
        assert (host, port) == ("127.0.0.1", 9000)
        assert first.address == "/avatar/parameters/Speed"
        assert first.params == (1.0,)
        assert second.params == (False,)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_only_one_retry_timer_is_pending() -> None:
    discovery = FakeDiscovery()
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    await client.start()
    try:
        client.delay_retry()
        first = client._retry_handle  # noqa: SLF001
        client.delay_retry()
        second = client._retry_handle  # noqa: SLF001

        assert first is not None and second is not None
        assert first is not second
        assert first.cancelled() is True
        assert second.cancelled() is False
        assert client.state == ConnectionState.RETRYING

        await _settle()
        assert len(factory.sockets) == 2
        assert client.state == ConnectionState.OPEN
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fatal_close_clears_store_and_reconnects() -> None:
    discovery = FakeDiscovery()
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    states: list[tuple[ConnectionState, ConnectionState]] = []
    client.on_state_changed.connect(lambda old, new: states.append((old, new)))
    await client.start()
    try:
        old_socket = factory.current
        old_socket.feed_message("/avatar/parameters/Speed", 0.5)
        cleared: list[int] = []
        client.store.on_cleared.connect(lambda: cleared.append(1))

        old_socket.handlers.on_close(OSError("socket died"))

        assert client.state == ConnectionState.RETRYING
        assert old_socket.closed is True
        assert len(client.store) == 0
        assert cleared == [1]

        await _settle()
        assert discovery.stops >= 1
        assert len(factory.sockets) == 2
        assert client.state == ConnectionState.OPEN
        assert client.connected is False
        assert states[-3:] == [
            (ConnectionState.OPEN, ConnectionState.RETRYING),
            (ConnectionState.RETRYING, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.OPEN),
        ]

        # The dead socket's late callbacks belong to an old generation.
        old_socket.feed_message("/avatar/parameters/Ghost", 1)
        old_socket.handlers.on_close(OSError("again"))
        assert "Ghost" not in client.store
        assert client.state == ConnectionState.OPEN
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transient_errors_keep_socket_open_and_raw_data_is_proxied() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(), factory, _config(proxy_ports=(9100, 9101)))
    await client.start()
    try:
        sock = factory.current
        garbage = b"\x00\x01\x02"
        sock.feed(garbage)
        sock.handlers.on_error(ConnectionRefusedError("ICMP port unreachable"))

        assert client.state == ConnectionState.OPEN
        assert sock.closed is False
        assert len(factory.sockets) == 1
        assert sock.raw_sent == [
            (garbage, "127.0.0.1", 9100),
            (garbage, "127.0.0.1", 9101),
        ]

        good = encode_message(build_message("/avatar/parameters/A", 1))
        sock.feed(good)
        assert sock.raw_sent[-1] == (good, "127.0.0.1", 9101)
        assert client.store.values() == {"A": 1}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connect_failures_route_to_retry() -> None:
    discovery = FakeDiscovery(start_failures=1)
    factory = FakeSocketFactory(failures=1)
    client = _client(discovery, factory)
    await client.start()
    try:
        assert client.state == ConnectionState.RETRYING
        assert client._retry_handle is not None  # noqa: SLF001

        # Discovery fails first, then the bind, then everything works.
        await _settle(0.1)
        assert client.state == ConnectionState.OPEN
        assert len(factory.binds) == 2
        assert len(factory.sockets) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_reset_discards_in_flight_bulk_result() -> None:
    loop = asyncio.get_running_loop()
    discovery = FakeDiscovery(bulk=[("/avatar/parameters/Stale", 1)], gate=loop.create_future())
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    await client.start()
    try:
        factory.current.feed_message("/avatar/parameters/Speed", 0.5)
        await asyncio.sleep(0)
        assert client.reconciling is True

        client.reset()
        assert len(client.store) == 0
        assert client.reconciling is False

        assert discovery.gate is not None
        discovery.gate.set_result(None)
        await _settle()

        assert client.state == ConnectionState.OPEN
        assert len(client.store) == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_activity_is_reported_per_interval() -> None:
    factory = FakeSocketFactory()
    client = _client(FakeDiscovery(), factory, _config(activity_interval=0.05))
    counts: list[int] = []
    client.on_activity.connect(counts.append)
    await client.start()
    try:
        for value in (1, 2, 3):
            factory.current.feed_message("/avatar/parameters/A", value)
        await asyncio.sleep(0.08)
        assert counts == [3]

        await asyncio.sleep(0.06)
        assert counts == [3]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_close_tears_everything_down() -> None:
    discovery = FakeDiscovery()
    factory = FakeSocketFactory()
    client = _client(discovery, factory)

    async with client:
        sock = factory.current
        assert client.state == ConnectionState.OPEN

    assert client.state == ConnectionState.IDLE
    assert sock.closed is True
    assert discovery.stops >= 1
    assert client.is_open is False

    # Nothing reconnects after close.
    await _settle()
    assert len(factory.sockets) == 1


@dataclass
class SlowStartDiscovery(FakeDiscovery):
    entered: asyncio.Event = field(default_factory=asyncio.Event)
    events: list[str] = field(default_factory=list)

    async def start(self, osc_port: int) -> ServiceDescriptor:
        if self.start_failures:
            return await super().start(osc_port)
        self.entered.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.events.append("start cancelled")
            raise
        raise AssertionError("unreachable")

    async def stop(self) -> None:
        self.events.append("stop")
        await super().stop()


@pytest.mark.asyncio
async def test_close_waits_for_cancelled_connect_attempt() -> None:
    discovery = SlowStartDiscovery(start_failures=1)
    factory = FakeSocketFactory()
    client = _client(discovery, factory)
    await client.start()
    assert client.state == ConnectionState.RETRYING

    # The retry attempt hangs inside discovery.start().
    await asyncio.wait_for(discovery.entered.wait(), 1.0)
    discovery.events.clear()

    await client.close()

    assert discovery.events == ["start cancelled", "stop"]
    assert client.state == ConnectionState.IDLE
    assert factory.sockets == []
