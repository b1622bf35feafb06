"""High-level async client mirroring a remote OSC parameter source."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from typing import Any

import aiohttp

from pyoscmirror._constants import AVATAR_CHANGE_ADDRESS, parameter_address, parameter_name
from pyoscmirror._net import AddressTrust, find_free_port
from pyoscmirror._osc import OscMessage, build_message
from pyoscmirror._oscquery import Discovery, OscQueryService
from pyoscmirror._reconcile import BulkReconciler
from pyoscmirror._transport import (
    Address,
    DatagramHandlers,
    OscSocket,
    SocketFactory,
    open_datagram_socket,
)
from pyoscmirror.config import OscConfig
from pyoscmirror.exceptions import OscCodecError, OscError
from pyoscmirror.state.events import ConnectionState, Signal
from pyoscmirror.state.store import ParameterStore

_logger = logging.getLogger(__name__)


class OscClient:
    """Self-healing OSC client that mirrors avatar parameters.

    Usage::

        async with OscClient(OscConfig.from_env()) as client:
            client.store.on_changed.connect(print)
            await asyncio.Event().wait()

    Lifecycle: ``idle -> connecting -> open -> retrying -> connecting ...``.
    Every connect attempt gets a new generation number; callbacks from the
    socket of an older generation are ignored.
    """

    def __init__(
        self,
        config: OscConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        discovery: Discovery | None = None,
        socket_factory: SocketFactory = open_datagram_socket,
        trust: AddressTrust | None = None,
        port_allocator: Callable[[int, str], int] = find_free_port,
    ) -> None:
        self._config = config or OscConfig()
        self._external_session = session is not None
        self._http_session = session
        self._discovery = discovery
        self._socket_factory = socket_factory
        self._trust = trust or AddressTrust(self._config.trusted_hosts)
        self._find_free_port = port_allocator

        self._store = ParameterStore()
        self._reconciler: BulkReconciler | None = None

        self._state = ConnectionState.IDLE
        self._socket: OscSocket | None = None
        self._socket_open = False
        self._generation = 0
        self._received_one = False
        self._started = False
        self._retry_handle: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._activity_task: asyncio.Task[None] | None = None

        self._recent_messages = 0
        self.last_receive_time: float = 0.0
        self.local_port: int | None = None

        self.on_state_changed = Signal("state_changed")
        self.on_connected = Signal("connected")
        self.on_activity = Signal("activity")

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> OscClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Make the first connect attempt and start background reporting.

        Never raises for connection problems; failures feed the retry cycle.
        """
        if self._started:
            return
        self._started = True
        if self._discovery is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._discovery = OscQueryService(self._config, self._http_session)
        self._reconciler = BulkReconciler(
            self._store,
            self._discovery,
            timeout=self._config.bulk_timeout,
            retry_delay=self._config.bulk_retry_delay,
        )
        self._activity_task = asyncio.get_running_loop().create_task(self._report_activity())
        await self._connect()

    async def close(self) -> None:
        """Close the socket, withdraw discovery and stop every timer."""
        if not self._started:
            return
        self._started = False
        self._generation += 1
        self._cancel_retry()
        if self._reconciler is not None:
            self._reconciler.shutdown()
        pending = [t for t in (self._activity_task, self._connect_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        self._activity_task = None
        self._connect_task = None
        # A cancelled connect attempt tears down its partial discovery start first.
        await asyncio.gather(*pending, return_exceptions=True)
        self._close_socket()
        if self._stop_task is not None:
            await asyncio.gather(self._stop_task, return_exceptions=True)
            self._stop_task = None
        if self._discovery is not None:
            try:
                await self._discovery.stop()
            except OscError:
                _logger.debug("Discovery stop failed", exc_info=True)
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._set_state(ConnectionState.IDLE)

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def config(self) -> OscConfig:
        return self._config

    @property
    def store(self) -> ParameterStore:
        return self._store

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._socket is not None and self._socket_open

    @property
    def connected(self) -> bool:
        """Whether a trusted datagram arrived on the current socket."""
        return self.is_open and self._received_one

    @property
    def reconciling(self) -> bool:
        return self._reconciler is not None and self._reconciler.in_progress

    def clear_deltas(self) -> None:
        self._store.clear_all_deltas()

    def _set_state(self, state: ConnectionState) -> None:
        old = self._state
        if old == state:
            return
        self._state = state
        _logger.debug("Connection state %s -> %s", old, state)
        self.on_state_changed.emit(old, state)

    # ------------------------------------------------------------------
    # Connect / retry
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)

        # A reset must be fully torn down before the next attempt binds.
        if self._stop_task is not None:
            await asyncio.gather(self._stop_task, return_exceptions=True)
            self._stop_task = None

        discovery = self._require_discovery()
        host = self._config.host
        try:
            port = self._find_free_port(self._config.port, host)
            _logger.info("Opening OSC server on %s:%s", host, port)
            await discovery.start(port)
            if generation != self._generation:
                return
            handlers = DatagramHandlers(
                on_ready=functools.partial(self._handle_ready, generation),
                on_error=functools.partial(self._handle_error, generation),
                on_raw_data=functools.partial(self._handle_raw_data, generation),
                on_message=functools.partial(self._handle_message, generation),
                on_close=functools.partial(self._handle_close, generation),
            )
            sock = await self._socket_factory(host, port, handlers)
        except (OscError, OSError):
            _logger.warning("OSC connect attempt failed", exc_info=True)
            if generation == self._generation:
                self.delay_retry()
            return

        if generation != self._generation:
            sock.close()
            return
        self._socket = sock
        self.local_port = port

    def _begin_connect(self) -> None:
        self._retry_handle = None
        if not self._started:
            return
        self._connect_task = asyncio.get_running_loop().create_task(self._connect())

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def delay_retry(self) -> None:
        """Tear down the current connection and reconnect after ``retry_delay``.

        Clears the parameter map and invalidates any bulk reconciliation in
        flight. Only one retry is ever pending; a new call replaces it.
        """
        self._generation += 1
        self._set_state(ConnectionState.RETRYING)
        self._close_socket()

        discovery = self._discovery
        if discovery is not None and (self._stop_task is None or self._stop_task.done()):
            self._stop_task = asyncio.get_running_loop().create_task(self._stop_discovery(discovery))

        self._store.clear_all()
        if self._reconciler is not None:
            self._reconciler.invalidate()

        self._cancel_retry()
        if self._started:
            loop = asyncio.get_running_loop()
            self._retry_handle = loop.call_later(self._config.retry_delay, self._begin_connect)

    def reset(self) -> None:
        """Caller-initiated reconnect."""
        if not self._started:
            return
        _logger.info("Connection reset requested")
        self.delay_retry()

    async def _stop_discovery(self, discovery: Discovery) -> None:
        try:
            await discovery.stop()
        except OscError:
            _logger.debug("Discovery stop failed", exc_info=True)

    def _close_socket(self) -> None:
        sock = self._socket
        self._socket = None
        self._socket_open = False
        self._received_one = False
        self.local_port = None
        if sock is not None:
            sock.close()

    def _require_discovery(self) -> Discovery:
        if self._discovery is None:
            raise OscError("Client not started. Use 'async with OscClient(...) as client:'")
        return self._discovery

    # ------------------------------------------------------------------
    # Socket events
    # ------------------------------------------------------------------

    def _handle_ready(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._socket_open = True
        self._received_one = False
        self._recent_messages = 0
        self._set_state(ConnectionState.OPEN)
        _logger.info("OSC socket open. Waiting for first message from OSC ...")

    def _handle_error(self, generation: int, exc: Exception) -> None:
        # ICMP errors and garbled frames are routine on a local OSC bus; the
        # socket is still usable, so none of these trigger a reconnect.
        if generation != self._generation:
            return
        if isinstance(exc, OscCodecError):
            _logger.debug("Ignoring undecodable datagram: %s", exc)
        else:
            _logger.debug("Ignoring transient socket error: %r", exc)

    def _handle_close(self, generation: int, exc: Exception | None) -> None:
        if generation != self._generation:
            return
        _logger.warning("OSC socket closed unexpectedly: %r", exc)
        self._socket_open = False
        self.delay_retry()

    def _handle_raw_data(self, generation: int, data: bytes, addr: Address) -> None:
        if generation != self._generation or not self._trust.is_trusted(addr[0]):
            return
        sock = self._socket
        if sock is None or not self._config.proxy_ports:
            return
        for port in self._config.proxy_ports:
            sock.send_raw(data, self._config.proxy_host, port)

    def _handle_message(self, generation: int, message: OscMessage, addr: Address) -> None:
        if generation != self._generation:
            return
        if not self._trust.is_trusted(addr[0]):
            _logger.debug("Dropping datagram from untrusted sender %s:%s", addr[0], addr[1])
            return

        if not self._received_one:
            self._received_one = True
            _logger.info("Received an OSC message. We are probably connected.")
            self.on_connected.emit()
            self._start_reconcile()

        self._recent_messages += 1
        self.last_receive_time = time.time()

        address = message.address
        if address == AVATAR_CHANGE_ADDRESS:
            _logger.info("Avatar change")
            self._store.clear_all()
            self._start_reconcile()
            return

        name = parameter_name(address)
        if name is None:
            return
        self._store.update(name, message.first_value)

    def _start_reconcile(self) -> None:
        if self._reconciler is not None:
            self._reconciler.start()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, name: str, value: Any) -> bool:
        """Send one parameter value to the discovered peer.

        Returns ``False`` without sending when the socket is not open or no
        peer is known yet. Delivery is not confirmed.
        """
        sock = self._socket
        if sock is None or not self._socket_open or self._discovery is None:
            return False
        peer = self._discovery.get_peer_address()
        if peer is None:
            return False
        message = build_message(parameter_address(name), value)
        try:
            sock.send(message, peer[0], peer[1])
        except OSError:
            _logger.debug("Send of %s to %s:%s failed", name, peer[0], peer[1], exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Activity reporting
    # ------------------------------------------------------------------

    async def _report_activity(self) -> None:
        interval = self._config.activity_interval
        while True:
            await asyncio.sleep(interval)
            count = self._recent_messages
            if count > 0:
                _logger.info("Received %s OSC updates in the past %s seconds", count, int(interval))
                self._recent_messages = 0
                self.on_activity.emit(count)
