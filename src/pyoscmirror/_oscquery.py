"""OSCQuery discovery: advertise this endpoint, find the peer, pull bulk state.

OSCQuery combines two side channels:

1. zeroconf/mDNS: we advertise ``_osc._udp`` (our OSC port) and
   ``_oscjson._tcp`` (our HTTP port), and browse ``_oscjson._tcp`` for the
   parameter source.
2. HTTP/JSON: ``GET /?HOST_INFO`` tells where a host accepts OSC datagrams,
   ``GET /avatar`` returns the current value of every avatar parameter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import socket
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from aiohttp import web
from pydantic import ValidationError
from zeroconf import Error as ZeroconfError
from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from pyoscmirror._constants import (
    AVATAR_CHANGE_ADDRESS,
    BULK_STATE_PATH,
    OSC_SERVICE_TYPE,
    OSCJSON_SERVICE_TYPE,
)
from pyoscmirror.config import OscConfig
from pyoscmirror.exceptions import OscDiscoveryError, OscQueryError
from pyoscmirror.models.oscquery import OscQueryAccess, OscQueryHostInfo, OscQueryNode

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceDescriptor:
    """What :meth:`OscQueryService.start` advertised."""

    name: str
    osc_port: int
    http_port: int | None = None


@dataclass(frozen=True)
class OscQueryPeer:
    """A discovered parameter source."""

    name: str
    http_host: str
    http_port: int
    osc_host: str
    osc_port: int


class Discovery(Protocol):
    """Structural discovery interface used by the client and reconciler."""

    async def start(self, osc_port: int) -> ServiceDescriptor: ...

    async def stop(self) -> None: ...

    async def fetch_bulk_state(self) -> list[tuple[str, Any]]: ...

    def get_peer_address(self) -> tuple[str, int] | None: ...


def _build_root_node() -> OscQueryNode:
    change = OscQueryNode(
        full_path=AVATAR_CHANGE_ADDRESS,
        access=OscQueryAccess.WRITE,
        type_tags="s",
        description="Avatar change notifications",
    )
    avatar = OscQueryNode(full_path="/avatar", access=OscQueryAccess.NONE, contents={"change": change})
    return OscQueryNode(full_path="/", access=OscQueryAccess.NONE, contents={"avatar": avatar})


def _find_node(root: OscQueryNode, path: str) -> OscQueryNode | None:
    node = root
    for part in (p for p in path.split("/") if p):
        child = node.contents.get(part)
        if child is None:
            return None
        node = child
    return node


class OscQueryService:
    """OSCQuery host + browser bound to one OSC port at a time."""

    def __init__(self, config: OscConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._runner: web.AppRunner | None = None
        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._descriptor: ServiceDescriptor | None = None
        self._peer: OscQueryPeer | None = None
        self._resolving: set[asyncio.Task[None]] = set()

    @property
    def descriptor(self) -> ServiceDescriptor | None:
        return self._descriptor

    @property
    def peer(self) -> OscQueryPeer | None:
        return self._peer

    def get_peer_address(self) -> tuple[str, int] | None:
        peer = self._peer
        if peer is None:
            return None
        return peer.osc_host, peer.osc_port

    def _advertised_host(self) -> str:
        host = self._config.host
        if host in ("", "0.0.0.0", "localhost"):
            return "127.0.0.1"
        return host

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, osc_port: int) -> ServiceDescriptor:
        """Serve and advertise this client as an OSC endpoint on *osc_port*."""
        await self.stop()
        name = f"{self._config.service_name}-{secrets.token_hex(3).upper()}"

        if not self._config.oscquery_enabled:
            self._descriptor = ServiceDescriptor(name=name, osc_port=osc_port)
            return self._descriptor

        # Registered before the first await so stop() always finds it.
        runner = web.AppRunner(self.build_app(name, osc_port), access_log=None)
        self._runner = runner
        try:
            await runner.setup()
            site = web.TCPSite(runner, self._advertised_host(), 0)
            await site.start()
            http_port = int(runner.addresses[0][1])
            await self._start_zeroconf(name, osc_port, http_port)
        except (OSError, ZeroconfError) as exc:
            await self.stop()
            raise OscDiscoveryError(f"OSCQuery startup failed: {exc}") from exc
        except asyncio.CancelledError:
            await self.stop()
            raise

        descriptor = ServiceDescriptor(name=name, osc_port=osc_port, http_port=http_port)
        self._descriptor = descriptor
        _logger.debug(
            "OSCQuery advertising name=%s osc_port=%s http_port=%s",
            name,
            osc_port,
            http_port,
        )
        return descriptor

    async def _start_zeroconf(self, name: str, osc_port: int, http_port: int) -> None:
        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self._zeroconf = aiozc
        address = socket.inet_aton(self._advertised_host())
        services = (
            (OSCJSON_SERVICE_TYPE, http_port),
            (OSC_SERVICE_TYPE, osc_port),
        )
        for service_type, port in services:
            info = AsyncServiceInfo(
                service_type,
                f"{name}.{service_type}",
                addresses=[address],
                port=port,
                properties={"txtvers": "1"},
                server=f"{name}.local.",
            )
            await aiozc.async_register_service(info, allow_name_change=True)

        self._browser = AsyncServiceBrowser(
            aiozc.zeroconf,
            [OSCJSON_SERVICE_TYPE],
            handlers=[self._on_service_state_change],
        )

    async def stop(self) -> None:
        """Withdraw the advertisement and forget the peer."""
        for task in list(self._resolving):
            task.cancel()
        self._resolving.clear()
        self._peer = None
        self._descriptor = None

        browser = self._browser
        self._browser = None
        aiozc = self._zeroconf
        self._zeroconf = None
        runner = self._runner
        self._runner = None

        try:
            if browser is not None:
                await browser.async_cancel()
            if aiozc is not None:
                await aiozc.async_unregister_all_services()
                await aiozc.async_close()
        except (OSError, ZeroconfError):
            _logger.debug("zeroconf shutdown failed", exc_info=True)
        finally:
            if runner is not None:
                await runner.cleanup()

    # ------------------------------------------------------------------
    # HTTP host side
    # ------------------------------------------------------------------

    def build_app(self, name: str, osc_port: int) -> web.Application:
        """Build the OSCQuery HTTP application describing this endpoint."""
        host_info = OscQueryHostInfo(
            name=name,
            osc_ip=self._advertised_host(),
            osc_port=osc_port,
            osc_transport="UDP",
            extensions={"ACCESS": True, "VALUE": True, "DESCRIPTION": True},
        )
        root = _build_root_node()

        async def handle(request: web.Request) -> web.Response:
            if "HOST_INFO" in request.query:
                return web.json_response(host_info.model_dump(by_alias=True))
            node = _find_node(root, request.path)
            if node is None:
                return web.Response(status=404, text="Not found")
            return web.json_response(node.to_json())

        app = web.Application()
        app.router.add_get("/{tail:.*}", handle)
        return app

    # ------------------------------------------------------------------
    # Peer discovery
    # ------------------------------------------------------------------

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if not name.startswith(self._config.peer_name_prefix):
            return
        if state_change is ServiceStateChange.Removed:
            if self._peer is not None and self._peer.name == name:
                _logger.info("OSCQuery peer %s went away", name)
                self._peer = None
            return
        task = asyncio.get_running_loop().create_task(self._resolve_peer(zeroconf, service_type, name))
        self._resolving.add(task)
        task.add_done_callback(self._resolving.discard)

    async def _resolve_peer(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        timeout_ms = int(self._config.oscquery_timeout * 1000)
        try:
            info = AsyncServiceInfo(service_type, name)
            if not await info.async_request(zeroconf, timeout_ms):
                _logger.debug("OSCQuery service %s did not resolve", name)
                return
            hosts = info.parsed_addresses(IPVersion.V4Only)
            if not hosts or not info.port:
                _logger.debug("OSCQuery service %s has no IPv4 address", name)
                return
            http_host = hosts[0]
            host_info = await self.fetch_host_info(http_host, info.port)
        except (OscQueryError, ZeroconfError, OSError):
            _logger.debug("OSCQuery peer resolution failed name=%s", name, exc_info=True)
            return

        self._peer = OscQueryPeer(
            name=name,
            http_host=http_host,
            http_port=info.port,
            osc_host=host_info.osc_ip,
            osc_port=host_info.osc_port,
        )
        _logger.info(
            "Discovered OSCQuery peer %s (osc=%s:%s http=%s:%s)",
            name,
            host_info.osc_ip,
            host_info.osc_port,
            http_host,
            info.port,
        )

    # ------------------------------------------------------------------
    # HTTP client side
    # ------------------------------------------------------------------

    async def _get_json(self, url: str, *, timeout: float | None = None) -> Any:
        _logger.debug("GET %s", url)
        client_timeout = aiohttp.ClientTimeout(total=timeout) if timeout is not None else None
        try:
            async with self._http.get(url, timeout=client_timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise OscQueryError(
                        f"HTTP {resp.status} from {url}: {text[:200]}",
                        status_code=resp.status,
                        url=url,
                    )
        except OscQueryError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise OscQueryError(f"Request to {url} failed: {exc!r}", url=url) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise OscQueryError(f"Invalid JSON from {url}: {text[:200]}", url=url) from exc

    async def fetch_host_info(self, http_host: str, http_port: int) -> OscQueryHostInfo:
        url = f"http://{http_host}:{http_port}/?HOST_INFO"
        payload = await self._get_json(url, timeout=self._config.oscquery_timeout)
        try:
            return OscQueryHostInfo.model_validate(payload)
        except ValidationError as exc:
            raise OscQueryError(f"Malformed HOST_INFO from {url}", url=url) from exc

    async def fetch_bulk_state(self) -> list[tuple[str, Any]]:
        """Return ``(path, value)`` for every valued node under ``/avatar``."""
        peer = self._peer
        if peer is None:
            raise OscQueryError("No OSCQuery peer discovered yet")
        url = f"http://{peer.http_host}:{peer.http_port}{BULK_STATE_PATH}"
        payload = await self._get_json(url)
        try:
            node = OscQueryNode.model_validate(payload)
        except ValidationError as exc:
            raise OscQueryError(f"Malformed OSCQuery node tree from {url}", url=url) from exc
        return list(node.iter_values())
