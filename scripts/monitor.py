#!/usr/bin/env python3
"""Live OSC parameter monitor.

Runs pyoscmirror against a local OSC/OSCQuery parameter source (for example
VRChat), printing every parameter change as it is mirrored.

Usage:
    python scripts/monitor.py                 # watch all changes
    python scripts/monitor.py --filter Speed  # only names containing "Speed"
    python scripts/monitor.py --send Speed=1.0 --duration 10
    python scripts/monitor.py --proxy 9002,9003 -v

Configuration is read from ``OSC_*`` environment variables; flags override.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyoscmirror import OscClient, OscConfig  # noqa: E402
from pyoscmirror.config import parse_port_list  # noqa: E402
from pyoscmirror.state.events import ConnectionState  # noqa: E402

LOG = logging.getLogger("monitor")


def _parse_assignment(raw: str) -> tuple[str, Any]:
    name, sep, value = raw.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {raw!r}")
    lowered = value.strip().lower()
    if lowered in {"true", "false"}:
        return name, lowered == "true"
    try:
        return name, int(value)
    except ValueError:
        pass
    try:
        return name, float(value)
    except ValueError:
        return name, value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror and print OSC avatar parameters")
    parser.add_argument("--port", type=int, help="Preferred local OSC port (default: OSC_PORT or 9001)")
    parser.add_argument("--proxy", help="Comma-separated local ports to mirror raw datagrams to")
    parser.add_argument("--filter", default="", help="Only print parameters whose name contains this text")
    parser.add_argument(
        "--send",
        type=_parse_assignment,
        metavar="NAME=VALUE",
        help="Send one parameter value once a peer has been discovered",
    )
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run forever)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


async def _send_when_possible(client: OscClient, name: str, value: Any) -> None:
    while not client.send(name, value):
        await asyncio.sleep(0.5)
    LOG.info("Sent %s=%r", name, value)


async def run(args: argparse.Namespace) -> None:
    overrides: dict[str, Any] = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.proxy is not None:
        overrides["proxy_ports"] = parse_port_list(args.proxy)
    config = OscConfig.from_env(**overrides)

    def on_changed(name: str, old: Any, new: Any) -> None:
        if args.filter and args.filter not in name:
            return
        print(f"{name}: {old!r} -> {new!r}")

    def on_state(old: ConnectionState, new: ConnectionState) -> None:
        LOG.info("state %s -> %s", old, new)

    async with OscClient(config) as client:
        client.store.on_changed.connect(on_changed)
        client.store.on_cleared.connect(lambda: print("-- parameters cleared --"))
        client.on_state_changed.connect(on_state)

        send_task: asyncio.Task[None] | None = None
        if args.send is not None:
            send_task = asyncio.create_task(_send_when_possible(client, *args.send))
        try:
            if args.duration > 0:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            if send_task is not None:
                send_task.cancel()

        print(f"{len(client.store)} parameters mirrored")


def main() -> None:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
