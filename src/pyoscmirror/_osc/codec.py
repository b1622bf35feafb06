"""Adapter between python-osc datagrams and :class:`OscMessage`.

Inbound packets are parsed by ``pythonosc.osc_packet``; bundles (nested ones
included) are flattened into their messages. Outbound messages are framed by
``OscMessageBuilder`` with the type tag chosen from the Python value.
"""

from __future__ import annotations

import math
from typing import Any

from pythonosc.osc_message_builder import BuildError, OscMessageBuilder
from pythonosc.osc_packet import OscPacket, ParseError

from pyoscmirror._osc.message import OscMessage
from pyoscmirror.exceptions import OscCodecError

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def arg_type_for(value: Any) -> str:
    """Return the OSC type tag used to send *value*."""
    if value is None:
        return OscMessageBuilder.ARG_TYPE_NIL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return OscMessageBuilder.ARG_TYPE_TRUE if value else OscMessageBuilder.ARG_TYPE_FALSE
    if isinstance(value, int):
        if _INT32_MIN <= value <= _INT32_MAX:
            return OscMessageBuilder.ARG_TYPE_INT
        return OscMessageBuilder.ARG_TYPE_INT64
    if isinstance(value, float):
        if math.isnan(value):
            raise OscCodecError("NaN is not a valid OSC parameter value")
        return OscMessageBuilder.ARG_TYPE_FLOAT
    if isinstance(value, str):
        return OscMessageBuilder.ARG_TYPE_STRING
    if isinstance(value, (bytes, bytearray)):
        return OscMessageBuilder.ARG_TYPE_BLOB
    raise OscCodecError(f"Cannot encode {type(value).__name__} as an OSC argument")


def build_message(address: str, *values: Any) -> OscMessage:
    """Build an outbound message, rejecting values that cannot be sent."""
    for value in values:
        arg_type_for(value)
    return OscMessage(address, tuple(values))


def encode_message(message: OscMessage) -> bytes:
    if not message.address.startswith("/"):
        raise OscCodecError(f"OSC address must start with '/': {message.address!r}")
    builder = OscMessageBuilder(address=message.address)
    for value in message.params:
        builder.add_arg(value, arg_type_for(value))
    try:
        return builder.build().dgram
    except BuildError as exc:
        raise OscCodecError(f"Cannot encode message for {message.address}: {exc}") from exc


def decode_packet(data: bytes) -> list[OscMessage]:
    """Decode one datagram into its messages; raises :class:`OscCodecError`."""
    try:
        packet = OscPacket(data)
    except ParseError as exc:
        raise OscCodecError(f"Malformed OSC datagram ({len(data)} bytes): {exc}") from exc
    return [OscMessage(timed.message.address, tuple(timed.message.params)) for timed in packet.messages]
