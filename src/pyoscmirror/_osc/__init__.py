"""OSC framing on top of python-osc."""

from __future__ import annotations

from pyoscmirror._osc.codec import arg_type_for, build_message, decode_packet, encode_message
from pyoscmirror._osc.message import OscMessage

__all__ = [
    "OscMessage",
    "arg_type_for",
    "build_message",
    "decode_packet",
    "encode_message",
]
