"""Data models for OSCQuery documents."""

from pyoscmirror.models.oscquery import OscQueryAccess, OscQueryHostInfo, OscQueryNode

__all__ = [
    "OscQueryAccess",
    "OscQueryHostInfo",
    "OscQueryNode",
]
