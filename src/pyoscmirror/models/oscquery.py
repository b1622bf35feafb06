"""OSCQuery JSON documents.

OSCQuery hosts answer ``GET /?HOST_INFO`` with a :class:`OscQueryHostInfo`
and any other path with the :class:`OscQueryNode` subtree rooted there.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OscQueryAccess(IntEnum):
    NONE = 0
    READ = 1
    WRITE = 2
    READ_WRITE = 3


class OscQueryHostInfo(BaseModel):
    """``HOST_INFO`` document: where the host accepts OSC datagrams."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    name: str = Field(default="", alias="NAME")
    osc_ip: str = Field(default="127.0.0.1", alias="OSC_IP")
    osc_port: int = Field(..., alias="OSC_PORT")
    osc_transport: str = Field(default="UDP", alias="OSC_TRANSPORT")
    extensions: dict[str, bool] = Field(default_factory=dict, alias="EXTENSIONS")

    @field_validator("osc_port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 < value <= 65535:
            raise ValueError(f"OSC_PORT out of range: {value}")
        return value


class OscQueryNode(BaseModel):
    """One node of the OSCQuery address tree."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    full_path: str = Field(..., alias="FULL_PATH")
    description: str | None = Field(default=None, alias="DESCRIPTION")
    access: int | None = Field(default=None, alias="ACCESS")
    type_tags: str | None = Field(default=None, alias="TYPE")
    value: list[Any] | None = Field(default=None, alias="VALUE")
    contents: dict[str, OscQueryNode] = Field(default_factory=dict, alias="CONTENTS")

    @property
    def first_value(self) -> Any:
        """The first ``VALUE`` entry; ``{}`` (OSCQuery's nil) reads as ``None``."""
        if not self.value:
            return None
        first = self.value[0]
        if isinstance(first, dict):
            return None
        return first

    def iter_values(self) -> Iterator[tuple[str, Any]]:
        """Yield ``(full_path, value)`` for every node in the subtree that has a value."""
        value = self.first_value
        if value is not None:
            yield self.full_path, value
        for child in self.contents.values():
            yield from child.iter_values()

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
