"""OSC message shape passed between the socket and the client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class OscMessage:
    """An OSC message: address pattern plus argument values."""

    address: str
    params: tuple[Any, ...] = ()

    @property
    def first_value(self) -> Any:
        """Value of the first argument, or ``None`` when there is none."""
        if not self.params:
            return None
        return self.params[0]
