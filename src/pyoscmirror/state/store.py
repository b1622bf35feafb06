"""In-memory mirror of the remote parameter map.

This is the only component allowed to mutate parameter values. Both the live
datagram handler and the bulk reconciler go through :meth:`ParameterStore.update`.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from typing import Any

from pyoscmirror.state.events import Signal


def _is_numeric(value: Any) -> bool:
    # bool is an int subclass but is not a numeric parameter value
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ParameterCell:
    """Latest value of one parameter plus its accumulated movement.

    ``delta`` is the running sum of absolute differences between consecutive
    numeric values. Steps that are not finite (NaN or infinity on either
    side) are skipped. It only grows on updates and only shrinks through
    :meth:`clear_delta`.
    """

    __slots__ = ("_value", "_delta")

    def __init__(self) -> None:
        self._value: Any = None
        self._delta: float = 0.0

    def __repr__(self) -> str:
        return f"ParameterCell(value={self._value!r}, delta={self._delta!r})"

    @property
    def value(self) -> Any:
        return self._value

    @property
    def delta(self) -> float:
        return self._delta

    def clear_delta(self) -> None:
        self._delta = 0.0

    def received_update(self, new_value: Any) -> Any:
        """Overwrite the value and return the previous one."""
        old_value = self._value
        if _is_numeric(old_value) and _is_numeric(new_value):
            step = abs(new_value - old_value)
            if math.isfinite(step):
                self._delta += step
        self._value = new_value
        return old_value


class ParameterStore:
    """Mapping of parameter name to :class:`ParameterCell` with change events.

    Events:

    * ``on_added(name, cell)`` when a cell is created
    * ``on_changed(name, old_value, new_value)`` on every applied update
    * ``on_cleared()`` once per :meth:`clear_all`
    """

    def __init__(self) -> None:
        self._cells: dict[str, ParameterCell] = {}
        self.on_added = Signal("added")
        self.on_changed = Signal("changed")
        self.on_cleared = Signal("cleared")

    def __len__(self) -> int:
        return len(self._cells)

    def __contains__(self, name: object) -> bool:
        return name in self._cells

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._cells))

    def get(self, name: str) -> ParameterCell | None:
        return self._cells.get(name)

    def items(self) -> list[tuple[str, ParameterCell]]:
        """Snapshot of ``(name, cell)`` pairs."""
        return list(self._cells.items())

    def values(self) -> dict[str, Any]:
        """Snapshot of ``name -> current value``."""
        return {name: cell.value for name, cell in self._cells.items()}

    def update(self, name: str, value: Any, *, only_if_absent: bool = False) -> bool:
        """Apply a value for *name*; returns whether the store changed.

        ``None`` values are never stored. With ``only_if_absent`` an existing
        cell is left untouched, so bulk data cannot revert live updates.
        """
        if value is None:
            return False

        cell = self._cells.get(name)
        created = cell is None
        if cell is None:
            cell = ParameterCell()
            self._cells[name] = cell
        elif only_if_absent:
            return False

        old_value = cell.received_update(value)
        self.on_changed.emit(name, old_value, value)
        if created:
            self.on_added.emit(name, cell)
        return True

    def clear_delta(self, name: str) -> None:
        cell = self._cells.get(name)
        if cell is not None:
            cell.clear_delta()

    def clear_all_deltas(self) -> None:
        for cell in self._cells.values():
            cell.clear_delta()

    def clear_all(self) -> None:
        """Drop every cell and emit ``on_cleared`` once."""
        self._cells.clear()
        self.on_cleared.emit()
