"""State/store layer.

This package is the single source of truth for the mirrored parameter map.
Live datagrams and OSCQuery bulk pulls both merge into it, and it is the
only place change events originate from.
"""

from pyoscmirror.state.events import ConnectionState, Signal
from pyoscmirror.state.store import ParameterCell, ParameterStore

__all__ = ["ConnectionState", "ParameterCell", "ParameterStore", "Signal"]
