"""pyoscmirror - Async Python client mirroring OSC avatar parameters."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyoscmirror")
except PackageNotFoundError:
    __version__ = "0+local"
from pyoscmirror._osc import OscMessage
from pyoscmirror._oscquery import Discovery, OscQueryPeer, OscQueryService, ServiceDescriptor
from pyoscmirror.client import OscClient
from pyoscmirror.config import OscConfig
from pyoscmirror.exceptions import (
    OscCodecError,
    OscConfigError,
    OscDiscoveryError,
    OscError,
    OscQueryError,
    OscTransportError,
)
from pyoscmirror.models import OscQueryAccess, OscQueryHostInfo, OscQueryNode
from pyoscmirror.state import ConnectionState, ParameterCell, ParameterStore, Signal

__all__ = [
    "__version__",
    "ConnectionState",
    "Discovery",
    "OscClient",
    "OscCodecError",
    "OscConfig",
    "OscConfigError",
    "OscDiscoveryError",
    "OscError",
    "OscMessage",
    "OscQueryAccess",
    "OscQueryError",
    "OscQueryHostInfo",
    "OscQueryNode",
    "OscQueryPeer",
    "OscQueryService",
    "OscTransportError",
    "ParameterCell",
    "ParameterStore",
    "ServiceDescriptor",
    "Signal",
]
