"""Internal constants shared across the library."""

DEFAULT_HOST = "127.0.0.1"
DEFAULT_OSC_PORT = 9001

# ------------------------------------------------------------------
# OSC address space
# ------------------------------------------------------------------

AVATAR_CHANGE_ADDRESS = "/avatar/change"
PARAMETER_PREFIX = "/avatar/parameters/"
BULK_STATE_PATH = "/avatar"

# ------------------------------------------------------------------
# OSCQuery / zeroconf
# ------------------------------------------------------------------

OSCJSON_SERVICE_TYPE = "_oscjson._tcp.local."
OSC_SERVICE_TYPE = "_osc._udp.local."
PEER_NAME_PREFIX = "VRChat-Client-"

# ------------------------------------------------------------------
# Timing (seconds)
# ------------------------------------------------------------------

RETRY_DELAY_S = 1.0
BULK_TIMEOUT_S = 10.0
BULK_RETRY_DELAY_S = 0.1
ACTIVITY_INTERVAL_S = 15.0
OSCQUERY_TIMEOUT_S = 3.0


def parameter_name(address: str) -> str | None:
    """Return the parameter name encoded in *address*, or ``None``.

    ``"/avatar/parameters/Speed"`` yields ``"Speed"``; addresses outside the
    parameter namespace (and the bare prefix itself) yield ``None``.
    """
    if not address.startswith(PARAMETER_PREFIX):
        return None
    name = address[len(PARAMETER_PREFIX) :]
    return name or None


def parameter_address(name: str) -> str:
    """Build the OSC address for parameter *name*."""
    return f"{PARAMETER_PREFIX}{name}"
