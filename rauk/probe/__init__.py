"""
rauk.probe - debug-probe access for the replay measurements.

    transport.py  → OpenOCD TCL-RPC client and the ProbeDriver protocol
    session.py    → breakpoint run control, cycle counter, exclusive claim
"""

from .transport import OpenOCDTransport, ProbeDriver, TransportConfig, TransportError  # noqa: F401
from .session import (  # noqa: F401
    CYCLE_COUNTER,
    HaltTimeout,
    ProbeBusyError,
    ProbeError,
    ProbeSession,
    SessionConfig,
)

__all__ = [
    "OpenOCDTransport",
    "ProbeDriver",
    "TransportConfig",
    "TransportError",
    "ProbeSession",
    "SessionConfig",
    "ProbeError",
    "ProbeBusyError",
    "HaltTimeout",
    "CYCLE_COUNTER",
]
