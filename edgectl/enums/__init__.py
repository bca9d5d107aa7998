"""
Enumerations Package
====================

Re-exports the control enums so callers can import from ``edgectl.enums``.
"""

from edgectl.enums.control import (
    Comparator,
    ControllerStatusLevel,
    DeviceKind,
    EngineState,
    RuleKind,
    TransportState,
)

__all__ = [
    "Comparator",
    "ControllerStatusLevel",
    "DeviceKind",
    "EngineState",
    "RuleKind",
    "TransportState",
]
