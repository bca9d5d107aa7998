"""
Domain Package
==============
Value objects, configuration models and the exception hierarchy.
"""

from .commands import ActuatorCommand, Command, ConfigReloadCommand, EmergencyStopCommand, decode_command
from .control import EngineMetrics
from .devices import DeviceDescriptor
from .exceptions import (
    ConfigError,
    DeviceIOError,
    EdgeControllerError,
    FatalError,
    StorageError,
    TransportError,
)
from .readings import ControllerStatus, QueueEntry, SensorReading
from .rules import (
    ControlRule,
    EmergencyStopRule,
    PidConfig,
    PidRule,
    ScheduledRule,
    ThresholdRule,
    parse_rule,
    parse_rules,
    priority_order,
)

__all__ = [
    # Commands
    "ActuatorCommand",
    "Command",
    "ConfigReloadCommand",
    "EmergencyStopCommand",
    "decode_command",
    # Devices and readings
    "ControllerStatus",
    "DeviceDescriptor",
    "EngineMetrics",
    "QueueEntry",
    "SensorReading",
    # Rules
    "ControlRule",
    "EmergencyStopRule",
    "PidConfig",
    "PidRule",
    "ScheduledRule",
    "ThresholdRule",
    "parse_rule",
    "parse_rules",
    "priority_order",
    # Errors
    "ConfigError",
    "DeviceIOError",
    "EdgeControllerError",
    "FatalError",
    "StorageError",
    "TransportError",
]
