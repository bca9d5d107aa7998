"""
Control Enumerations
====================

Enums shared by the control engine, transport and orchestrator.
"""

from enum import Enum


class DeviceKind(str, Enum):
    """Whether a device is sampled or driven."""

    SENSOR = "sensor"
    ACTUATOR = "actuator"

    def __str__(self) -> str:
        return self.value


class RuleKind(str, Enum):
    """
    Control rule kinds.

    THRESHOLD and PID are evaluated on every sampling tick; SCHEDULED rules run
    on their own timers; EMERGENCY_STOP is a safety override that is never
    evaluated against readings.
    """

    THRESHOLD = "THRESHOLD"
    PID = "PID"
    SCHEDULED = "SCHEDULED"
    EMERGENCY_STOP = "EMERGENCY_STOP"

    def __str__(self) -> str:
        return self.value


class Comparator(str, Enum):
    """Threshold comparison operators."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="

    def compare(self, value: float, threshold: float) -> bool:
        if self is Comparator.GT:
            return value > threshold
        if self is Comparator.LT:
            return value < threshold
        if self is Comparator.GTE:
            return value >= threshold
        if self is Comparator.LTE:
            return value <= threshold
        return value == threshold

    def __str__(self) -> str:
        return self.value


class EngineState(str, Enum):
    """Control engine lifecycle."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"

    def __str__(self) -> str:
        return self.value


class TransportState(str, Enum):
    """Broker session state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"

    def __str__(self) -> str:
        return self.value


class ControllerStatusLevel(str, Enum):
    """Liveness values published on the status topic."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"

    def __str__(self) -> str:
        return self.value
