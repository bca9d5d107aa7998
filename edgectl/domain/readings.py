"""
Reading, Queue and Status Value Objects
=======================================
Immutable records that flow from the sampling loop to the outbound queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from edgectl.enums.control import ControllerStatusLevel
from edgectl.utils.time import iso_now


@dataclass(frozen=True)
class SensorReading:
    """
    A single scaled sample taken from one sensor.
    Appended to the audit log on every sample and never modified.
    """

    sensor_id: str
    value: float
    timestamp: str
    controller_id: str

    def to_payload(self) -> dict[str, Any]:
        """Shape used inside the ``sensors/data`` message."""
        return {
            "sensorId": self.sensor_id,
            "value": self.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class QueueEntry:
    """One outbound message row from the persistent queue."""

    id: int
    topic: str
    payload: str
    timestamp: str
    sent: bool = False


@dataclass(frozen=True)
class ControllerStatus:
    """Heartbeat record published on the status topic."""

    controller_id: str
    name: str
    status: ControllerStatusLevel
    timestamp: str
    farm_id: str | None = None
    polyhouse_id: str | None = None

    @classmethod
    def now(
        cls,
        controller_id: str,
        name: str,
        status: ControllerStatusLevel,
        *,
        farm_id: str | None = None,
        polyhouse_id: str | None = None,
    ) -> "ControllerStatus":
        return cls(
            controller_id=controller_id,
            name=name,
            status=status,
            timestamp=iso_now(),
            farm_id=farm_id,
            polyhouse_id=polyhouse_id,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "controllerId": self.controller_id,
            "name": self.name,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        # Site metadata only rides along when configured
        if self.farm_id:
            payload["farmId"] = self.farm_id
        if self.polyhouse_id:
            payload["polyhouseId"] = self.polyhouse_id
        return payload
