"""
Device I/O Gateway

The physical bus lives behind :class:`DeviceGateway`. The controller only
ever talks to it through :class:`BoundedGateway`, which puts a timeout on
every call and normalizes failures to :class:`DeviceIOError`.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from edgectl.domain.devices import DeviceDescriptor
from edgectl.domain.exceptions import ConfigError, DeviceIOError

if TYPE_CHECKING:
    from edgectl.config import ControllerConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class DeviceGateway(Protocol):
    """Contract for the physical sensor/actuator bus."""

    async def initialize(self) -> None: ...

    async def read_sensor(self, descriptor: DeviceDescriptor) -> float:
        """Return the scaled value of one sensor. May raise on bus failure."""
        ...

    async def write_actuator(self, descriptor: DeviceDescriptor, value: int) -> None: ...

    async def trigger_safety_stop(self) -> None: ...

    async def close(self) -> None: ...


class BoundedGateway:
    """
    Timeout and error normalization around a raw gateway.

    No device call may hang the event loop's cooperative tasks forever; a
    call that exceeds ``timeout_seconds`` is abandoned and reported as a
    ``DeviceIOError`` so callers only ever handle one error type.
    """

    def __init__(self, gateway: DeviceGateway, timeout_seconds: float):
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, target: str, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise DeviceIOError(
                f"{operation} {target} timed out after {self.timeout_seconds}s",
                detail={"operation": operation, "target": target},
            ) from None
        except DeviceIOError:
            raise
        except Exception as exc:
            raise DeviceIOError(
                f"{operation} {target} failed: {exc}",
                detail={"operation": operation, "target": target},
            ) from exc

    async def initialize(self) -> None:
        await self._bounded("initialize", "gateway", self.gateway.initialize())

    async def read_sensor(self, descriptor: DeviceDescriptor) -> float:
        value = await self._bounded("read", descriptor.display_name, self.gateway.read_sensor(descriptor))
        try:
            return float(value)
        except (TypeError, ValueError):
            raise DeviceIOError(
                f"read {descriptor.display_name} returned non-numeric value {value!r}",
                detail={"operation": "read", "target": descriptor.id},
            ) from None

    async def write_actuator(self, descriptor: DeviceDescriptor, value: int) -> None:
        await self._bounded("write", descriptor.display_name, self.gateway.write_actuator(descriptor, value))

    async def trigger_safety_stop(self) -> None:
        await self._bounded("safety-stop", "gateway", self.gateway.trigger_safety_stop())

    async def close(self) -> None:
        await self._bounded("close", "gateway", self.gateway.close())


class SimulatedGateway:
    """
    In-memory gateway for development benches and tests.

    Sensors report ``address["simulatedValue"]`` (or a value set with
    :meth:`set_value`) plus optional uniform jitter; actuator writes are
    recorded in order.
    """

    def __init__(self) -> None:
        self.values: dict[str, float] = {}
        self.actuator_states: dict[str, int] = {}
        self.writes: list[tuple[str, int]] = []
        self.failing: set[str] = set()
        self.safety_stops = 0
        self.initialized = False
        self.closed = False

    def set_value(self, sensor_id: str, value: float) -> None:
        self.values[sensor_id] = value

    async def initialize(self) -> None:
        self.initialized = True
        logger.info("Simulated gateway initialized")

    async def read_sensor(self, descriptor: DeviceDescriptor) -> float:
        if descriptor.id in self.failing:
            raise DeviceIOError(f"Simulated read failure on {descriptor.display_name}")
        raw = self.values.get(descriptor.id, descriptor.address.get("simulatedValue", 0.0))
        jitter = float(descriptor.address.get("simulatedJitter", 0.0))
        if jitter:
            raw = float(raw) + random.uniform(-jitter, jitter)
        return descriptor.scale(raw)

    async def write_actuator(self, descriptor: DeviceDescriptor, value: int) -> None:
        if descriptor.id in self.failing:
            raise DeviceIOError(f"Simulated write failure on {descriptor.display_name}")
        self.actuator_states[descriptor.id] = value
        self.writes.append((descriptor.id, value))
        logger.info("Simulated write: %s = %s", descriptor.display_name, value)

    async def trigger_safety_stop(self) -> None:
        self.safety_stops += 1
        logger.warning("Simulated safety stop triggered")

    async def close(self) -> None:
        self.closed = True


def build_gateway(config: "ControllerConfig") -> DeviceGateway:
    """Create the raw gateway selected by ``EDGECTL_GATEWAY``."""
    if config.gateway == "simulated":
        return SimulatedGateway()
    if config.gateway == "modbus":
        # Optional hardware extra; only imported on devices that use it
        from edgectl.hardware.modbus_gateway import ModbusGateway

        return ModbusGateway(
            port=config.serial_port,
            baudrate=config.baud_rate,
            parity=config.parity,
            stopbits=config.stop_bits,
            bytesize=config.data_bits,
            emergency_stop_register=config.emergency_stop_register,
        )
    raise ConfigError(f"Unknown gateway '{config.gateway}'", detail={"gateway": config.gateway})
