"""
Modbus RTU Gateway

Maps a device's opaque address (``slaveId``, ``registerAddr``,
``registerType``) onto pymodbus register calls over a serial line.

Note: Requires the ``hardware`` extra (pymodbus).
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from pymodbus.client import AsyncModbusSerialClient

from edgectl.domain.devices import DeviceDescriptor
from edgectl.domain.exceptions import DeviceIOError

logger = logging.getLogger(__name__)

# pymodbus renamed the unit keyword twice (unit -> slave -> device_id)
_UNIT_KEYWORDS = ("device_id", "slave", "unit")


def _unit_kwargs(method: Any, unit: int) -> dict[str, int]:
    try:
        parameters = inspect.signature(method).parameters
    except (TypeError, ValueError):
        return {}
    for keyword in _UNIT_KEYWORDS:
        if keyword in parameters:
            return {keyword: unit}
    return {}


class ModbusGateway:
    """Modbus RTU implementation of the device gateway."""

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        parity: str = "N",
        stopbits: int = 1,
        bytesize: int = 8,
        emergency_stop_register: int = 100,
        emergency_stop_unit: int = 1,
    ):
        """
        Args:
            port: Serial device path (e.g. /dev/ttyUSB0)
            baudrate, parity, stopbits, bytesize: Serial line settings
            emergency_stop_register: Coil written to trip the hardware safety stop
            emergency_stop_unit: Slave id that owns the safety coil
        """
        self.port = port
        self.baudrate = baudrate
        self.parity = parity
        self.stopbits = stopbits
        self.bytesize = bytesize
        self.emergency_stop_register = emergency_stop_register
        self.emergency_stop_unit = emergency_stop_unit
        self.client: AsyncModbusSerialClient | None = None

    async def initialize(self) -> None:
        logger.info("Initializing Modbus on %s at %s baud", self.port, self.baudrate)
        self.client = AsyncModbusSerialClient(
            port=self.port,
            baudrate=self.baudrate,
            parity=self.parity,
            stopbits=self.stopbits,
            bytesize=self.bytesize,
        )
        connected = await self.client.connect()
        if not connected:
            raise DeviceIOError(f"Could not open Modbus serial port {self.port}", detail={"port": self.port})
        logger.info("Modbus initialized successfully")

    def _require_client(self) -> AsyncModbusSerialClient:
        if self.client is None:
            raise DeviceIOError("Modbus not initialized")
        return self.client

    @staticmethod
    def _register(descriptor: DeviceDescriptor) -> tuple[int, int, str]:
        address = descriptor.address
        try:
            unit = int(address.get("slaveId", 1))
            register = int(address["registerAddr"])
        except (KeyError, TypeError, ValueError):
            raise DeviceIOError(
                f"Device {descriptor.display_name} has no usable Modbus address",
                detail={"device": descriptor.id, "address": address},
            ) from None
        return unit, register, str(address.get("registerType", "holding")).lower()

    async def _call(self, method: Any, register: int, unit: int, **kwargs: Any) -> Any:
        result = await method(register, **kwargs, **_unit_kwargs(method, unit))
        if result.isError():
            raise DeviceIOError(f"Modbus error response at register {register}: {result}")
        return result

    async def read_sensor(self, descriptor: DeviceDescriptor) -> float:
        client = self._require_client()
        unit, register, register_type = self._register(descriptor)

        if register_type == "holding":
            result = await self._call(client.read_holding_registers, register, unit, count=1)
            raw: float = result.registers[0]
        elif register_type == "input":
            result = await self._call(client.read_input_registers, register, unit, count=1)
            raw = result.registers[0]
        elif register_type == "coil":
            result = await self._call(client.read_coils, register, unit, count=1)
            raw = 1 if result.bits[0] else 0
        elif register_type == "discrete":
            result = await self._call(client.read_discrete_inputs, register, unit, count=1)
            raw = 1 if result.bits[0] else 0
        else:
            raise DeviceIOError(f"Unknown register type: {register_type}")

        return descriptor.scale(raw)

    async def write_actuator(self, descriptor: DeviceDescriptor, value: int) -> None:
        client = self._require_client()
        unit, register, register_type = self._register(descriptor)
        logger.info("Writing %s to actuator %s (register %s)", value, descriptor.display_name, register)

        if register_type == "coil":
            await self._call(client.write_coil, register, unit, value=value > 0)
        elif register_type == "holding":
            await self._call(client.write_register, register, unit, value=int(value))
        else:
            raise DeviceIOError(f"Cannot write to register type: {register_type}")

    async def trigger_safety_stop(self) -> None:
        client = self._require_client()
        logger.warning("EMERGENCY STOP TRIGGERED (coil %s)", self.emergency_stop_register)
        await self._call(client.write_coil, self.emergency_stop_register, self.emergency_stop_unit, value=True)

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Modbus connection closed")
