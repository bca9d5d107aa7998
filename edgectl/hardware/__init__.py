"""Device gateway and MQTT transport."""

from .gateway import BoundedGateway, DeviceGateway, SimulatedGateway, build_gateway

__all__ = ["BoundedGateway", "DeviceGateway", "SimulatedGateway", "build_gateway"]
