"""
Edge automation controller.

Keeps sensors sampled and actuators driven by local control rules while
syncing telemetry to a remote MQTT backend whenever the link is up.
"""

__version__ = "1.0.0"
