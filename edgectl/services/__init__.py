"""
Services
========
Configuration store and the orchestrator. Import the orchestrator from
``edgectl.services.orchestrator`` directly; it depends on the control loops.
"""

from .config_store import ConfigSnapshot, ConfigurationStore, load_snapshot

__all__ = ["ConfigSnapshot", "ConfigurationStore", "load_snapshot"]
