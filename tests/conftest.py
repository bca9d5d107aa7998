"""
Shared test fixtures for the edge controller test suite.

Provides:
- In-memory persistent queue
- ControllerConfig factory pointed at a temporary directory
- Helpers to write devices.json / control-rules.json
- A dummy paho client that records publishes and subscriptions

Usage:
    def test_example(queue, write_config):
        write_config(devices=..., rules=[...])
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edgectl.config import ControllerConfig
from infrastructure.database.queue_store import PersistentQueue

# ---------------------------------------------------------------------------
# Logging: keep test output clean
# ---------------------------------------------------------------------------
logging.getLogger("edgectl").setLevel(logging.WARNING)
logging.getLogger("infrastructure").setLevel(logging.WARNING)


DEFAULT_DEVICES: dict[str, list[dict[str, Any]]] = {
    "sensors": [
        {"id": "temp_1", "name": "Temperature", "slaveId": 1, "registerAddr": 0, "registerType": "holding"},
        {"id": "hum_1", "name": "Humidity", "slaveId": 1, "registerAddr": 1, "registerType": "holding"},
    ],
    "actuators": [
        {"id": "fan_1", "name": "Fan", "slaveId": 2, "registerAddr": 0, "registerType": "coil"},
        {"id": "pump_1", "name": "Pump", "slaveId": 2, "registerAddr": 1, "registerType": "coil"},
        {"id": "valve_1", "name": "Valve", "slaveId": 2, "registerAddr": 10, "registerType": "holding"},
    ],
}


# ========================== Storage Fixtures ===============================


@pytest.fixture()
def queue():
    """Initialized in-memory queue. Each test gets a fresh database."""
    store = PersistentQueue(":memory:")
    store.initialize()
    yield store
    store.close()


# ========================== Config Fixtures ================================


@pytest.fixture()
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    return path


@pytest.fixture()
def write_config(config_dir):
    """Write devices.json and control-rules.json; returns the config dir."""

    def _write(devices: dict | None = None, rules: list | None = None) -> Path:
        (config_dir / "devices.json").write_text(json.dumps(devices or DEFAULT_DEVICES), encoding="utf-8")
        (config_dir / "control-rules.json").write_text(json.dumps({"rules": rules or []}), encoding="utf-8")
        return config_dir

    return _write


@pytest.fixture()
def make_config(tmp_path, config_dir):
    """ControllerConfig factory isolated in ``tmp_path``."""

    def _make(**overrides: Any) -> ControllerConfig:
        values: dict[str, Any] = {
            "controller_id": "pi-test",
            "controller_name": "Test Controller",
            "farm_id": None,
            "polyhouse_id": None,
            "mqtt_host": "broker.test",
            "mqtt_port": 1883,
            "mqtt_username": None,
            "mqtt_password": None,
            "mqtt_client_id": None,
            "mqtt_topic_prefix": "growloc",
            "mqtt_reconnect_seconds": 5,
            "database_path": str(tmp_path / "queue.db"),
            "config_dir": str(config_dir),
            "queue_drain_limit": 100,
            "sensor_interval_seconds": 3600.0,
            "heartbeat_interval_seconds": 3600.0,
            "maintenance_interval_seconds": 3600.0,
            "device_io_timeout_seconds": 1.0,
            "gateway": "simulated",
            "log_level": "WARNING",
            "log_file": "",
            "audit_log_path": str(tmp_path / "logs" / "audit.log"),
        }
        values.update(overrides)
        return ControllerConfig(**values)

    return _make


# ========================== MQTT Fixtures ==================================


class DummyMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


class DummyClient:
    """Stands in for paho's Client; never touches the network."""

    def __init__(self, auto_ack: bool = False):
        self.auto_ack = auto_ack
        self.on_connect = None
        self.on_disconnect = None
        self.on_publish = None
        self.on_message = None
        self.published: list[tuple[str, str, int]] = []
        self.subscriptions: list[tuple[str, int]] = []
        self.connect_args = None
        self.reconnect_delay = None
        self.loop_started = False
        self.disconnected = False
        self.publish_rc = 0
        self._next_mid = 0

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host, port=1883, keepalive=60):
        self.connect_args = (host, port, keepalive)

    def loop_start(self):
        self.loop_started = True
        return 0

    def loop_stop(self):
        self.loop_started = False
        return 0

    def disconnect(self):
        self.disconnected = True
        return 0

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))
        return (0, len(self.subscriptions))

    def publish(self, topic, payload, qos=0):
        self._next_mid += 1
        mid = self._next_mid
        if self.publish_rc != 0:
            return SimpleNamespace(rc=self.publish_rc, mid=mid)
        self.published.append((topic, payload, qos))
        if self.auto_ack and self.on_publish is not None:
            self.on_publish(self, None, mid)
        return SimpleNamespace(rc=0, mid=mid)

    def topics(self) -> list[str]:
        return [topic for topic, _payload, _qos in self.published]


@pytest.fixture()
def dummy_client():
    return DummyClient()


@pytest.fixture()
def client_factory(dummy_client):
    """Drop-in for ``create_mqtt_client`` that hands back ``dummy_client``."""

    def _factory(**_kwargs):
        return dummy_client

    return _factory


@pytest.fixture()
def dummy_message():
    return DummyMessage
