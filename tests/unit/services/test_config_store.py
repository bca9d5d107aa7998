import json

import pytest

from edgectl.domain.exceptions import ConfigError
from edgectl.domain.rules import PidRule, ThresholdRule
from edgectl.enums.control import DeviceKind
from edgectl.services.config_store import ConfigurationStore, load_snapshot


def test_loads_devices_and_folds_gateway_address(write_config):
    config_dir = write_config()
    store = ConfigurationStore(config_dir)

    assert store.load() is True

    temp = store.sensors[0]
    assert temp.id == "temp_1"
    assert temp.kind is DeviceKind.SENSOR
    assert temp.address == {"slaveId": 1, "registerAddr": 0, "registerType": "holding"}
    assert [a.id for a in store.actuators] == ["fan_1", "pump_1", "valve_1"]
    assert store.get_actuator("pump_1").kind is DeviceKind.ACTUATOR
    assert store.get_actuator("nope") is None


def test_invalid_and_duplicate_rules_are_skipped(write_config):
    config_dir = write_config(
        rules=[
            {
                "id": "ok",
                "type": "THRESHOLD",
                "conditions": {"sensorId": "temp_1", "operator": ">", "threshold": 30},
                "actions": {"actuatorId": "fan_1", "targetState": 1},
            },
            {"id": "bad-op", "type": "THRESHOLD", "conditions": {"sensorId": "t", "operator": "~", "threshold": 1}},
            {"id": "unknown-kind", "type": "FUZZY"},
            {
                "id": "inverted-pid",
                "type": "PID",
                "conditions": {"sensorId": "hum_1"},
                "actions": {"actuatorId": "valve_1"},
                "pidConfig": {"kp": 1, "setpoint": 1, "outputMin": 10, "outputMax": 0},
            },
            {
                "id": "ok",
                "type": "THRESHOLD",
                "conditions": {"sensorId": "temp_1", "operator": "<", "threshold": 5},
                "actions": {"actuatorId": "fan_1"},
            },
            "not-an-object",
        ]
    )
    store = ConfigurationStore(config_dir)
    store.load()

    assert [rule.id for rule in store.rules] == ["ok"]
    assert isinstance(store.rules[0], ThresholdRule)


def test_rules_property_returns_active_rules_only(write_config):
    config_dir = write_config(
        rules=[
            {
                "id": "pid",
                "type": "PID",
                "isActive": False,
                "conditions": {"sensorId": "hum_1"},
                "actions": {"actuatorId": "valve_1"},
                "pidConfig": {"kp": 1, "setpoint": 70, "outputMin": 0, "outputMax": 100},
            },
            {"id": "stop", "type": "EMERGENCY_STOP"},
        ]
    )
    store = ConfigurationStore(config_dir)
    store.load()

    assert [rule.id for rule in store.rules] == ["stop"]
    assert isinstance(store.snapshot.rules[0], PidRule)
    assert store.snapshot.summary() == {"sensors": 2, "actuators": 3, "rules": 2, "active_rules": 1}


def test_missing_files_fall_back_to_empty_configuration(tmp_path):
    store = ConfigurationStore(tmp_path / "absent")

    assert store.load() is False
    assert store.loaded
    assert store.sensors == ()
    assert store.rules == ()


def test_failed_reload_keeps_previous_configuration(write_config, config_dir):
    write_config(
        rules=[
            {
                "id": "r1",
                "type": "SCHEDULED",
                "schedule": "0 6 * * *",
                "actions": {"actuatorId": "pump_1", "targetState": 1},
            }
        ]
    )
    store = ConfigurationStore(config_dir)
    store.load()
    before = store.snapshot

    (config_dir / "devices.json").write_text("[1, 2, 3]", encoding="utf-8")

    assert store.load() is False
    assert store.snapshot is before
    assert [rule.id for rule in store.rules] == ["r1"]


def test_load_snapshot_rejects_non_list_rules(config_dir):
    (config_dir / "devices.json").write_text(json.dumps({"sensors": [], "actuators": []}), encoding="utf-8")
    (config_dir / "control-rules.json").write_text(json.dumps({"rules": {"id": "r1"}}), encoding="utf-8")

    with pytest.raises(ConfigError):
        load_snapshot(config_dir / "devices.json", config_dir / "control-rules.json")
