"""
Configuration Store
===================

Owns the device and rule sets loaded from ``devices.json`` and
``control-rules.json``. A load replaces everything at once; readers always
see one consistent snapshot.

File formats::

    devices.json        {"sensors": [...], "actuators": [...]}
    control-rules.json  {"rules": [...]}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from edgectl.domain.devices import DeviceDescriptor
from edgectl.domain.exceptions import ConfigError
from edgectl.domain.rules import ControlRule, parse_rules
from edgectl.enums.control import DeviceKind

logger = logging.getLogger(__name__)

DEVICES_FILENAME = "devices.json"
RULES_FILENAME = "control-rules.json"


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable device/rule set as of one successful load."""

    sensors: tuple[DeviceDescriptor, ...] = ()
    actuators: tuple[DeviceDescriptor, ...] = ()
    rules: tuple[ControlRule, ...] = ()
    _actuator_index: dict[str, DeviceDescriptor] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._actuator_index.update({actuator.id: actuator for actuator in self.actuators})

    @property
    def active_rules(self) -> tuple[ControlRule, ...]:
        return tuple(rule for rule in self.rules if rule.is_active)

    def get_actuator(self, actuator_id: str) -> DeviceDescriptor | None:
        return self._actuator_index.get(actuator_id)

    def summary(self) -> dict[str, int]:
        return {
            "sensors": len(self.sensors),
            "actuators": len(self.actuators),
            "rules": len(self.rules),
            "active_rules": len(self.active_rules),
        }


def _read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}", detail={"path": str(path)}) from None
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read {path}: {exc}", detail={"path": str(path)}) from exc


def _parse_devices(raw: Any, key: str, kind: DeviceKind, path: Path) -> tuple[DeviceDescriptor, ...]:
    entries = raw.get(key) or []
    if not isinstance(entries, list):
        raise ConfigError(f"'{key}' in {path} must be a list", detail={"path": str(path)})

    devices: list[DeviceDescriptor] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Skipping %s #%s in %s: expected an object", kind, index, path)
            continue
        try:
            device = DeviceDescriptor.model_validate({**entry, "kind": kind})
        except ValidationError as exc:
            logger.warning("Skipping invalid %s #%s in %s: %s", kind, index, path, exc)
            continue
        if device.id in seen:
            logger.warning("Skipping %s #%s in %s: duplicate id %s", kind, index, path, device.id)
            continue
        seen.add(device.id)
        devices.append(device)
    return tuple(devices)


def load_snapshot(devices_path: Path, rules_path: Path) -> ConfigSnapshot:
    """
    Parse both configuration files.

    Individual malformed devices or rules are skipped with a warning; a
    missing, unreadable or structurally wrong file raises ``ConfigError``.
    """
    devices_raw = _read_json(devices_path)
    if not isinstance(devices_raw, dict):
        raise ConfigError(f"{devices_path} must contain a JSON object", detail={"path": str(devices_path)})
    rules_raw = _read_json(rules_path)
    if not isinstance(rules_raw, dict):
        raise ConfigError(f"{rules_path} must contain a JSON object", detail={"path": str(rules_path)})

    raw_rules = rules_raw.get("rules") or []
    if not isinstance(raw_rules, list):
        raise ConfigError(f"'rules' in {rules_path} must be a list", detail={"path": str(rules_path)})

    return ConfigSnapshot(
        sensors=_parse_devices(devices_raw, "sensors", DeviceKind.SENSOR, devices_path),
        actuators=_parse_devices(devices_raw, "actuators", DeviceKind.ACTUATOR, devices_path),
        rules=tuple(parse_rules(raw_rules)),
    )


class ConfigurationStore:
    """Current device and rule configuration, reloadable at runtime."""

    def __init__(self, config_dir: str | Path):
        self.config_dir = Path(config_dir)
        self._snapshot: ConfigSnapshot | None = None

    @property
    def devices_path(self) -> Path:
        return self.config_dir / DEVICES_FILENAME

    @property
    def rules_path(self) -> Path:
        return self.config_dir / RULES_FILENAME

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot or ConfigSnapshot()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def load(self) -> bool:
        """
        (Re)load both files and swap the new snapshot in.

        On ``ConfigError`` the previous snapshot stays in force (an empty one
        on first load) and ``False`` is returned.
        """
        try:
            snapshot = load_snapshot(self.devices_path, self.rules_path)
        except ConfigError as exc:
            if self._snapshot is None:
                logger.error("Failed to load configuration: %s. Using empty configuration", exc)
                self._snapshot = ConfigSnapshot()
            else:
                logger.error("Failed to reload configuration: %s. Keeping previous configuration", exc)
            return False

        self._snapshot = snapshot
        logger.info(
            "Loaded %s sensors, %s actuators, %s control rules",
            len(snapshot.sensors),
            len(snapshot.actuators),
            len(snapshot.rules),
        )
        return True

    @property
    def sensors(self) -> tuple[DeviceDescriptor, ...]:
        return self.snapshot.sensors

    @property
    def actuators(self) -> tuple[DeviceDescriptor, ...]:
        return self.snapshot.actuators

    @property
    def rules(self) -> tuple[ControlRule, ...]:
        """Active rules only."""
        return self.snapshot.active_rules

    def get_actuator(self, actuator_id: str) -> DeviceDescriptor | None:
        return self.snapshot.get_actuator(actuator_id)
