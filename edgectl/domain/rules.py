"""
Control Rule Models
===================

Rules are a tagged union on ``type``. Each kind carries only the fields it
needs, validated once at load time so evaluation never does untyped lookups.

Accepted JSON (camelCase, as produced by the cloud rule builder)::

    {
        "id": "r1",
        "name": "Cool greenhouse",
        "type": "THRESHOLD",
        "isActive": true,
        "priority": 10,
        "conditions": {"sensorId": "temp_1", "operator": ">", "threshold": 30},
        "actions": {"actuatorId": "fan_1", "targetState": 1}
    }
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Iterable, Literal, Sequence, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from edgectl.enums.control import Comparator, RuleKind

logger = logging.getLogger(__name__)


def _coerce_str_id(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


StrId = Annotated[str, BeforeValidator(_coerce_str_id)]


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ActuatorAction(_Payload):
    """Write ``target_state`` to ``actuator_id``."""

    actuator_id: StrId = Field(alias="actuatorId")
    target_state: int = Field(default=0, alias="targetState")


class ActuatorTarget(_Payload):
    """PID rules only name the actuator; the value comes from the loop."""

    actuator_id: StrId = Field(alias="actuatorId")


class ThresholdCondition(_Payload):
    sensor_id: StrId = Field(alias="sensorId")
    operator: Comparator
    threshold: float


class SensorSource(_Payload):
    sensor_id: StrId = Field(alias="sensorId")


class PidConfig(_Payload):
    """Gains, target and output bounds for one PID loop."""

    kp: float
    ki: float = 0.0
    kd: float = 0.0
    setpoint: float
    output_min: float = Field(alias="outputMin")
    output_max: float = Field(alias="outputMax")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PidConfig":
        if self.output_min > self.output_max:
            raise ValueError(f"outputMin ({self.output_min}) is greater than outputMax ({self.output_max})")
        return self


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: StrId
    name: str = ""
    is_active: bool = Field(default=True, alias="isActive")
    priority: int = 0
    # Position in the loaded file; breaks priority ties deterministically.
    load_index: int = 0

    @property
    def kind(self) -> RuleKind:
        return RuleKind(self.type)  # type: ignore[attr-defined]

    @property
    def label(self) -> str:
        return self.name or self.id


class ThresholdRule(_RuleBase):
    type: Literal["THRESHOLD"]
    conditions: ThresholdCondition
    actions: ActuatorAction


class PidRule(_RuleBase):
    type: Literal["PID"]
    conditions: SensorSource
    actions: ActuatorTarget
    pid_config: PidConfig = Field(alias="pidConfig")


class ScheduledRule(_RuleBase):
    type: Literal["SCHEDULED"]
    schedule: str | None = None
    actions: ActuatorAction


class EmergencyStopRule(_RuleBase):
    type: Literal["EMERGENCY_STOP"]
    conditions: dict[str, Any] = Field(default_factory=dict)
    actions: dict[str, Any] = Field(default_factory=dict)


ControlRule = Annotated[
    Union[ThresholdRule, PidRule, ScheduledRule, EmergencyStopRule],
    Field(discriminator="type"),
]

_rule_adapter: TypeAdapter[ControlRule] = TypeAdapter(ControlRule)


def parse_rule(raw: dict[str, Any], load_index: int = 0) -> ControlRule:
    """Validate one raw rule record. Raises ``pydantic.ValidationError``."""
    return _rule_adapter.validate_python({**raw, "load_index": load_index})


def parse_rules(raw_rules: Iterable[Any]) -> list[ControlRule]:
    """
    Validate a list of raw rule records.

    Invalid records are logged and skipped so one bad rule cannot take the
    whole rule set down. Load order is preserved in ``load_index``.
    """
    rules: list[ControlRule] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            logger.warning("Skipping rule #%s: expected an object, got %s", index, type(raw).__name__)
            continue
        try:
            rule = parse_rule(raw, load_index=index)
        except ValidationError as exc:
            logger.warning("Skipping invalid rule #%s (%s): %s", index, raw.get("id", "?"), exc)
            continue
        if rule.id in seen:
            logger.warning("Skipping rule #%s: duplicate id %s", index, rule.id)
            continue
        seen.add(rule.id)
        rules.append(rule)
    return rules


def priority_order(rules: Sequence[ControlRule]) -> list[ControlRule]:
    """Highest priority first; ties keep load order."""
    return sorted(rules, key=lambda rule: (-rule.priority, rule.load_index))
