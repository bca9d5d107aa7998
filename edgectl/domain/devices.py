"""
Device Descriptors

Immutable description of a sensor or actuator as loaded from configuration.
The addressing payload is opaque to everything except the device gateway.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from edgectl.enums.control import DeviceKind

_KNOWN_KEYS = {
    "id",
    "name",
    "kind",
    "address",
    "unit",
    "scaling_factor",
    "scalingFactor",
    "scaling_offset",
    "scalingOffset",
}


class DeviceDescriptor(BaseModel):
    """
    A configured sensor or actuator.

    Records written in the flat gateway format (``slaveId``, ``registerAddr``,
    ``registerType``...) are accepted: every key that is not a descriptor
    field is folded into ``address``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str = ""
    kind: DeviceKind = DeviceKind.SENSOR
    address: dict[str, Any] = Field(default_factory=dict)
    unit: str | None = None
    scaling_factor: float | None = Field(default=None, alias="scalingFactor")
    scaling_offset: float | None = Field(default=None, alias="scalingOffset")

    @model_validator(mode="before")
    @classmethod
    def _fold_address(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        extra = {key: value for key, value in data.items() if key not in _KNOWN_KEYS}
        if not extra:
            return data
        folded = {key: value for key, value in data.items() if key in _KNOWN_KEYS}
        address = dict(extra)
        address.update(folded.get("address") or {})
        folded["address"] = address
        return folded

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def scale(self, raw: float) -> float:
        """Apply scaling factor then offset, rounded to 2 decimals."""
        value = float(raw)
        if self.scaling_factor:
            value *= self.scaling_factor
        if self.scaling_offset:
            value += self.scaling_offset
        return round(value, 2)
