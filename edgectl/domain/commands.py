"""
Inbound Command Models
======================

Decoded form of the messages received on ``{prefix}/{id}/commands/<name>``.
The transport decodes, the control engine acts; nothing else sees raw bytes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from edgectl.domain.rules import StrId
from edgectl.utils.time import coerce_datetime

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (JavaScript Date.now())
_EPOCH_MS_THRESHOLD = 1e11


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ActuatorCommand(_Command):
    """Manual override: drive one actuator, bypassing rule evaluation."""

    actuator_id: StrId = Field(alias="actuatorId")
    state: int


class EmergencyStopCommand(_Command):
    """Any payload stops the controller; the timestamp is informational only."""

    timestamp: Any = None

    @property
    def issued_at(self) -> datetime | None:
        value = self.timestamp
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        return coerce_datetime(value)


class ConfigReloadCommand(_Command):
    pass


Command = Union[ActuatorCommand, EmergencyStopCommand, ConfigReloadCommand]

COMMAND_MODELS: dict[str, type[_Command]] = {
    "actuator": ActuatorCommand,
    "emergency-stop": EmergencyStopCommand,
    "config-reload": ConfigReloadCommand,
}


def decode_command(name: str, payload: bytes | str) -> Command:
    """
    Decode a raw command payload.

    Args:
        name: Last topic segment (``actuator``, ``emergency-stop``, ``config-reload``)
        payload: Raw message body; an empty body decodes as ``{}``

    Raises:
        ValueError: unknown command, undecodable JSON, or failed validation
            (``pydantic.ValidationError`` is a ``ValueError``)

    An ``emergency-stop`` body that cannot be decoded still yields a bare
    :class:`EmergencyStopCommand`.
    """
    model = COMMAND_MODELS.get(name)
    if model is None:
        raise ValueError(f"Unknown command '{name}'")

    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        data = json.loads(text) if text.strip() else {}
        if not isinstance(data, dict):
            raise ValueError(f"Command '{name}' payload must be a JSON object")
        return model.model_validate(data)
    except ValueError as exc:
        if model is not EmergencyStopCommand:
            raise
        logger.warning("Undecodable emergency-stop payload, stopping anyway: %s", exc)
        return EmergencyStopCommand()
