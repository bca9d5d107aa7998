"""Topic layout for one controller under a deployment prefix."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TopicScheme:
    """
    Builds and parses ``{prefix}/{controller_id}/...`` topics.

    Outbound: ``sensors/data``, ``actuators/{id}/status``, ``status``.
    Inbound: ``commands/<name>``.
    """

    prefix: str
    controller_id: str

    @property
    def base(self) -> str:
        return f"{self.prefix}/{self.controller_id}"

    @property
    def sensor_data(self) -> str:
        return f"{self.base}/sensors/data"

    @property
    def status(self) -> str:
        return f"{self.base}/status"

    @property
    def commands(self) -> str:
        """Subscription filter for every inbound command."""
        return f"{self.base}/commands/#"

    def actuator_status(self, actuator_id: str) -> str:
        return f"{self.base}/actuators/{actuator_id}/status"

    def command_name(self, topic: str) -> str | None:
        """Return the command name for ``{base}/commands/<name>``, else None."""
        head = f"{self.base}/commands/"
        if not topic.startswith(head):
            return None
        name = topic[len(head):]
        if not name or "/" in name:
            return None
        return name
