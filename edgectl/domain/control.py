"""
Control System Domain Objects
==============================
Counters describing control engine activity.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from edgectl.utils.time import utc_now


@dataclass
class EngineMetrics:
    """Metrics for control engine activity."""
    evaluations: int = 0
    rule_failures: int = 0
    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    scheduled_firings: int = 0
    emergency_stops: int = 0
    reloads: int = 0
    last_action_time: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Calculate success rate percentage."""
        if self.total_actions == 0:
            return 100.0
        return (self.successful_actions / self.total_actions) * 100.0

    def record_action(self, success: bool) -> None:
        self.total_actions += 1
        if success:
            self.successful_actions += 1
            self.last_action_time = utc_now()
        else:
            self.failed_actions += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'evaluations': self.evaluations,
            'rule_failures': self.rule_failures,
            'total_actions': self.total_actions,
            'successful_actions': self.successful_actions,
            'failed_actions': self.failed_actions,
            'success_rate': self.success_rate,
            'scheduled_firings': self.scheduled_firings,
            'emergency_stops': self.emergency_stops,
            'reloads': self.reloads,
            'last_action_time': self.last_action_time.isoformat() if self.last_action_time else None,
        }
