"""Control loops: rule evaluation, PID and scheduled rule timers."""

from .control_engine import ControlEngine, RuleState
from .pid_controller import PIDController
from .rule_timers import RuleTimer, is_valid_cron

__all__ = ["ControlEngine", "PIDController", "RuleState", "RuleTimer", "is_valid_cron"]
